"""Shared fixtures for API tests: an app wired to in-memory doubles."""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI

from coup.api.app import create_app
from coup.api.deps import get_calendar_client, get_store
from coup.config import CoupConfig
from tests.conftest import FakeGoogleCalendar, InMemoryScheduleStore


@pytest.fixture
def app(store: InMemoryScheduleStore, fake_google: FakeGoogleCalendar) -> FastAPI:
    app = create_app(CoupConfig())
    calendar = fake_google.client()
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_calendar_client] = lambda: calendar
    return app


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
