"""Shared fixtures: an in-memory schedule store and a fake Google Calendar."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, time
from typing import Any
from uuid import UUID, uuid4

import httpx
import pytest

from coup.calendar.google import GoogleCalendarClient, parse_google_datetime
from coup.calendar.models import (
    Project,
    ScheduleInsert,
    ScheduleRecord,
    ScheduleUpdate,
    SyncSettings,
)

GOOGLE_BASE_URL = "https://calendar.test/calendar/v3"


# ---------------------------------------------------------------------------
# In-memory ScheduleStore
# ---------------------------------------------------------------------------


class InMemoryScheduleStore:
    """ScheduleStore double that records calls and can be told to fail."""

    def __init__(
        self,
        *,
        members: dict[UUID, UUID] | None = None,
        projects: Sequence[Project] = (),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.members: dict[UUID, UUID] = dict(members or {})
        self.projects: list[Project] = list(projects)
        self.schedules: dict[UUID, ScheduleRecord] = {}
        self.settings: dict[UUID, SyncSettings] = {}
        self.clock = clock or (lambda: datetime.now(UTC))

        self.insert_batches: list[int] = []
        self.update_calls: list[UUID] = []
        self.delete_calls: list[list[UUID]] = []
        self.synced: list[tuple[UUID, datetime]] = []
        self.max_concurrent_updates = 0
        self._updates_in_flight = 0

        self.fail_insert_batches: set[int] = set()
        self.fail_update_ids: set[UUID] = set()
        self.fail_delete = False

    def add_schedule(self, **fields: Any) -> ScheduleRecord:
        member_id = fields.pop("member_id", None) or next(iter(self.members))
        record = ScheduleRecord.model_validate(
            {
                "id": uuid4(),
                "member_id": member_id,
                "org_id": self.members[member_id],
                "updated_at": self.clock(),
                **fields,
            }
        )
        self.schedules[record.id] = record
        return record

    def by_event_id(self, event_id: str) -> list[ScheduleRecord]:
        return [r for r in self.schedules.values() if r.external_event_id == event_id]

    async def get_member_org_id(self, member_id: UUID) -> UUID | None:
        return self.members.get(member_id)

    async def list_projects(self, org_id: UUID) -> list[Project]:
        return list(self.projects)

    async def list_schedules(
        self, member_id: UUID, *, start_date: date, end_date: date
    ) -> list[ScheduleRecord]:
        return [
            record
            for record in self.schedules.values()
            if record.member_id == member_id and start_date <= record.date <= end_date
        ]

    async def insert_schedules(self, rows: Sequence[ScheduleInsert]) -> int:
        index = len(self.insert_batches)
        self.insert_batches.append(len(rows))
        if index in self.fail_insert_batches:
            raise RuntimeError(f"insert batch {index} rejected")
        for row in rows:
            record = ScheduleRecord(id=uuid4(), updated_at=self.clock(), **row.model_dump())
            self.schedules[record.id] = record
        return len(rows)

    async def update_schedule(self, update: ScheduleUpdate) -> None:
        self.update_calls.append(update.schedule_id)
        self._updates_in_flight += 1
        self.max_concurrent_updates = max(self.max_concurrent_updates, self._updates_in_flight)
        try:
            await asyncio.sleep(0)
            if update.schedule_id in self.fail_update_ids:
                raise RuntimeError(f"update of {update.schedule_id} rejected")
            current = self.schedules[update.schedule_id]
            changes = update.model_dump(exclude={"schedule_id"})
            self.schedules[update.schedule_id] = current.model_copy(update=changes)
        finally:
            self._updates_in_flight -= 1

    async def delete_schedules(self, schedule_ids: Sequence[UUID]) -> int:
        self.delete_calls.append(list(schedule_ids))
        if self.fail_delete:
            raise RuntimeError("bulk delete rejected")
        removed = 0
        for schedule_id in schedule_ids:
            if self.schedules.pop(schedule_id, None) is not None:
                removed += 1
        return removed

    async def set_external_event_id(self, schedule_id: UUID, event_id: str | None) -> None:
        current = self.schedules[schedule_id]
        self.schedules[schedule_id] = current.model_copy(
            update={"external_event_id": event_id, "updated_at": self.clock()}
        )

    async def clear_external_event_ids(self, member_id: UUID) -> int:
        cleared = 0
        for schedule_id, record in list(self.schedules.items()):
            if record.member_id == member_id and record.external_event_id is not None:
                self.schedules[schedule_id] = record.model_copy(update={"external_event_id": None})
                cleared += 1
        return cleared

    async def list_unclassified_schedules(self, member_id: UUID) -> list[ScheduleRecord]:
        rows = [
            r for r in self.schedules.values() if r.member_id == member_id and r.project_id is None
        ]
        return sorted(rows, key=lambda r: (r.date, r.start_time or time.min), reverse=True)

    async def assign_project(self, schedule_id: UUID, project_id: UUID) -> bool:
        current = self.schedules.get(schedule_id)
        if current is None:
            return False
        self.schedules[schedule_id] = current.model_copy(
            update={"project_id": project_id, "updated_at": self.clock()}
        )
        return True

    async def get_sync_settings(self, member_id: UUID) -> SyncSettings | None:
        return self.settings.get(member_id)

    async def upsert_sync_settings(
        self,
        member_id: UUID,
        *,
        is_enabled: bool,
        external_calendar_id: str | None,
    ) -> SyncSettings:
        existing = self.settings.get(member_id)
        settings = SyncSettings(
            member_id=member_id,
            is_enabled=is_enabled,
            external_calendar_id=external_calendar_id,
            last_sync_at=existing.last_sync_at if existing else None,
            updated_at=self.clock(),
        )
        self.settings[member_id] = settings
        return settings

    async def delete_sync_settings(self, member_id: UUID) -> None:
        self.settings.pop(member_id, None)

    async def mark_synced(self, member_id: UUID, at: datetime) -> None:
        self.synced.append((member_id, at))
        existing = self.settings.get(member_id)
        if existing is not None:
            self.settings[member_id] = existing.model_copy(update={"last_sync_at": at})


# ---------------------------------------------------------------------------
# Fake Google Calendar (httpx.MockTransport)
# ---------------------------------------------------------------------------


def _in_window(event: dict[str, Any], params: httpx.QueryParams) -> bool:
    boundary = event.get("start") or {}
    start = boundary.get("dateTime") or boundary.get("date")
    if not start or "timeMin" not in params:
        return True
    instant = parse_google_datetime(start)
    return (
        parse_google_datetime(params["timeMin"])
        <= instant
        < parse_google_datetime(params["timeMax"])
    )


class FakeGoogleCalendar:
    """Serves a fixed event list over the Calendar v3 REST shape."""

    def __init__(
        self,
        events: Sequence[dict[str, Any]] = (),
        *,
        page_size: int = 250,
        calendars: Sequence[dict[str, Any]] = (),
    ) -> None:
        self.events: list[dict[str, Any]] = list(events)
        self.calendars: list[dict[str, Any]] = list(calendars)
        self.page_size = page_size
        self.requests: list[httpx.Request] = []
        self.created: list[dict[str, Any]] = []
        self.patched: list[tuple[str, dict[str, Any]]] = []
        self.deleted: list[str] = []
        self.fail_status: int | None = None
        self.delete_status = 204

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(
                self.fail_status, json={"error": {"message": f"fake failure {self.fail_status}"}}
            )

        path = request.url.path
        if path.endswith("/users/me/calendarList"):
            return httpx.Response(200, json={"items": self.calendars})

        if path.endswith("/events") and request.method == "GET":
            listed = [e for e in self.events if _in_window(e, request.url.params)]
            offset = int(request.url.params.get("pageToken", "0"))
            limit = min(int(request.url.params.get("maxResults", self.page_size)), self.page_size)
            body: dict[str, Any] = {"items": listed[offset : offset + limit]}
            if offset + limit < len(listed):
                body["nextPageToken"] = str(offset + limit)
            return httpx.Response(200, json=body)

        if path.endswith("/events") and request.method == "POST":
            payload = json.loads(request.content)
            created = {**payload, "id": f"created-{len(self.created) + 1}", "status": "confirmed"}
            self.created.append(created)
            return httpx.Response(200, json=created)

        event_id = path.rsplit("/", 1)[-1]
        if request.method == "PATCH":
            payload = json.loads(request.content)
            self.patched.append((event_id, payload))
            return httpx.Response(200, json={**payload, "id": event_id})
        if request.method == "DELETE":
            self.deleted.append(event_id)
            return httpx.Response(self.delete_status)

        return httpx.Response(404, json={"error": {"message": "Not Found"}})

    def client(self) -> GoogleCalendarClient:
        return GoogleCalendarClient(
            base_url=GOOGLE_BASE_URL,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )


def google_event(
    event_id: str | None,
    *,
    summary: str = "work",
    start: str = "2025-03-10T09:00:00+09:00",
    end: str = "2025-03-10T10:00:00+09:00",
    status: str = "confirmed",
    updated: str | None = "2025-03-01T00:00:00Z",
    all_day: bool = False,
    **extra: Any,
) -> dict[str, Any]:
    """Build a Calendar v3 event payload."""
    event: dict[str, Any] = {"status": status, "summary": summary, **extra}
    if event_id is not None:
        event["id"] = event_id
    if all_day:
        event["start"] = {"date": start[:10]}
        event["end"] = {"date": end[:10]}
    else:
        event["start"] = {"dateTime": start}
        event["end"] = {"dateTime": end}
    if updated is not None:
        event["updated"] = updated
    return event


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def org_id() -> UUID:
    return uuid4()


@pytest.fixture
def member_id() -> UUID:
    return uuid4()


@pytest.fixture
def acme(org_id: UUID) -> Project:
    return Project(id=uuid4(), name="Acme")


@pytest.fixture
def store(member_id: UUID, org_id: UUID, acme: Project) -> InMemoryScheduleStore:
    return InMemoryScheduleStore(members={member_id: org_id}, projects=[acme])


@pytest.fixture
def fake_google() -> FakeGoogleCalendar:
    return FakeGoogleCalendar()
