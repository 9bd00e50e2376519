"""FastAPI dependency providers.

Process-wide resources (database pool, calendar client) are created in the
app lifespan via :func:`init_dependencies` and handed to routes through
the ``get_*`` providers below. Tests replace them with
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Request

from coup.calendar.engine import ReconciliationEngine
from coup.calendar.google import GoogleCalendarClient
from coup.calendar.store import PostgresScheduleStore, ScheduleStore
from coup.config import CoupConfig
from coup.db import Database

logger = logging.getLogger(__name__)

_database: Database | None = None
_calendar_client: GoogleCalendarClient | None = None


async def init_dependencies(config: CoupConfig) -> None:
    """Create the calendar client and connect the database pool.

    A database that cannot be reached is logged; routes that need it then
    fail with a 500 until the service is restarted.
    """
    global _database, _calendar_client  # noqa: PLW0603

    _calendar_client = GoogleCalendarClient(
        base_url=config.calendar.api_base_url,
        timeout=config.calendar.request_timeout_s,
    )

    db = Database.from_env()
    try:
        await db.connect()
    except Exception:
        logger.warning(
            "Failed to connect to database %s; DB endpoints will be unavailable",
            db.db_name,
            exc_info=True,
        )
        return
    _database = db


async def shutdown_dependencies() -> None:
    global _database, _calendar_client  # noqa: PLW0603
    if _calendar_client is not None:
        await _calendar_client.aclose()
        _calendar_client = None
    if _database is not None:
        await _database.close()
        _database = None


def get_config(request: Request) -> CoupConfig:
    """FastAPI dependency: the configuration the app was created with."""
    return request.app.state.config


def get_store() -> ScheduleStore:
    """FastAPI dependency: the PostgreSQL-backed schedule store."""
    if _database is None:
        raise RuntimeError("Database not initialized; call init_dependencies() first")
    return PostgresScheduleStore(_database.require_pool())


def get_calendar_client() -> GoogleCalendarClient:
    """FastAPI dependency: the shared Google Calendar client."""
    if _calendar_client is None:
        raise RuntimeError("Calendar client not initialized; call init_dependencies() first")
    return _calendar_client


def get_engine(
    store: ScheduleStore = Depends(get_store),
    calendar: GoogleCalendarClient = Depends(get_calendar_client),
    config: CoupConfig = Depends(get_config),
) -> ReconciliationEngine:
    """FastAPI dependency: a reconciliation engine bound to the request's resources."""
    return ReconciliationEngine.from_config(config, store=store, calendar=calendar)
