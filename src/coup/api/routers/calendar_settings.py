"""Per-member calendar sync settings: read, connect a calendar, disconnect."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from coup.api.deps import get_calendar_client, get_store
from coup.api.models import (
    CalendarSummary,
    SettingsResponse,
    SettingsUpdateRequest,
    SettingsUpdateResponse,
    SuccessResponse,
)
from coup.calendar.google import CalendarError, GoogleCalendarClient
from coup.calendar.store import ScheduleStore

router = APIRouter(prefix="/api/calendar/settings", tags=["calendar", "settings"])
logger = logging.getLogger(__name__)

OWNER_ACCESS_ROLE = "owner"


async def _owned_calendars(
    calendar: GoogleCalendarClient, access_token: str
) -> list[CalendarSummary] | None:
    try:
        entries = await calendar.list_calendars(access_token)
    except CalendarError as exc:
        logger.warning("Failed to list calendars: %s", exc)
        return None
    return [
        CalendarSummary(
            id=entry.id,
            title=entry.summary or entry.id,
            access_role=entry.access_role,
            primary=entry.primary,
        )
        for entry in entries
        if entry.access_role == OWNER_ACCESS_ROLE
    ]


@router.get("", response_model=SettingsResponse)
async def get_settings(
    member_id: UUID = Query(alias="memberId"),
    access_token: str | None = Query(default=None, alias="accessToken"),
    store: ScheduleStore = Depends(get_store),
    calendar: GoogleCalendarClient = Depends(get_calendar_client),
) -> SettingsResponse:
    """Return the member's settings and, given a token, the calendars they own."""
    settings = await store.get_sync_settings(member_id)
    calendars = await _owned_calendars(calendar, access_token) if access_token else None
    return SettingsResponse(settings=settings, calendars=calendars)


@router.post("", response_model=SettingsUpdateResponse)
async def connect_calendar(
    body: SettingsUpdateRequest,
    store: ScheduleStore = Depends(get_store),
) -> SettingsUpdateResponse:
    """Enable sync against the chosen calendar."""
    settings = await store.upsert_sync_settings(
        body.member_id,
        is_enabled=True,
        external_calendar_id=body.calendar_id,
    )
    logger.info("Calendar sync enabled for %s (calendar=%s)", body.member_id, body.calendar_id)
    return SettingsUpdateResponse(success=True, settings=settings)


@router.delete("", response_model=SuccessResponse)
async def disconnect_calendar(
    member_id: UUID = Query(alias="memberId"),
    store: ScheduleStore = Depends(get_store),
) -> SuccessResponse:
    """Remove the settings and unlink every schedule from its calendar event."""
    await store.delete_sync_settings(member_id)
    unlinked = await store.clear_external_event_ids(member_id)
    logger.info("Calendar sync disconnected for %s (%d schedules unlinked)", member_id, unlinked)
    return SuccessResponse()
