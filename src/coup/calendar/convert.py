"""Conversion between schedule records and Google Calendar events.

These two functions are the only place the loosely-typed provider payload
meets the typed schedule domain. Titles carry the project name as a
``[Project] description`` prefix; the private extended properties carry
the authoritative project and schedule ids.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from coup.calendar.google import (
    PRIVATE_PROJECT_ID_KEY,
    PRIVATE_PROJECT_NAME_KEY,
    PRIVATE_SCHEDULE_ID_KEY,
    GoogleEvent,
    GoogleEventTime,
    GoogleExtendedProperties,
    parse_google_datetime,
)
from coup.calendar.models import ScheduleDraft, ScheduleFields, compute_minutes
from coup.config import DEFAULT_TIMEZONE

__all__ = ["compute_minutes", "event_title", "from_external_event", "to_external_event"]

_TITLE_PREFIX = re.compile(r"^\[(.+?)\]\s*")
_DEFAULT_START_TIME = time(9, 0)


def event_title(description: str, project_name: str | None) -> str:
    if project_name:
        return f"[{project_name}] {description}"
    return description


def _local_stamp(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:00")


def to_external_event(
    schedule: ScheduleDraft,
    *,
    project_name: str | None = None,
    timezone: str = DEFAULT_TIMEZONE,
    default_start_time: time = _DEFAULT_START_TIME,
    default_title: str = "Work",
) -> GoogleEvent:
    """Render a schedule as a Google Calendar event body.

    A missing start time falls back to *default_start_time*; a missing end
    time is derived as start + ``minutes``. An end that falls before the
    start lands on the following day. The event is stamped in *timezone*.
    """
    start = datetime.combine(schedule.date, schedule.start_time or default_start_time)
    if schedule.end_time is None:
        end = start + timedelta(minutes=schedule.minutes)
    else:
        end = datetime.combine(schedule.date, schedule.end_time)
        if end < start:
            end += timedelta(days=1)
    description = schedule.description or ""

    return GoogleEvent(
        summary=event_title(description or default_title, project_name),
        description=description,
        start=GoogleEventTime(
            dateTime=_local_stamp(start),
            timeZone=timezone,
        ),
        end=GoogleEventTime(
            dateTime=_local_stamp(end),
            timeZone=timezone,
        ),
        extendedProperties=GoogleExtendedProperties(
            private={
                PRIVATE_PROJECT_ID_KEY: str(schedule.project_id) if schedule.project_id else "",
                PRIVATE_PROJECT_NAME_KEY: project_name or "",
                PRIVATE_SCHEDULE_ID_KEY: str(schedule.id),
            }
        ),
    )


def _zone(name: str | None, fallback: tzinfo) -> tzinfo:
    if not name:
        return fallback
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return fallback


def _local_boundary(boundary: GoogleEventTime, tz: tzinfo) -> tuple[date, time | None]:
    if boundary.date_time:
        instant = parse_google_datetime(boundary.date_time)
        if "T" in boundary.date_time and _is_naive(boundary.date_time):
            # Offset-less dateTime is wall-clock time in the boundary's zone.
            instant = instant.replace(tzinfo=_zone(boundary.time_zone, tz))
        local = instant.astimezone(tz)
        return local.date(), local.time().replace(second=0, microsecond=0)
    if boundary.date:
        try:
            return date.fromisoformat(boundary.date), None
        except ValueError as exc:
            raise ValueError(f"Invalid all-day date from Google: {boundary.date!r}") from exc
    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _is_naive(value: str) -> bool:
    clock = value.strip().split("T", 1)[1]
    return not (clock.endswith("Z") or "+" in clock or "-" in clock)


def from_external_event(
    event: GoogleEvent,
    *,
    timezone: str = DEFAULT_TIMEZONE,
) -> ScheduleFields:
    """Extract schedule fields from an event, expressed in *timezone*.

    Raises ``ValueError`` when the event has no id or no usable start.
    """
    if not event.id or not event.id.strip():
        raise ValueError("Google Calendar event payload is missing a non-empty id")
    if event.start is None:
        raise ValueError(f"Google Calendar event '{event.id}' is missing a start boundary")

    tz = _zone(timezone, ZoneInfo(DEFAULT_TIMEZONE))
    all_day = event.start.is_all_day
    event_date, start_time = _local_boundary(event.start, tz)
    end_time: time | None = None
    if not all_day and event.end is not None and not event.end.is_all_day:
        _, end_time = _local_boundary(event.end, tz)
    if all_day:
        start_time = None

    summary = (event.summary or "").strip()
    project_name: str | None = None
    description = summary
    match = _TITLE_PREFIX.match(summary)
    if match:
        project_name = match.group(1)
        description = summary[match.end() :]
    description = description or (event.description or "")

    private = event.private_properties
    project_name = private.get(PRIVATE_PROJECT_NAME_KEY) or project_name
    project_id = private.get(PRIVATE_PROJECT_ID_KEY) or None

    creator_self = event.creator.self_ if event.creator else False
    organizer_self = event.organizer.self_ if event.organizer else False
    is_read_only = all_day or not (creator_self or organizer_self or event.guests_can_modify)

    return ScheduleFields(
        date=event_date,
        start_time=start_time,
        end_time=end_time,
        description=description,
        project_name=project_name,
        project_id=project_id,
        external_event_id=event.id.strip(),
        all_day=all_day,
        is_read_only=is_read_only,
    )
