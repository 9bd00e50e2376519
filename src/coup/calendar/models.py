"""Typed domain model for schedule records and calendar sync state.

Everything inside the reconciliation engine works on these models; the
loosely-typed provider payloads only exist in ``coup.calendar.google`` and
are converted at the ``coup.calendar.convert`` boundary.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

ScheduleAction = Literal["create", "update", "delete"]
BatchKind = Literal["insert", "update", "delete"]


class _CamelModel(BaseModel):
    """Base for models that cross the JSON boundary in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Schedule records
# ---------------------------------------------------------------------------


class ScheduleDraft(_CamelModel):
    """The schedule fields needed to render an external calendar event.

    ``minutes`` is derived from ``end_time - start_time`` (floored at zero)
    when it is not supplied.
    """

    id: UUID
    date: dt.date
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    minutes: int = Field(default=0, ge=0)
    description: str | None = None
    project_id: UUID | None = None
    external_event_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _derive_minutes(cls, data: object) -> object:
        if not isinstance(data, dict):
            return data
        if data.get("minutes") is not None:
            return data
        start = data.get("start_time", data.get("startTime"))
        end = data.get("end_time", data.get("endTime"))
        derived = dict(data)
        derived["minutes"] = compute_minutes(_as_time(start), _as_time(end))
        return derived


class ScheduleRecord(ScheduleDraft):
    """An internally stored schedule row owned by one member."""

    member_id: UUID
    org_id: UUID
    is_read_only: bool = False
    updated_at: dt.datetime


def compute_minutes(start_time: dt.time | None, end_time: dt.time | None) -> int:
    """Clock-time duration in whole minutes, floored at zero.

    Returns 0 when either bound is missing (all-day events).
    """
    if start_time is None or end_time is None:
        return 0
    start = start_time.hour * 60 + start_time.minute
    end = end_time.hour * 60 + end_time.minute
    return max(0, end - start)


def _as_time(value: object) -> dt.time | None:
    if isinstance(value, dt.time):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return dt.time.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


class ScheduleFields(BaseModel):
    """Schedule fields recovered from one external calendar event."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    description: str = ""
    project_name: str | None = None
    project_id: str | None = None
    external_event_id: str
    all_day: bool = False
    is_read_only: bool = False


class ScheduleInsert(BaseModel):
    """A staged insert produced by reconciliation."""

    org_id: UUID
    member_id: UUID
    project_id: UUID | None = None
    date: dt.date
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    description: str | None = None
    minutes: int = Field(ge=0)
    external_event_id: str
    is_read_only: bool = False


class ScheduleUpdate(BaseModel):
    """A staged in-place update of an existing schedule row."""

    schedule_id: UUID
    project_id: UUID | None = None
    date: dt.date
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    description: str | None = None
    minutes: int = Field(ge=0)
    is_read_only: bool = False
    updated_at: dt.datetime


class Project(BaseModel):
    id: UUID
    name: str


# ---------------------------------------------------------------------------
# Sync settings and windows
# ---------------------------------------------------------------------------


class SyncSettings(_CamelModel):
    """Per-member calendar sync settings."""

    member_id: UUID
    is_enabled: bool = False
    external_calendar_id: str | None = None
    last_sync_at: dt.datetime | None = None
    sync_token: str | None = None
    updated_at: dt.datetime | None = None


class SyncWindow(BaseModel):
    """Half-open instant range ``[time_min, time_max)`` fetched in one sync."""

    time_min: dt.datetime
    time_max: dt.datetime
    is_history_sync: bool = False
    max_results: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> SyncWindow:
        if self.time_min.tzinfo is None or self.time_max.tzinfo is None:
            raise ValueError("sync window bounds must be timezone-aware")
        if self.time_min >= self.time_max:
            raise ValueError("sync window start must be before its end")
        return self

    @classmethod
    def around(
        cls,
        now: dt.datetime,
        *,
        past_days: int,
        future_days: int,
    ) -> SyncWindow:
        """The routine window ``[now - past_days, now + future_days]``."""
        return cls(
            time_min=now - dt.timedelta(days=past_days),
            time_max=now + dt.timedelta(days=future_days),
        )

    def date_range(self, tz: dt.tzinfo) -> tuple[dt.date, dt.date]:
        """Local calendar dates covered by the window.

        The end bound is exclusive, so a window ending exactly at local
        midnight does not cover that day.
        """
        first = self.time_min.astimezone(tz).date()
        last = (self.time_max - dt.timedelta(microseconds=1)).astimezone(tz).date()
        return first, last

    def whole_days(self, tz: dt.tzinfo) -> tuple[dt.date, dt.date]:
        """First and last local dates whose full day lies inside the window.

        The result is an empty range (first > last) when no day is fully
        covered.
        """
        local_min = self.time_min.astimezone(tz)
        first = local_min.date()
        if self.time_min > dt.datetime.combine(first, dt.time.min, tzinfo=tz):
            first += dt.timedelta(days=1)
        last = self.time_max.astimezone(tz).date() - dt.timedelta(days=1)
        return first, last


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one persistence batch (insert batch, update group, bulk delete)."""

    kind: BatchKind
    index: int
    attempted: int
    succeeded: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: dt.datetime = Field(alias="from")
    to: dt.datetime


class SyncStats(_CamelModel):
    """Aggregate counts returned by a full-window sync."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    sync_range: SyncRange
    is_history_sync: bool = False


@dataclass
class SyncReport:
    """Full result of one reconciliation run, including per-batch outcomes."""

    stats: SyncStats
    batches: list[BatchResult]

    @property
    def failed_batches(self) -> list[BatchResult]:
        return [batch for batch in self.batches if not batch.ok]


class HistorySyncProgress(_CamelModel):
    """Progress of a chunked historical backfill, suitable for UI display."""

    is_running: bool = False
    current_period: str | None = None
    total_months: int = 0
    completed_months: int = 0
    total_events: int = 0
    failed_months: list[str] = Field(default_factory=list)
    error: str | None = None
