"""Request/response models for the HTTP API.

Wire names are camelCase; Python attributes are snake_case.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from coup.calendar.models import ScheduleAction, ScheduleDraft, SyncSettings, SyncStats


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to list responses."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """``{"data": T, "meta": {...}}`` wrapper for list/detail endpoints."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorResponse(BaseModel):
    """Error body returned with every non-2xx status."""

    error: str


class SuccessResponse(BaseModel):
    success: bool = True


# ---------------------------------------------------------------------------
# Sync trigger
# ---------------------------------------------------------------------------


class SyncOptions(_CamelModel):
    """Window overrides for one full sync; bare dates mean local midnight."""

    start_date: datetime | date | None = None
    end_date: datetime | date | None = None
    max_results: int | None = Field(default=None, ge=1)
    is_history_sync: bool = False


class ScheduleData(ScheduleDraft):
    """A schedule as submitted for a single-record push."""

    external_event_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "externalEventId", "external_event_id", "googleEventId", "google_event_id"
        ),
    )
    project_name: str | None = None


class SyncRequest(_CamelModel):
    member_id: UUID
    access_token: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)
    action: ScheduleAction | None = None
    schedule_data: ScheduleData | None = None
    sync_options: SyncOptions | None = None


class SyncResponse(_CamelModel):
    """Full sync answers with ``stats``; a single-record push with ``eventId``."""

    success: bool = True
    stats: SyncStats | None = None
    event_id: str | None = None


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class CalendarSummary(_CamelModel):
    id: str
    title: str
    access_role: str | None = None
    primary: bool = False


class SettingsResponse(_CamelModel):
    settings: SyncSettings | None = None
    calendars: list[CalendarSummary] | None = None


class SettingsUpdateRequest(_CamelModel):
    member_id: UUID
    calendar_id: str = Field(min_length=1)


class SettingsUpdateResponse(_CamelModel):
    success: bool = True
    settings: SyncSettings


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


class AssignProjectRequest(_CamelModel):
    project_id: UUID
