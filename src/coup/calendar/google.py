"""Google Calendar REST adapter.

Thin, token-per-call client over the Calendar v3 API. The caller supplies
the member's OAuth access token on every call; token refresh is the
session's concern, not this module's. Failed requests are not retried.

Provider payloads are modelled loosely (``extra="allow"``) and only
converted into the typed schedule domain by ``coup.calendar.convert``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

from coup.config import DEFAULT_GOOGLE_CALENDAR_API_BASE_URL

logger = logging.getLogger(__name__)

PRIVATE_PROJECT_ID_KEY = "projectId"
PRIVATE_PROJECT_NAME_KEY = "projectName"
PRIVATE_SCHEDULE_ID_KEY = "scheduleId"

# Statuses that mean "the event is already gone" on delete.
_ALREADY_DELETED_STATUS_CODES = frozenset({404, 410})


class CalendarError(RuntimeError):
    """Base error raised by the external calendar adapter."""


class CalendarRequestError(CalendarError):
    """Raised when a Google Calendar API request returns a non-2xx status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CalendarTransportError(CalendarError):
    """Raised when the request never produced an HTTP response."""


# ---------------------------------------------------------------------------
# Provider payload models
# ---------------------------------------------------------------------------


class _GoogleModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class GoogleEventTime(_GoogleModel):
    """Either a timed boundary (``dateTime``) or an all-day one (``date``)."""

    date_time: str | None = Field(default=None, alias="dateTime")
    date: str | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")

    @property
    def is_all_day(self) -> bool:
        return not self.date_time and bool(self.date)


class GoogleEventPerson(_GoogleModel):
    email: str | None = None
    self_: bool = Field(default=False, alias="self")


class GoogleExtendedProperties(_GoogleModel):
    private: dict[str, str] = Field(default_factory=dict)
    shared: dict[str, str] = Field(default_factory=dict)


class GoogleEvent(_GoogleModel):
    """A Google Calendar event resource as sent and received on the wire."""

    id: str | None = None
    status: str | None = None
    summary: str | None = None
    description: str | None = None
    start: GoogleEventTime | None = None
    end: GoogleEventTime | None = None
    updated: str | None = None
    creator: GoogleEventPerson | None = None
    organizer: GoogleEventPerson | None = None
    guests_can_modify: bool | None = Field(default=None, alias="guestsCanModify")
    extended_properties: GoogleExtendedProperties | None = Field(
        default=None, alias="extendedProperties"
    )

    @property
    def is_cancelled(self) -> bool:
        return (self.status or "").strip().lower() == "cancelled"

    @property
    def private_properties(self) -> dict[str, str]:
        if self.extended_properties is None:
            return {}
        return self.extended_properties.private

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EventsPage(_GoogleModel):
    """One page of an ``events.list`` response."""

    items: list[GoogleEvent] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")
    next_sync_token: str | None = Field(default=None, alias="nextSyncToken")


class CalendarListEntry(_GoogleModel):
    id: str
    summary: str | None = None
    primary: bool = False
    access_role: str | None = Field(default=None, alias="accessRole")
    background_color: str | None = Field(default=None, alias="backgroundColor")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_MAX_ERROR_CHARS = 200


def _squash(text: str) -> str:
    return " ".join(text.split())[:_MAX_ERROR_CHARS]


def _error_detail(response: httpx.Response) -> str:
    """Best human-readable reason from a failed Google response.

    Google wraps failures as ``{"error": {"message": ...}}``; proxies in
    front of it sometimes answer with plain text instead.
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        error = error.get("message")
    if isinstance(error, str) and error.strip():
        return _squash(error)
    return _squash(response.text) or f"HTTP {response.status_code} with an empty body"


def _raise_for_status(response: httpx.Response) -> None:
    if not response.is_success:
        raise CalendarRequestError(
            status_code=response.status_code, message=_error_detail(response)
        )


def google_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_google_datetime(value: str) -> datetime:
    """Parse an RFC 3339 timestamp; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Unparseable Google Calendar timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _segment(value: str, name: str) -> str:
    """URL-encode one path segment, rejecting blank ids."""
    if not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return quote(value.strip(), safe="")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Calendar v3 calls authenticated with a caller-supplied bearer token."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_GOOGLE_CALENDAR_API_BASE_URL,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._external_client = http_client is not None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    def _events_path(self, calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{_segment(calendar_id, 'calendar_id')}/events"
        if event_id is not None:
            path += f"/{_segment(event_id, 'event_id')}"
        return path

    async def _send(
        self, method: str, path: str, access_token: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                self._base_url + path,
                headers={"Authorization": f"Bearer {access_token}"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise CalendarTransportError(f"Could not reach Google Calendar: {exc}") from exc

    async def _call(self, method: str, path: str, access_token: str, **kwargs: Any) -> dict:
        response = await self._send(method, path, access_token, **kwargs)
        _raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise CalendarError(f"Google Calendar sent invalid JSON for {method} {path}") from exc
        if not isinstance(body, dict):
            raise CalendarError(f"Google Calendar sent a non-object body for {method} {path}")
        return body

    async def list_calendars(self, access_token: str) -> list[CalendarListEntry]:
        """Return the calendars on the member's calendar list."""
        body = await self._call("GET", "/users/me/calendarList", access_token)
        return [
            CalendarListEntry.model_validate(raw)
            for raw in body.get("items") or []
            if isinstance(raw, dict) and raw.get("id")
        ]

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int | None = None,
        sync_token: str | None = None,
        page_token: str | None = None,
    ) -> EventsPage:
        """Fetch one page of events.

        With a ``sync_token`` the listing is incremental and includes deleted
        events; otherwise recurring events are expanded into single instances
        ordered by start time within ``[time_min, time_max)``.
        """
        if max_results is not None and max_results < 1:
            raise ValueError("max_results must be at least 1")

        query: dict[str, Any] = {"singleEvents": "true"}
        if sync_token is None:
            query["orderBy"] = "startTime"
            if time_min is not None:
                query["timeMin"] = google_rfc3339(time_min)
            if time_max is not None:
                query["timeMax"] = google_rfc3339(time_max)
        else:
            query.update(syncToken=sync_token, showDeleted="true")
        if max_results is not None:
            query["maxResults"] = max_results
        if page_token is not None:
            query["pageToken"] = page_token

        body = await self._call("GET", self._events_path(calendar_id), access_token, params=query)
        return EventsPage(
            items=[
                GoogleEvent.model_validate(raw)
                for raw in body.get("items") or []
                if isinstance(raw, dict)
            ],
            nextPageToken=body.get("nextPageToken"),
            nextSyncToken=body.get("nextSyncToken"),
        )

    async def create_event(
        self, access_token: str, calendar_id: str, event: GoogleEvent
    ) -> GoogleEvent:
        body = await self._call(
            "POST", self._events_path(calendar_id), access_token, json=event.to_payload()
        )
        created = GoogleEvent.model_validate(body)
        if not created.id:
            raise CalendarError("Google Calendar create response is missing an event id")
        return created

    async def update_event(
        self, access_token: str, calendar_id: str, event_id: str, event: GoogleEvent
    ) -> GoogleEvent:
        """Patch an existing event with the non-null fields of *event*."""
        body = await self._call(
            "PATCH",
            self._events_path(calendar_id, event_id),
            access_token,
            json=event.to_payload(),
        )
        return GoogleEvent.model_validate(body)

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        """Delete an event; an event that is already gone counts as success."""
        response = await self._send(
            "DELETE", self._events_path(calendar_id, event_id), access_token
        )
        if response.status_code in _ALREADY_DELETED_STATUS_CODES:
            logger.debug("Event %s was already gone (%d)", event_id, response.status_code)
            return
        _raise_for_status(response)

    async def aclose(self) -> None:
        if not self._external_client:
            await self._http.aclose()
