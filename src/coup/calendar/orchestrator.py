"""Session-scoped coordination of calendar syncs.

The orchestrator drives the sync route over HTTP on behalf of one signed-in
member: routine full-window syncs (optionally on a timer), single-record
pushes, and the chunked monthly backfill. It never runs two syncs at once
and never lets an exception escape an entry point; failures are logged,
and backfill failures are reported through :class:`HistorySyncProgress`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from coup.calendar.models import (
    HistorySyncProgress,
    ScheduleAction,
    ScheduleDraft,
    SyncSettings,
    SyncStats,
)
from coup.calendar.session import SessionContext
from coup.config import DEFAULT_TIMEZONE, SyncTuning
from coup.core.logging import set_member_context

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/calendar/sync"
SETTINGS_PATH = "/api/calendar/settings"

AUTH_EXPIRED_MESSAGE = "Google authentication has expired. Please sign in again."
SYNC_DISABLED_MESSAGE = "Calendar sync is not enabled for this member."
BACKFILL_FAILED_MESSAGE = "History sync failed. Please try again."

OnSyncComplete = Callable[[], Awaitable[None]]


class SyncBackendError(RuntimeError):
    """Raised when the sync API answers with a non-2xx status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Sync API request failed ({status_code}): {message}")


# ---------------------------------------------------------------------------
# Month chunks
# ---------------------------------------------------------------------------


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    shifted_year, month_index = divmod(year * 12 + (month - 1) + delta, 12)
    return shifted_year, month_index + 1


@dataclass(frozen=True)
class MonthChunk:
    """One calendar month of a backfill."""

    year: int
    month: int
    is_history_sync: bool

    @property
    def label(self) -> str:
        return f"{self.year}-{self.month:02d}"

    def window(self, tz: tzinfo) -> tuple[datetime, datetime]:
        """``[first-of-month, first-of-next-month)`` at local midnight in *tz*."""
        next_year, next_month = _shift_month(self.year, self.month, 1)
        return (
            datetime(self.year, self.month, 1, tzinfo=tz),
            datetime(next_year, next_month, 1, tzinfo=tz),
        )


def build_month_chunks(
    today: date,
    start_year: int,
    start_month: int,
    *,
    future_months: int = 3,
) -> list[MonthChunk]:
    """Backfill order: upcoming months (furthest first), then now back to the start.

    The upcoming months and the current month are routine chunks; every
    older month is a history chunk.
    """
    if not 1 <= start_month <= 12:
        raise ValueError(f"start_month must be between 1 and 12, got {start_month}")

    months = [
        _shift_month(today.year, today.month, offset) for offset in range(future_months, 0, -1)
    ]
    months.append((today.year, today.month))
    cursor = _shift_month(today.year, today.month, -1)
    while cursor >= (start_year, start_month):
        months.append(cursor)
        cursor = _shift_month(*cursor, -1)

    routine_count = future_months + 1
    return [
        MonthChunk(year=year, month=month, is_history_sync=position >= routine_count)
        for position, (year, month) in enumerate(months)
    ]


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, SyncBackendError):
        return f"HTTP {exc.status_code} - {exc.message}"
    return str(exc) or type(exc).__name__


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SyncOrchestrator:
    """Coordinates syncs for one :class:`SessionContext`."""

    def __init__(
        self,
        *,
        session: SessionContext,
        api_client: httpx.AsyncClient,
        tuning: SyncTuning | None = None,
        timezone: str = DEFAULT_TIMEZONE,
        on_sync_complete: OnSyncComplete | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._api = api_client
        self._tuning = tuning or SyncTuning()
        self._tz = ZoneInfo(timezone)
        self._on_sync_complete = on_sync_complete
        self._clock = clock or (lambda: datetime.now(UTC))

        self._settings: SyncSettings | None = None
        self._settings_loaded = False
        self._is_syncing = False
        self._progress = HistorySyncProgress()
        self._wake_event = asyncio.Event()
        self._stop_event = asyncio.Event()

    # -- state -----------------------------------------------------------------

    @property
    def settings(self) -> SyncSettings | None:
        return self._settings

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def history_progress(self) -> HistorySyncProgress:
        """Snapshot of the current (or last) backfill's progress."""
        return self._progress.model_copy(deep=True)

    # -- HTTP ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Call the sync API; non-2xx answers raise :class:`SyncBackendError`."""
        response = await self._api.request(method, path, **kwargs)
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = None
        body = body if isinstance(body, dict) else {}
        if not response.is_success:
            raise SyncBackendError(
                status_code=response.status_code,
                message=str(body.get("error") or response.reason_phrase),
            )
        return body

    def _sync_body(self, settings: SyncSettings, access_token: str) -> dict[str, Any]:
        return {
            "memberId": str(self._session.member_id),
            "accessToken": access_token,
            "calendarId": settings.external_calendar_id,
        }

    async def _notify_complete(self) -> None:
        if self._on_sync_complete is None:
            return
        try:
            await self._on_sync_complete()
        except Exception:
            logger.warning("on_sync_complete callback failed", exc_info=True)

    # -- settings ----------------------------------------------------------------

    async def _fetch_settings(self, *, refresh: bool = False) -> SyncSettings | None:
        """Cached settings; None only when the member has none. Load failures raise."""
        if self._settings_loaded and not refresh:
            return self._settings
        payload = await self._request(
            "GET", SETTINGS_PATH, params={"memberId": str(self._session.member_id)}
        )
        raw = payload.get("settings")
        self._settings = SyncSettings.model_validate(raw) if raw else None
        self._settings_loaded = True
        return self._settings

    async def load_settings(self, *, refresh: bool = False) -> SyncSettings | None:
        """Fetch and cache the member's sync settings; None when absent or unreachable."""
        try:
            return await self._fetch_settings(refresh=refresh)
        except Exception:
            logger.warning("Failed to load calendar sync settings", exc_info=True)
            return None

    async def _enabled_settings(self) -> SyncSettings | None:
        """Settings when sync is on; None when it is off. Load failures raise."""
        if not self._session.is_active or not self._session.uses_google:
            return None
        settings = await self._fetch_settings()
        if settings is None or not settings.is_enabled or not settings.external_calendar_id:
            return None
        return settings

    # -- routine sync -------------------------------------------------------------

    async def sync_calendar(self) -> SyncStats | None:
        """Run one routine full-window sync.

        Returns None when a sync is already in flight, sync is disabled, no
        access token is available, or the sync failed.
        """
        if self._is_syncing:
            logger.debug("Calendar sync already in flight; skipping")
            return None
        self._is_syncing = True
        set_member_context(str(self._session.member_id))
        try:
            settings = await self._enabled_settings()
            if settings is None:
                return None
            access_token = await self._session.access_token()
            if access_token is None:
                logger.info("No calendar access token available; skipping sync")
                return None
            payload = await self._request(
                "POST", SYNC_PATH, json=self._sync_body(settings, access_token)
            )
            stats = SyncStats.model_validate(payload.get("stats"))
        except Exception:
            logger.error("Calendar sync failed", exc_info=True)
            return None
        finally:
            self._is_syncing = False

        await self._notify_complete()
        return stats

    async def sync_schedule(
        self,
        action: ScheduleAction,
        schedule: ScheduleDraft,
        *,
        project_name: str | None = None,
    ) -> str | None:
        """Mirror one schedule edit to the calendar; returns the event id when one exists."""
        if self._is_syncing:
            logger.debug("Calendar sync already in flight; skipping %s of %s", action, schedule.id)
            return None
        self._is_syncing = True
        set_member_context(str(self._session.member_id))
        try:
            settings = await self._enabled_settings()
            if settings is None:
                return None
            access_token = await self._session.access_token()
            if access_token is None:
                return None
            schedule_data = schedule.model_dump(mode="json", by_alias=True)
            schedule_data["projectName"] = project_name
            payload = await self._request(
                "POST",
                SYNC_PATH,
                json={
                    **self._sync_body(settings, access_token),
                    "action": action,
                    "scheduleData": schedule_data,
                },
            )
        except Exception:
            logger.error("Schedule %s sync (%s) failed", schedule.id, action, exc_info=True)
            return None
        finally:
            self._is_syncing = False

        event_id = payload.get("eventId")
        return event_id if isinstance(event_id, str) else None

    # -- backfill ------------------------------------------------------------------

    def _finish_backfill(self, *, error: str | None = None) -> HistorySyncProgress:
        self._progress.is_running = False
        self._progress.current_period = None
        self._progress.error = error
        return self.history_progress

    async def sync_history(self, start_year: int, start_month: int) -> HistorySyncProgress:
        """Backfill month by month from the upcoming months back to *start_year*-*start_month*.

        A failing month is recorded in ``failed_months`` and the backfill
        moves on. A second call while one is running is a no-op.
        """
        if self._progress.is_running:
            logger.debug("History sync already running; skipping")
            return self.history_progress

        set_member_context(str(self._session.member_id))
        self._progress = HistorySyncProgress(is_running=True)
        try:
            today = self._clock().astimezone(self._tz).date()
            chunks = build_month_chunks(
                today, start_year, start_month, future_months=self._tuning.future_months
            )
            self._progress.total_months = len(chunks)

            settings = await self._enabled_settings()
            if settings is None:
                return self._finish_backfill(error=SYNC_DISABLED_MESSAGE)

            pause = self._tuning.chunk_pause_ms / 1000
            for position, chunk in enumerate(chunks):
                access_token = await self._session.access_token()
                if access_token is None:
                    return self._finish_backfill(error=AUTH_EXPIRED_MESSAGE)

                self._progress.current_period = chunk.label
                await self._sync_month(chunk, settings, access_token)
                self._progress.completed_months = position + 1

                if pause > 0 and position < len(chunks) - 1:
                    await asyncio.sleep(pause)
        except Exception:
            logger.error("History sync failed", exc_info=True)
            return self._finish_backfill(error=BACKFILL_FAILED_MESSAGE)

        progress = self._finish_backfill()
        logger.info(
            "History sync done: months=%d events=%d failed=%d",
            progress.completed_months,
            progress.total_events,
            len(progress.failed_months),
        )
        await self._notify_complete()
        return progress

    async def _sync_month(
        self, chunk: MonthChunk, settings: SyncSettings, access_token: str
    ) -> None:
        time_min, time_max = chunk.window(self._tz)
        try:
            payload = await self._request(
                "POST",
                SYNC_PATH,
                json={
                    **self._sync_body(settings, access_token),
                    "syncOptions": {
                        "startDate": time_min.isoformat(),
                        "endDate": time_max.isoformat(),
                        "isHistorySync": chunk.is_history_sync,
                    },
                },
            )
            stats = SyncStats.model_validate(payload.get("stats"))
        except Exception as exc:
            logger.warning("History sync of %s failed: %s", chunk.label, exc)
            self._progress.failed_months.append(f"{chunk.label}: {_failure_reason(exc)}")
            return
        self._progress.total_events += stats.fetched

    # -- auto sync ---------------------------------------------------------------

    async def run_auto_sync(self, interval_seconds: float | None = None) -> None:
        """Run routine syncs every interval until :meth:`stop` is called."""
        interval = (
            interval_seconds
            if interval_seconds is not None
            else self._tuning.auto_sync_interval_minutes * 60
        )
        self._stop_event.clear()
        logger.debug("Calendar auto-sync loop started (interval=%ss)", interval)
        while not self._stop_event.is_set():
            await self.sync_calendar()
            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=interval)
                self._wake_event.clear()
            except TimeoutError:
                pass
        logger.debug("Calendar auto-sync loop stopped")

    def request_sync(self) -> None:
        """Wake the auto-sync loop for an immediate sync."""
        self._wake_event.set()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
