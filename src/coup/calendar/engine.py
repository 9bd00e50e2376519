"""Full-window reconciliation between Google Calendar and stored schedules.

One run pulls every event in a :class:`SyncWindow`, diffs it against the
member's schedules in the same window and writes three change sets:

- inserts for events with no correlated schedule, in sequential batches;
- updates for correlated schedules whose event was edited more recently
  (last writer wins on timestamps), in sequential groups whose members run
  concurrently;
- deletes for cancelled events and, outside history mode, for schedules
  whose event no longer appears in the window, as one bulk operation.

Event conversion fails fast: a malformed event aborts the run before any
write. Writes fail soft: a failed batch is reported as a
:class:`BatchResult` with zero successes and the run moves on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from typing import Any, TypeVar
from uuid import UUID
from zoneinfo import ZoneInfo

from coup.calendar.convert import compute_minutes, from_external_event, to_external_event
from coup.calendar.google import GoogleCalendarClient, GoogleEvent, parse_google_datetime
from coup.calendar.models import (
    BatchResult,
    Project,
    ScheduleAction,
    ScheduleDraft,
    ScheduleFields,
    ScheduleInsert,
    ScheduleRecord,
    ScheduleUpdate,
    SyncRange,
    SyncReport,
    SyncStats,
    SyncWindow,
)
from coup.calendar.store import ScheduleStore
from coup.config import DEFAULT_TIMEZONE, CoupConfig
from coup.core.logging import set_member_context

logger = logging.getLogger(__name__)

DEFAULT_INSERT_BATCH_SIZE = 100
DEFAULT_UPDATE_GROUP_SIZE = 10

_T = TypeVar("_T")


class SyncError(RuntimeError):
    """Base error for reconciliation failures."""


class MemberNotFoundError(SyncError):
    def __init__(self, member_id: UUID) -> None:
        self.member_id = member_id
        super().__init__(f"Member not found: {member_id}")


class EventConversionError(SyncError):
    """A fetched event could not be turned into schedule fields."""

    def __init__(self, event_id: str, reason: str) -> None:
        self.event_id = event_id
        super().__init__(f"Cannot convert Google event {event_id}: {reason}")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _chunks(items: Sequence[_T], size: int) -> list[Sequence[_T]]:
    return [items[start : start + size] for start in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


@dataclass
class SyncPlan:
    """Change sets staged by one diff pass."""

    inserts: list[ScheduleInsert] = field(default_factory=list)
    updates: list[ScheduleUpdate] = field(default_factory=list)
    deletes: list[UUID] = field(default_factory=list)


def _resolve_project_id(
    fields: ScheduleFields,
    *,
    projects_by_name: dict[str, UUID],
    known_project_ids: set[UUID],
) -> UUID | None:
    if fields.project_id:
        try:
            carried = UUID(fields.project_id)
        except ValueError:
            carried = None
        if carried is not None and carried in known_project_ids:
            return carried
    if fields.project_name:
        return projects_by_name.get(fields.project_name)
    return None


def _event_timestamp(event: GoogleEvent, fields: ScheduleFields, tz: ZoneInfo) -> datetime:
    """Provider modification time, falling back to the event's start instant."""
    if event.updated:
        return parse_google_datetime(event.updated)
    return datetime.combine(fields.date, fields.start_time or time.min, tzinfo=tz)


def _correlate(existing: Sequence[ScheduleRecord]) -> dict[str, ScheduleRecord]:
    by_event_id: dict[str, ScheduleRecord] = {}
    for record in existing:
        event_id = record.external_event_id
        if not event_id:
            continue
        kept = by_event_id.get(event_id)
        if kept is not None:
            logger.warning(
                "Schedules %s and %s share external event %s; reconciling %s only",
                kept.id,
                record.id,
                event_id,
                kept.id,
            )
            continue
        by_event_id[event_id] = record
    return by_event_id


def build_plan(
    events: Sequence[GoogleEvent],
    existing: Sequence[ScheduleRecord],
    projects: Sequence[Project],
    *,
    org_id: UUID,
    member_id: UUID,
    now: datetime,
    timezone: str = DEFAULT_TIMEZONE,
    is_history_sync: bool = False,
    detect_orphans: bool = True,
    orphan_dates: tuple[date, date] | None = None,
) -> SyncPlan:
    """Diff *events* against *existing* schedules and stage the writes.

    Orphan detection runs only when *detect_orphans* is set and the run is
    not a history sync. With *orphan_dates* it is limited to schedules
    dated inside that inclusive range; a schedule on a partially listed
    day may belong to an event outside the listing. Raises
    :class:`EventConversionError` on the first event that cannot be
    converted.
    """
    tz = ZoneInfo(timezone)
    correlated = _correlate(existing)
    projects_by_name = {project.name: project.id for project in projects}
    known_project_ids = {project.id for project in projects}

    plan = SyncPlan()
    staged_deletes: set[UUID] = set()
    seen_event_ids: set[str] = set()
    active_event_ids: set[str] = set()

    for event in events:
        event_id = (event.id or "").strip()
        if not event_id:
            logger.debug("Skipping event without an id (summary=%r)", event.summary)
            continue
        if event_id in seen_event_ids:
            logger.debug("Skipping duplicate event %s in listing", event_id)
            continue
        seen_event_ids.add(event_id)
        record = correlated.get(event_id)

        if event.is_cancelled:
            if record is not None and record.id not in staged_deletes:
                plan.deletes.append(record.id)
                staged_deletes.add(record.id)
            continue

        active_event_ids.add(event_id)
        try:
            fields = from_external_event(event, timezone=timezone)
        except ValueError as exc:
            raise EventConversionError(event_id, str(exc)) from exc
        project_id = _resolve_project_id(
            fields,
            projects_by_name=projects_by_name,
            known_project_ids=known_project_ids,
        )
        minutes = 0 if fields.all_day else compute_minutes(fields.start_time, fields.end_time)
        description = fields.description or None

        if record is None:
            plan.inserts.append(
                ScheduleInsert(
                    org_id=org_id,
                    member_id=member_id,
                    project_id=project_id,
                    date=fields.date,
                    start_time=fields.start_time,
                    end_time=fields.end_time,
                    description=description,
                    minutes=minutes,
                    external_event_id=event_id,
                    is_read_only=fields.is_read_only,
                )
            )
            continue

        if _event_timestamp(event, fields, tz) > _aware(record.updated_at):
            plan.updates.append(
                ScheduleUpdate(
                    schedule_id=record.id,
                    project_id=project_id,
                    date=fields.date,
                    start_time=fields.start_time,
                    end_time=fields.end_time,
                    description=description,
                    minutes=minutes,
                    is_read_only=fields.is_read_only,
                    updated_at=now,
                )
            )

    if detect_orphans and not is_history_sync:
        first_day, last_day = orphan_dates or (date.min, date.max)
        for record in existing:
            if (
                record.external_event_id
                and first_day <= record.date <= last_day
                and record.external_event_id not in active_event_ids
                and record.id not in staged_deletes
            ):
                plan.deletes.append(record.id)
                staged_deletes.add(record.id)

    return plan


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """Runs full-window syncs and single-record pushes for one organization timezone."""

    def __init__(
        self,
        *,
        store: ScheduleStore,
        calendar: GoogleCalendarClient,
        timezone: str = DEFAULT_TIMEZONE,
        insert_batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
        update_group_size: int = DEFAULT_UPDATE_GROUP_SIZE,
        default_start_time: time = time(9, 0),
        default_title: str = "Work",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if insert_batch_size < 1 or update_group_size < 1:
            raise ValueError("batch sizes must be at least 1")
        self._store = store
        self._calendar = calendar
        self._timezone = timezone
        self._tz = ZoneInfo(timezone)
        self._insert_batch_size = insert_batch_size
        self._update_group_size = update_group_size
        self._default_start_time = default_start_time
        self._default_title = default_title
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: CoupConfig,
        *,
        store: ScheduleStore,
        calendar: GoogleCalendarClient,
    ) -> ReconciliationEngine:
        return cls(
            store=store,
            calendar=calendar,
            timezone=config.calendar.timezone,
            insert_batch_size=config.sync.insert_batch_size,
            update_group_size=config.sync.update_group_size,
            default_start_time=config.calendar.default_start_time,
            default_title=config.calendar.default_title,
        )

    # -- full window -----------------------------------------------------------

    async def sync_window(
        self,
        *,
        member_id: UUID,
        access_token: str,
        calendar_id: str,
        window: SyncWindow,
    ) -> SyncReport:
        """Reconcile one window and return aggregate stats plus per-batch results."""
        set_member_context(str(member_id))
        org_id = await self._store.get_member_org_id(member_id)
        if org_id is None:
            raise MemberNotFoundError(member_id)

        projects = await self._store.list_projects(org_id)
        start_date, end_date = window.date_range(self._tz)
        existing = await self._store.list_schedules(
            member_id, start_date=start_date, end_date=end_date
        )
        events, truncated = await self._collect_events(access_token, calendar_id, window)
        if truncated and not window.is_history_sync:
            logger.warning(
                "Listing for %s was capped at %d events; skipping orphan detection",
                calendar_id,
                window.max_results,
            )

        now = self._clock()
        plan = build_plan(
            events,
            existing,
            projects,
            org_id=org_id,
            member_id=member_id,
            now=now,
            timezone=self._timezone,
            is_history_sync=window.is_history_sync,
            detect_orphans=not truncated,
            orphan_dates=window.whole_days(self._tz),
        )

        batches = [
            *await self._write_inserts(plan.inserts),
            *await self._write_updates(plan.updates),
            *await self._write_deletes(plan.deletes),
        ]
        await self._store.mark_synced(member_id, now)

        def _succeeded(kind: str) -> int:
            return sum(batch.succeeded for batch in batches if batch.kind == kind)

        stats = SyncStats(
            fetched=len(events),
            created=_succeeded("insert"),
            updated=_succeeded("update"),
            deleted=_succeeded("delete"),
            sync_range=SyncRange(**{"from": window.time_min, "to": window.time_max}),
            is_history_sync=window.is_history_sync,
        )
        report = SyncReport(stats=stats, batches=batches)
        logger.info(
            "Calendar sync done: fetched=%d created=%d updated=%d deleted=%d "
            "failed_batches=%d history=%s",
            stats.fetched,
            stats.created,
            stats.updated,
            stats.deleted,
            len(report.failed_batches),
            stats.is_history_sync,
        )
        return report

    async def _collect_events(
        self,
        access_token: str,
        calendar_id: str,
        window: SyncWindow,
    ) -> tuple[list[GoogleEvent], bool]:
        """Page through the window; returns the events and whether the cap truncated them."""
        cap = window.max_results
        events: list[GoogleEvent] = []
        page_token: str | None = None
        while True:
            page = await self._calendar.list_events(
                access_token,
                calendar_id,
                time_min=window.time_min,
                time_max=window.time_max,
                max_results=None if cap is None else cap - len(events),
                page_token=page_token,
            )
            events.extend(page.items)
            page_token = page.next_page_token
            if cap is not None and len(events) >= cap:
                return events[:cap], bool(page_token) or len(events) > cap
            if not page_token:
                return events, False

    async def _write_inserts(self, inserts: Sequence[ScheduleInsert]) -> list[BatchResult]:
        results: list[BatchResult] = []
        for index, batch in enumerate(_chunks(inserts, self._insert_batch_size)):
            try:
                written = await self._store.insert_schedules(batch)
            except Exception as exc:
                logger.warning(
                    "Insert batch %d (%d rows) failed: %s", index, len(batch), exc, exc_info=True
                )
                results.append(
                    BatchResult("insert", index, attempted=len(batch), succeeded=0, error=str(exc))
                )
                continue
            results.append(BatchResult("insert", index, attempted=len(batch), succeeded=written))
        return results

    async def _write_updates(self, updates: Sequence[ScheduleUpdate]) -> list[BatchResult]:
        results: list[BatchResult] = []
        for index, group in enumerate(_chunks(updates, self._update_group_size)):
            outcomes = await asyncio.gather(
                *(self._store.update_schedule(update) for update in group),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
            failures = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
            if failures:
                logger.warning(
                    "Update group %d: %d of %d writes failed: %s",
                    index,
                    len(failures),
                    len(group),
                    failures[0],
                )
            results.append(
                BatchResult(
                    "update",
                    index,
                    attempted=len(group),
                    succeeded=len(group) - len(failures),
                    error=str(failures[0]) if failures else None,
                )
            )
        return results

    async def _write_deletes(self, schedule_ids: Sequence[UUID]) -> list[BatchResult]:
        if not schedule_ids:
            return []
        try:
            removed = await self._store.delete_schedules(schedule_ids)
        except Exception as exc:
            logger.warning("Bulk delete of %d schedules failed: %s", len(schedule_ids), exc)
            return [
                BatchResult("delete", 0, attempted=len(schedule_ids), succeeded=0, error=str(exc))
            ]
        return [BatchResult("delete", 0, attempted=len(schedule_ids), succeeded=removed)]

    # -- single record -------------------------------------------------------------

    async def push_schedule(
        self,
        action: ScheduleAction,
        schedule: ScheduleDraft,
        *,
        access_token: str,
        calendar_id: str,
        project_name: str | None = None,
    ) -> str | None:
        """Mirror one schedule edit to the calendar; returns the external event id.

        ``update`` without a correlated event behaves as ``create``.
        ``delete`` without one is a no-op. Remote failures propagate.
        """
        if action not in ("create", "update", "delete"):
            raise ValueError(f"Unsupported schedule action: {action!r}")
        if action == "delete":
            if schedule.external_event_id:
                await self._calendar.delete_event(
                    access_token, calendar_id, schedule.external_event_id
                )
            return None

        event = to_external_event(
            schedule,
            project_name=project_name,
            timezone=self._timezone,
            default_start_time=self._default_start_time,
            default_title=self._default_title,
        )
        if action == "update" and schedule.external_event_id:
            await self._calendar.update_event(
                access_token, calendar_id, schedule.external_event_id, event
            )
            return schedule.external_event_id

        created = await self._calendar.create_event(access_token, calendar_id, event)
        await self._store.set_external_event_id(schedule.id, created.id)
        logger.info("Schedule %s linked to calendar event %s", schedule.id, created.id)
        return created.id


def summarize_batches(batches: Sequence[BatchResult]) -> dict[str, Any]:
    """Per-kind attempted/succeeded counts, for logs and CLI output."""
    summary: dict[str, Any] = {}
    for batch in batches:
        entry = summary.setdefault(batch.kind, {"batches": 0, "attempted": 0, "succeeded": 0})
        entry["batches"] += 1
        entry["attempted"] += batch.attempted
        entry["succeeded"] += batch.succeeded
        if batch.error is not None:
            entry.setdefault("errors", []).append(batch.error)
    return summary
