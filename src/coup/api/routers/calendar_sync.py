"""Calendar sync trigger: full-window reconciliation or a single-record push."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta, tzinfo

from fastapi import APIRouter, Depends

from coup.api.deps import get_config, get_engine
from coup.api.models import SyncOptions, SyncRequest, SyncResponse
from coup.calendar.engine import ReconciliationEngine, summarize_batches
from coup.calendar.models import SyncWindow
from coup.config import CoupConfig
from coup.core.logging import set_member_context

router = APIRouter(prefix="/api/calendar", tags=["calendar"])
logger = logging.getLogger(__name__)


def _as_instant(value: datetime | date, tz: tzinfo) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    return datetime(value.year, value.month, value.day, tzinfo=tz)


def resolve_window(
    options: SyncOptions | None,
    *,
    now: datetime,
    config: CoupConfig,
) -> SyncWindow:
    """Explicit bounds from *options*, else ``now - past_days .. now + future_days``."""
    tz = config.calendar.zoneinfo
    options = options or SyncOptions()
    time_min = (
        _as_instant(options.start_date, tz)
        if options.start_date is not None
        else now - timedelta(days=config.sync.past_days)
    )
    time_max = (
        _as_instant(options.end_date, tz)
        if options.end_date is not None
        else now + timedelta(days=config.sync.future_days)
    )
    return SyncWindow(
        time_min=time_min,
        time_max=time_max,
        is_history_sync=options.is_history_sync,
        max_results=options.max_results,
    )


@router.post("/sync", response_model=SyncResponse, response_model_exclude_none=True)
async def sync_calendar(
    body: SyncRequest,
    engine: ReconciliationEngine = Depends(get_engine),
    config: CoupConfig = Depends(get_config),
) -> SyncResponse:
    """Reconcile the member's calendar window, or push one schedule when ``action`` is set."""
    set_member_context(str(body.member_id))

    if body.action is not None:
        if body.schedule_data is None:
            raise ValueError("scheduleData is required when action is set")
        event_id = await engine.push_schedule(
            body.action,
            body.schedule_data,
            access_token=body.access_token,
            calendar_id=body.calendar_id,
            project_name=body.schedule_data.project_name,
        )
        return SyncResponse(success=True, event_id=event_id)

    window = resolve_window(body.sync_options, now=datetime.now(UTC), config=config)
    report = await engine.sync_window(
        member_id=body.member_id,
        access_token=body.access_token,
        calendar_id=body.calendar_id,
        window=window,
    )
    if report.failed_batches:
        logger.info(
            "Sync for %s finished with %d failed batch(es): %s",
            body.member_id,
            len(report.failed_batches),
            summarize_batches(report.failed_batches),
        )
    return SyncResponse(success=True, stats=report.stats)
