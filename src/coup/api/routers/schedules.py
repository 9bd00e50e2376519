"""Schedules imported without a project, and assigning one after the fact."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from coup.api.deps import get_store
from coup.api.models import ApiResponse, AssignProjectRequest, SuccessResponse
from coup.calendar.models import ScheduleRecord
from coup.calendar.store import ScheduleStore

router = APIRouter(prefix="/api/schedules", tags=["schedules"])
logger = logging.getLogger(__name__)


@router.get("/unclassified", response_model=ApiResponse[list[ScheduleRecord]])
async def list_unclassified(
    member_id: UUID = Query(alias="memberId"),
    store: ScheduleStore = Depends(get_store),
) -> ApiResponse[list[ScheduleRecord]]:
    """Member schedules with no project, newest date first."""
    schedules = await store.list_unclassified_schedules(member_id)
    return ApiResponse[list[ScheduleRecord]](data=schedules)


@router.patch("/{schedule_id}/project", response_model=SuccessResponse)
async def assign_project(
    schedule_id: UUID,
    body: AssignProjectRequest,
    store: ScheduleStore = Depends(get_store),
) -> SuccessResponse:
    if not await store.assign_project(schedule_id, body.project_id):
        raise HTTPException(status_code=404, detail=f"Schedule not found: {schedule_id}")
    logger.info("Schedule %s assigned to project %s", schedule_id, body.project_id)
    return SuccessResponse()
