"""Persistence for schedules, projects and per-member sync settings."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, date, datetime
from typing import Any, Protocol
from uuid import UUID

import asyncpg

from coup.calendar.models import (
    Project,
    ScheduleInsert,
    ScheduleRecord,
    ScheduleUpdate,
    SyncSettings,
)

logger = logging.getLogger(__name__)

_SCHEDULE_COLUMNS = """
    id, org_id, member_id, project_id, date, start_time, end_time,
    minutes, description, external_event_id, is_read_only, updated_at
"""

_SETTINGS_COLUMNS = """
    member_id, is_enabled, external_calendar_id, last_sync_at, sync_token, updated_at
"""


class ScheduleStore(Protocol):
    """Persistence contract used by the reconciliation engine and the API."""

    async def get_member_org_id(self, member_id: UUID) -> UUID | None:
        """Return the member's organization id, or None if the member is unknown."""
        ...

    async def list_projects(self, org_id: UUID) -> list[Project]: ...

    async def list_schedules(
        self, member_id: UUID, *, start_date: date, end_date: date
    ) -> list[ScheduleRecord]:
        """Member schedules whose date falls within ``[start_date, end_date]``."""
        ...

    async def insert_schedules(self, rows: Sequence[ScheduleInsert]) -> int:
        """Insert *rows* atomically; return the number written."""
        ...

    async def update_schedule(self, update: ScheduleUpdate) -> None: ...

    async def delete_schedules(self, schedule_ids: Sequence[UUID]) -> int:
        """Delete by id in one operation; return the number removed."""
        ...

    async def set_external_event_id(self, schedule_id: UUID, event_id: str | None) -> None: ...

    async def clear_external_event_ids(self, member_id: UUID) -> int: ...

    async def list_unclassified_schedules(self, member_id: UUID) -> list[ScheduleRecord]: ...

    async def assign_project(self, schedule_id: UUID, project_id: UUID) -> bool: ...

    async def get_sync_settings(self, member_id: UUID) -> SyncSettings | None: ...

    async def upsert_sync_settings(
        self,
        member_id: UUID,
        *,
        is_enabled: bool,
        external_calendar_id: str | None,
    ) -> SyncSettings: ...

    async def delete_sync_settings(self, member_id: UUID) -> None: ...

    async def mark_synced(self, member_id: UUID, at: datetime) -> None: ...


def _record_to_schedule(row: asyncpg.Record | dict[str, Any]) -> ScheduleRecord:
    return ScheduleRecord.model_validate(dict(row))


def _record_to_settings(row: asyncpg.Record | dict[str, Any]) -> SyncSettings:
    return SyncSettings.model_validate(dict(row))


def _command_count(status: str) -> int:
    """Parse the row count out of an asyncpg command tag like ``DELETE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresScheduleStore:
    """asyncpg-backed :class:`ScheduleStore`."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # -- members / projects ------------------------------------------------

    async def get_member_org_id(self, member_id: UUID) -> UUID | None:
        return await self._pool.fetchval("SELECT org_id FROM members WHERE id = $1", member_id)

    async def list_projects(self, org_id: UUID) -> list[Project]:
        rows = await self._pool.fetch(
            "SELECT id, name FROM projects WHERE org_id = $1 ORDER BY name", org_id
        )
        return [Project(id=row["id"], name=row["name"]) for row in rows]

    # -- schedules -----------------------------------------------------------

    async def list_schedules(
        self, member_id: UUID, *, start_date: date, end_date: date
    ) -> list[ScheduleRecord]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_SCHEDULE_COLUMNS}
            FROM schedules
            WHERE member_id = $1 AND date >= $2 AND date <= $3
            ORDER BY date, start_time NULLS FIRST
            """,
            member_id,
            start_date,
            end_date,
        )
        return [_record_to_schedule(row) for row in rows]

    async def insert_schedules(self, rows: Sequence[ScheduleInsert]) -> int:
        if not rows:
            return 0
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO schedules (
                        org_id, member_id, project_id, date, start_time, end_time,
                        minutes, description, external_event_id, is_read_only
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    [
                        (
                            row.org_id,
                            row.member_id,
                            row.project_id,
                            row.date,
                            row.start_time,
                            row.end_time,
                            row.minutes,
                            row.description,
                            row.external_event_id,
                            row.is_read_only,
                        )
                        for row in rows
                    ],
                )
        return len(rows)

    async def update_schedule(self, update: ScheduleUpdate) -> None:
        status = await self._pool.execute(
            """
            UPDATE schedules
            SET project_id = $2,
                date = $3,
                start_time = $4,
                end_time = $5,
                description = $6,
                minutes = $7,
                is_read_only = $8,
                updated_at = $9
            WHERE id = $1
            """,
            update.schedule_id,
            update.project_id,
            update.date,
            update.start_time,
            update.end_time,
            update.description,
            update.minutes,
            update.is_read_only,
            update.updated_at,
        )
        if _command_count(status) == 0:
            raise LookupError(f"Schedule {update.schedule_id} no longer exists")

    async def delete_schedules(self, schedule_ids: Sequence[UUID]) -> int:
        if not schedule_ids:
            return 0
        status = await self._pool.execute(
            "DELETE FROM schedules WHERE id = ANY($1::uuid[])", list(schedule_ids)
        )
        return _command_count(status)

    async def set_external_event_id(self, schedule_id: UUID, event_id: str | None) -> None:
        await self._pool.execute(
            "UPDATE schedules SET external_event_id = $2, updated_at = now() WHERE id = $1",
            schedule_id,
            event_id,
        )

    async def clear_external_event_ids(self, member_id: UUID) -> int:
        status = await self._pool.execute(
            """
            UPDATE schedules
            SET external_event_id = NULL
            WHERE member_id = $1 AND external_event_id IS NOT NULL
            """,
            member_id,
        )
        return _command_count(status)

    async def list_unclassified_schedules(self, member_id: UUID) -> list[ScheduleRecord]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_SCHEDULE_COLUMNS}
            FROM schedules
            WHERE member_id = $1 AND project_id IS NULL
            ORDER BY date DESC, start_time NULLS LAST
            """,
            member_id,
        )
        return [_record_to_schedule(row) for row in rows]

    async def assign_project(self, schedule_id: UUID, project_id: UUID) -> bool:
        status = await self._pool.execute(
            "UPDATE schedules SET project_id = $2, updated_at = now() WHERE id = $1",
            schedule_id,
            project_id,
        )
        return _command_count(status) > 0

    # -- sync settings -------------------------------------------------------

    async def get_sync_settings(self, member_id: UUID) -> SyncSettings | None:
        row = await self._pool.fetchrow(
            f"SELECT {_SETTINGS_COLUMNS} FROM calendar_sync_settings WHERE member_id = $1",
            member_id,
        )
        return _record_to_settings(row) if row is not None else None

    async def upsert_sync_settings(
        self,
        member_id: UUID,
        *,
        is_enabled: bool,
        external_calendar_id: str | None,
    ) -> SyncSettings:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO calendar_sync_settings (member_id, is_enabled, external_calendar_id)
            VALUES ($1, $2, $3)
            ON CONFLICT (member_id) DO UPDATE
            SET is_enabled = EXCLUDED.is_enabled,
                external_calendar_id = EXCLUDED.external_calendar_id,
                updated_at = now()
            RETURNING {_SETTINGS_COLUMNS}
            """,
            member_id,
            is_enabled,
            external_calendar_id,
        )
        return _record_to_settings(row)

    async def delete_sync_settings(self, member_id: UUID) -> None:
        await self._pool.execute(
            "DELETE FROM calendar_sync_settings WHERE member_id = $1", member_id
        )

    async def mark_synced(self, member_id: UUID, at: datetime) -> None:
        stamp = at if at.tzinfo is not None else at.replace(tzinfo=UTC)
        await self._pool.execute(
            """
            UPDATE calendar_sync_settings
            SET last_sync_at = $2, updated_at = now()
            WHERE member_id = $1
            """,
            member_id,
            stamp,
        )
