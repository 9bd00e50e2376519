"""coup_baseline

Revision ID: core_001
Revises:
Create Date: 2025-03-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS members (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            org_id UUID NOT NULL,
            name TEXT NOT NULL,
            email TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS projects (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            org_id UUID NOT NULL,
            name TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_projects_org ON projects (org_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS schedules (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            org_id UUID NOT NULL,
            member_id UUID NOT NULL REFERENCES members (id) ON DELETE CASCADE,
            project_id UUID REFERENCES projects (id) ON DELETE SET NULL,
            date DATE NOT NULL,
            start_time TIME,
            end_time TIME,
            minutes INTEGER NOT NULL DEFAULT 0 CHECK (minutes >= 0),
            description TEXT,
            external_event_id TEXT,
            is_read_only BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_schedules_member_date ON schedules (member_id, date)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_schedules_external_event_id "
        "ON schedules (external_event_id) WHERE external_event_id IS NOT NULL"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_settings (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            member_id UUID NOT NULL UNIQUE REFERENCES members (id) ON DELETE CASCADE,
            is_enabled BOOLEAN NOT NULL DEFAULT false,
            external_calendar_id TEXT,
            last_sync_at TIMESTAMPTZ,
            sync_token TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_settings")
    op.execute("DROP TABLE IF EXISTS schedules")
    op.execute("DROP TABLE IF EXISTS projects")
    op.execute("DROP TABLE IF EXISTS members")
