"""Apply the schedules schema with Alembic, in-process."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

# Checked-out repo layout: <root>/src/coup/migrations.py and <root>/alembic/
ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"
HEAD = "core@head"


def alembic_config(db_url: str) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    cfg.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / "core"))
    # configparser interpolation would eat percent-escapes in passwords
    cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    return cfg


def run_migrations(db_url: str, revision: str = HEAD) -> None:
    logger.info("Upgrading schema to %s", revision)
    command.upgrade(alembic_config(db_url), revision)


def print_migration_sql(db_url: str) -> None:
    """Emit the upgrade SQL to stdout instead of executing it."""
    command.upgrade(alembic_config(db_url), HEAD, sql=True)
