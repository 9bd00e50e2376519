"""asyncpg pool for the schedules database.

Connection parameters come from ``DATABASE_URL`` when it is set, otherwise
from the ``POSTGRES_*`` variables. Alembic gets the same target through
:attr:`Database.url`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "coup"
APPLICATION_NAME = "coup"

_SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})
# asyncpg reports a server that drops the STARTTLS upgrade with this message.
_SSL_UPGRADE_LOST = "unexpected connection_lost() call"


def _ssl_mode(raw: str | None) -> str | None:
    if raw is None or not raw.strip():
        return None
    mode = raw.strip().lower()
    if mode not in _SSL_MODES:
        logger.warning("Ignoring unknown PostgreSQL sslmode %r", raw)
        return None
    return mode


@dataclass(frozen=True)
class ConnectionParams:
    host: str = "localhost"
    port: int = 5432
    user: str = "coup"
    password: str = "coup"
    database: str = DEFAULT_DB_NAME
    ssl: str | None = None

    @classmethod
    def from_url(cls, database_url: str) -> ConnectionParams:
        parsed = urlparse(database_url)
        return cls(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            user=parsed.username or "coup",
            password=parsed.password or "coup",
            database=parsed.path.lstrip("/") or DEFAULT_DB_NAME,
            ssl=_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
        )


def db_params_from_env() -> ConnectionParams:
    """Connection parameters for this process, ``DATABASE_URL`` first."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return ConnectionParams.from_url(database_url)
    return ConnectionParams(
        host=os.environ.get("POSTGRES_HOST", "localhost"),
        port=int(os.environ.get("POSTGRES_PORT", "5432")),
        user=os.environ.get("POSTGRES_USER", "coup"),
        password=os.environ.get("POSTGRES_PASSWORD", "coup"),
        database=os.environ.get("POSTGRES_DB", DEFAULT_DB_NAME),
        ssl=_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    )


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when the server dropped an implicit TLS upgrade and no sslmode was asked for."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_LOST in str(exc)
    )


class Database:
    """Lazily opened asyncpg pool plus the URL Alembic should migrate."""

    def __init__(
        self,
        db_name: str = DEFAULT_DB_NAME,
        host: str = "localhost",
        port: int = 5432,
        user: str = "coup",
        password: str = "coup",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.params = ConnectionParams(
            host=host, port=port, user=user, password=password, database=db_name, ssl=ssl
        )
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls) -> Database:
        params = db_params_from_env()
        return cls(
            db_name=params.database,
            host=params.host,
            port=params.port,
            user=params.user,
            password=params.password,
            ssl=params.ssl,
        )

    @property
    def db_name(self) -> str:
        return self.params.database

    @property
    def url(self) -> str:
        p = self.params
        url = (
            f"postgresql://{quote(p.user, safe='')}:{quote(p.password, safe='')}"
            f"@{p.host}:{p.port}/{p.database}"
        )
        return f"{url}?sslmode={p.ssl}" if p.ssl is not None else url

    async def _create_pool(self, ssl: str | None) -> asyncpg.Pool:
        p = self.params
        return await asyncpg.create_pool(
            host=p.host,
            port=p.port,
            user=p.user,
            password=p.password,
            database=p.database,
            ssl=ssl,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            server_settings={"application_name": APPLICATION_NAME},
        )

    async def connect(self) -> asyncpg.Pool:
        try:
            self.pool = await self._create_pool(self.params.ssl)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.params.ssl):
                raise
            logger.info(
                "TLS upgrade to %s was dropped; reconnecting with ssl=disable", self.params.host
            )
            self.pool = await self._create_pool("disable")
        logger.info("Database pool open: %s@%s", self.db_name, self.params.host)
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Database pool closed: %s", self.db_name)

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool
