"""Explicit per-login session context for calendar sync.

A :class:`SessionContext` is created when a member signs in and closed when
they sign out. Sync components receive it explicitly; there is no
process-wide auth state. The provider access token is re-resolved from the
session's token source on every call so refreshed tokens are picked up.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from uuid import UUID

logger = logging.getLogger(__name__)

TokenSource = Callable[[], Awaitable[str | None]]

GOOGLE_PROVIDER = "google"


@dataclass
class SessionContext:
    """Identity and provider credentials for one signed-in member."""

    member_id: UUID
    provider: str
    token_source: TokenSource
    org_id: UUID | None = None
    _closed: bool = field(default=False, init=False, repr=False)

    @classmethod
    def with_static_token(
        cls,
        member_id: UUID,
        access_token: str | None,
        *,
        provider: str = GOOGLE_PROVIDER,
        org_id: UUID | None = None,
    ) -> SessionContext:
        """Session whose token never changes (CLI runs, tests)."""

        async def _token() -> str | None:
            return access_token

        return cls(member_id=member_id, provider=provider, token_source=_token, org_id=org_id)

    @property
    def is_active(self) -> bool:
        return not self._closed

    @property
    def uses_google(self) -> bool:
        return self.provider == GOOGLE_PROVIDER

    async def access_token(self) -> str | None:
        """Current provider access token, or None when unavailable or signed out."""
        if self._closed:
            return None
        try:
            token = await self.token_source()
        except Exception:
            logger.warning("Token lookup failed for member %s", self.member_id, exc_info=True)
            return None
        if token is None or not token.strip():
            return None
        return token.strip()

    def close(self) -> None:
        """Tear down the session at sign-out; later token lookups return None."""
        self._closed = True
