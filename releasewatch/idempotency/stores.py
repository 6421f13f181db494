"""Claim store implementations for the idempotency guard."""

from __future__ import annotations

import datetime as dt
import math
import typing as typ

from redis.exceptions import RedisError
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from releasewatch.common.time import utcnow
from releasewatch.errors import GuardError, PersistenceError
from releasewatch.storage.models import IdempotencyClaim
from releasewatch.storage.sql import insert_ignoring_conflicts

if typ.TYPE_CHECKING:
    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _ttl_millis(ttl: dt.timedelta) -> int:
    return max(1, math.ceil(ttl.total_seconds() * 1000))


class RedisClaimStore:
    """Claim keys with ``SET key value NX PX ttl`` on Redis or Valkey."""

    def __init__(
        self, client: aioredis.Redis, *, prefix: str = "releasewatch:"
    ) -> None:
        """Bind to an async Redis client and namespace keys with ``prefix``."""
        self._client = client
        self._prefix = prefix

    async def claim_if_absent(self, key: str, ttl: dt.timedelta) -> bool:
        """Atomically claim ``key`` for ``ttl``; return False if already held."""
        try:
            claimed = await self._client.set(
                f"{self._prefix}{key}", "1", nx=True, px=_ttl_millis(ttl)
            )
        except RedisError as exc:
            raise GuardError.claim_failed(key, exc) from exc
        return bool(claimed)


class SqlClaimStore:
    """Claim keys in the ``idempotency_claims`` table.

    Used when no Redis URL is configured. An expired row for the key is
    deleted before the insert, so the two statements together behave like a
    set-if-absent with expiry.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Store the session factory used for claims."""
        self._session_factory = session_factory

    async def claim_if_absent(self, key: str, ttl: dt.timedelta) -> bool:
        """Atomically claim ``key`` for ``ttl``; return False if already held."""
        now = utcnow()
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(
                    delete(IdempotencyClaim).where(
                        IdempotencyClaim.key == key,
                        IdempotencyClaim.expires_at <= now,
                    )
                )
                return await insert_ignoring_conflicts(
                    session,
                    IdempotencyClaim,
                    {"key": key, "expires_at": now + ttl},
                    conflict_columns=["key"],
                )
        except (SQLAlchemyError, PersistenceError) as exc:
            raise GuardError.claim_failed(key, exc) from exc
