"""Run an operation at most once per key within a TTL window.

The guard claims a key in a shared store before running the wrapped
operation. A key that is already held means another notifier replica (or an
earlier cycle of this one) is handling or has handled the same logical
operation, so the guard returns without calling it.

Claims are never released. A key expires only when its TTL lapses, which
makes the guarantee *at most once per TTL*: if the wrapped operation fails,
the same key cannot be retried until the window passes. For the notifier this
puts the retry-recovery latency of a delivery left ``pending`` by a storage
error at one TTL (10 minutes by default).
"""

from __future__ import annotations

import typing as typ

if typ.TYPE_CHECKING:
    import datetime as dt


class ClaimStore(typ.Protocol):
    """Shared set-if-absent store backing :class:`IdempotencyGuard`."""

    async def claim_if_absent(self, key: str, ttl: dt.timedelta) -> bool:
        """Atomically claim ``key`` for ``ttl``; return False if already held.

        Implementations raise :class:`~releasewatch.errors.GuardError` when the
        store cannot be reached.
        """
        ...


class IdempotencyGuard:
    """Deduplicate concurrent or repeated executions by key."""

    def __init__(self, store: ClaimStore) -> None:
        """Bind the guard to its claim store."""
        self._store = store

    async def do(
        self,
        key: str,
        ttl: dt.timedelta,
        fn: typ.Callable[[], typ.Awaitable[object]],
    ) -> bool:
        """Run ``fn`` if ``key`` can be claimed.

        Returns True when ``fn`` ran to completion and False when the key was
        already held. Errors raised by ``fn`` propagate; the claim stays in
        place until ``ttl`` expires.
        """
        if ttl.total_seconds() <= 0:
            msg = f"ttl must be positive, got {ttl}"
            raise ValueError(msg)
        if not await self._store.claim_if_absent(key, ttl):
            return False
        await fn()
        return True
