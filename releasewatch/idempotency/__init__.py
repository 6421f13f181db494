"""Idempotency guard and its claim stores."""

from __future__ import annotations

from .guard import ClaimStore, IdempotencyGuard
from .stores import RedisClaimStore, SqlClaimStore

__all__ = ["ClaimStore", "IdempotencyGuard", "RedisClaimStore", "SqlClaimStore"]
