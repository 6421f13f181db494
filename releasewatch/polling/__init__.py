"""Release detection: the poll cycle, content hashing and delivery fan-out."""

from __future__ import annotations

from .enqueuer import DeliveryEnqueuer
from .hashing import content_hash
from .poller import (
    PollCycleResult,
    PollerConfig,
    ReleasePoller,
    RepoPollOutcome,
    default_fetch_retry_policy,
)

__all__ = [
    "DeliveryEnqueuer",
    "PollCycleResult",
    "PollerConfig",
    "ReleasePoller",
    "RepoPollOutcome",
    "content_hash",
    "default_fetch_retry_policy",
]
