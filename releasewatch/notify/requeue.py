"""Capped re-delivery of failed notifications.

A delivery marked ``failed`` has already exhausted the in-cycle send retries.
The requeue policy gives it further chances on later notify cycles, spaced
out with exponential backoff measured from the last status change, until the
attempt counter reaches ``max_attempts``. At that point the delivery moves to
the terminal ``dead_letter`` state and is never sent again.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import typing as typ

from releasewatch.storage.models import DeliveryStatus

if typ.TYPE_CHECKING:
    from releasewatch.observability import NotifyEventLogger
    from releasewatch.storage.models import Delivery
    from releasewatch.storage.ports import DeliveryStore

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_BACKOFF = dt.timedelta(minutes=10)


@dataclasses.dataclass(frozen=True, slots=True)
class DeliveryRequeuePolicy:
    """Decide when a failed delivery is retried or dead-lettered.

    Attributes
    ----------
    max_attempts
        Attempt count at which a failed delivery is dead-lettered.
    base_backoff
        Wait after the first failure; doubled for every further attempt.

    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_backoff: dt.timedelta = DEFAULT_BASE_BACKOFF

    def __post_init__(self) -> None:
        """Validate the attempt cap and backoff."""
        if self.max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {self.max_attempts}"
            raise ValueError(msg)
        if self.base_backoff < dt.timedelta(0):
            msg = f"base_backoff must not be negative, got {self.base_backoff}"
            raise ValueError(msg)

    def backoff_for(self, attempt: int) -> dt.timedelta:
        """Return the wait before retrying a delivery that failed ``attempt`` times.

        >>> DeliveryRequeuePolicy(base_backoff=dt.timedelta(minutes=1)).backoff_for(3)
        datetime.timedelta(seconds=240)
        """
        return self.base_backoff * 2 ** (max(attempt, 1) - 1)

    def is_exhausted(self, delivery: Delivery) -> bool:
        """Return True when ``delivery`` has used up its attempts."""
        return delivery.attempt >= self.max_attempts

    def is_due(self, delivery: Delivery, now: dt.datetime) -> bool:
        """Return True when the backoff since the last failure has elapsed."""
        return delivery.updated_at + self.backoff_for(delivery.attempt) <= now


@dataclasses.dataclass(frozen=True, slots=True)
class RequeueResult:
    """Counts of failed deliveries moved by one requeue pass."""

    requeued: int = 0
    dead_lettered: int = 0


async def requeue_failed_deliveries(
    deliveries: DeliveryStore,
    policy: DeliveryRequeuePolicy,
    *,
    now: dt.datetime,
    event_logger: NotifyEventLogger,
) -> RequeueResult:
    """Move due failed deliveries back to pending and exhausted ones to dead letter.

    Each transition is a compare-and-set on the ``failed`` status, so when two
    notifier replicas race only one of them moves a given delivery.
    """
    requeued = 0
    dead_lettered = 0
    for delivery in await deliveries.list_by_status(DeliveryStatus.FAILED):
        if policy.is_exhausted(delivery):
            if await deliveries.update_status(
                delivery.id,
                DeliveryStatus.DEAD_LETTER,
                error=delivery.last_error,
                attempt=delivery.attempt,
                expected_status=DeliveryStatus.FAILED,
            ):
                dead_lettered += 1
                event_logger.log_dead_lettered(delivery.id, delivery.attempt)
        elif policy.is_due(delivery, now) and await deliveries.update_status(
            delivery.id,
            DeliveryStatus.PENDING,
            error=delivery.last_error,
            attempt=delivery.attempt,
            expected_status=DeliveryStatus.FAILED,
        ):
            requeued += 1
            event_logger.log_requeued(delivery.id, delivery.attempt)
    return RequeueResult(requeued=requeued, dead_lettered=dead_lettered)


__all__ = [
    "DEFAULT_BASE_BACKOFF",
    "DEFAULT_MAX_ATTEMPTS",
    "DeliveryRequeuePolicy",
    "RequeueResult",
    "requeue_failed_deliveries",
]
