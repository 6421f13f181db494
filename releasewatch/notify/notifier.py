"""Notification cycle over pending deliveries.

Every pending delivery is wrapped in the idempotency guard under the key
``notify:{release_id}:{user_id}:{channel}``. Only the replica that claims the
key resolves the delivery's references, sends the message and records the
outcome; a replica that finds the key held moves on.

Any exception from the channel marks the delivery ``failed``, so the requeue
policy and its attempt cap apply to it. A guard or storage error leaves the
delivery ``pending``. Because claims are kept until their TTL lapses, such a
delivery is picked up again once the TTL (10 minutes by default) has passed.
A status write that finds the delivery already moved off ``pending`` is
reported as ``stale`` and not counted as sent, failed or skipped.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import enum
import typing as typ

from releasewatch.channels.formatting import format_release_message
from releasewatch.channels.telegram import is_transient_send_error
from releasewatch.common.time import utcnow
from releasewatch.errors import ReferenceNotFoundError
from releasewatch.logging import log_exception
from releasewatch.observability import NotifyEventLogger
from releasewatch.retry import RetryPolicy
from releasewatch.storage.models import DeliveryStatus

from .requeue import DeliveryRequeuePolicy, RequeueResult, requeue_failed_deliveries

if typ.TYPE_CHECKING:
    from releasewatch.channels.telegram import NotificationChannel
    from releasewatch.idempotency.guard import IdempotencyGuard
    from releasewatch.retry import Sleeper
    from releasewatch.storage.models import Delivery, Release, TrackedRepo
    from releasewatch.storage.ports import Stores, Transactor

DEFAULT_GUARD_TTL = dt.timedelta(minutes=10)

type MessageFormatter = typ.Callable[[TrackedRepo, Release], str]


def delivery_key(delivery: Delivery) -> str:
    """Return the idempotency key for sending ``delivery``."""
    return f"notify:{delivery.release_id}:{delivery.user_id}:{delivery.channel}"


def default_send_retry_policy(*, attempt_timeout: float = 20.0) -> RetryPolicy:
    """Return the send policy: 3 attempts, 2 s base delay, transient errors only."""
    return RetryPolicy(
        attempts=3,
        base_delay=2.0,
        attempt_timeout=attempt_timeout,
        retry_if=is_transient_send_error,
    )


class DeliveryOutcome(enum.StrEnum):
    """Result of processing one pending delivery."""

    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"
    CLAIMED_ELSEWHERE = "claimed_elsewhere"
    ERRORED = "errored"
    STALE = "stale"


@dataclasses.dataclass(slots=True)
class NotifyCycleResult:
    """Counters summarising one notify cycle."""

    sent: int = 0
    failed: int = 0
    skipped: int = 0
    claimed_elsewhere: int = 0
    errored: int = 0
    stale: int = 0
    requeue: RequeueResult = dataclasses.field(default_factory=RequeueResult)

    def record(self, outcome: DeliveryOutcome) -> None:
        """Increment the counter matching ``outcome``."""
        match outcome:
            case DeliveryOutcome.SENT:
                self.sent += 1
            case DeliveryOutcome.FAILED:
                self.failed += 1
            case DeliveryOutcome.SKIPPED:
                self.skipped += 1
            case DeliveryOutcome.CLAIMED_ELSEWHERE:
                self.claimed_elsewhere += 1
            case DeliveryOutcome.ERRORED:
                self.errored += 1
            case DeliveryOutcome.STALE:
                self.stale += 1


class Notifier:
    """Send pending deliveries exactly once per guard window."""

    def __init__(  # noqa: PLR0913
        self,
        transactor: Transactor,
        channel: NotificationChannel,
        guard: IdempotencyGuard,
        *,
        ttl: dt.timedelta = DEFAULT_GUARD_TTL,
        retry_policy: RetryPolicy | None = None,
        requeue_policy: DeliveryRequeuePolicy | None = None,
        event_logger: NotifyEventLogger | None = None,
        formatter: MessageFormatter = format_release_message,
        clock: typ.Callable[[], dt.datetime] = utcnow,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """Wire the notifier to its stores, channel and guard.

        Parameters
        ----------
        transactor
            Store access for deliveries and the entities they reference.
        channel
            Messaging channel the formatted text is sent over.
        guard
            Idempotency guard deduplicating sends across replicas.
        ttl
            Guard window; must dominate the length of one notify cycle.
        retry_policy
            Policy wrapping each send. Defaults to
            :func:`default_send_retry_policy`.
        requeue_policy
            Re-delivery policy for failed deliveries. ``None`` uses the
            defaults of :class:`DeliveryRequeuePolicy`.
        event_logger
            Structured event sink for cycle and delivery events.
        formatter
            Renders the message text for a repository and release.
        clock
            Source of the current UTC time.
        sleep
            Coroutine used for retry backoff.

        """
        self._transactor = transactor
        self._channel = channel
        self._guard = guard
        self._ttl = ttl
        self._retry_policy = retry_policy or default_send_retry_policy()
        self._requeue_policy = requeue_policy or DeliveryRequeuePolicy()
        self._events = event_logger or NotifyEventLogger()
        self._formatter = formatter
        self._clock = clock
        self._sleep = sleep

    async def notify_cycle(self) -> NotifyCycleResult:
        """Requeue due failures, then process every pending delivery once."""
        started = self._clock()
        result = NotifyCycleResult()
        deliveries = self._transactor.stores.deliveries

        try:
            result.requeue = await requeue_failed_deliveries(
                deliveries,
                self._requeue_policy,
                now=started,
                event_logger=self._events,
            )
        except Exception as exc:  # noqa: BLE001
            log_exception(
                self._events.logger, "requeue of failed deliveries failed", exc
            )

        pending = await deliveries.list_pending()
        self._events.log_cycle_started(len(pending))
        for delivery in pending:
            result.record(await self.process(delivery))

        self._events.log_cycle_completed(
            sent=result.sent,
            failed=result.failed,
            skipped=result.skipped,
            claimed_elsewhere=result.claimed_elsewhere,
            errored=result.errored,
            stale=result.stale,
            duration=self._clock() - started,
        )
        return result

    async def process(self, delivery: Delivery) -> DeliveryOutcome:
        """Guard and deliver a single pending delivery.

        Errors raised by the guard or the stores are logged and reported as
        :attr:`DeliveryOutcome.ERRORED`; they never propagate.
        """
        key = delivery_key(delivery)
        outcome = DeliveryOutcome.CLAIMED_ELSEWHERE

        async def deliver() -> None:
            nonlocal outcome
            outcome = await self._deliver(delivery)

        try:
            ran = await self._guard.do(key, self._ttl, deliver)
        except Exception as exc:  # noqa: BLE001
            self._events.log_errored(delivery.id, exc)
            return DeliveryOutcome.ERRORED

        if not ran:
            self._events.log_claimed_elsewhere(delivery.id, key)
        return outcome

    async def _resolve(
        self, stores: Stores, delivery: Delivery
    ) -> tuple[TrackedRepo, Release]:
        release = await stores.releases.get_by_id(delivery.release_id)
        if release is None:
            raise ReferenceNotFoundError("release", delivery.release_id)
        user = await stores.users.get_by_id(delivery.user_id)
        if user is None:
            raise ReferenceNotFoundError("user", delivery.user_id)
        repo = await stores.repos.get_by_id(release.repo_id)
        if repo is None:
            raise ReferenceNotFoundError("repository", release.repo_id)
        return repo, release

    async def _record(
        self,
        stores: Stores,
        delivery: Delivery,
        status: DeliveryStatus,
        *,
        error: str | None,
    ) -> bool:
        """Move ``delivery`` off ``pending``; False if it had already moved."""
        moved = await stores.deliveries.update_status(
            delivery.id,
            status,
            error=error,
            attempt=delivery.attempt + 1,
            expected_status=DeliveryStatus.PENDING,
        )
        if not moved:
            self._events.log_stale(delivery.id, status)
        return moved

    async def _deliver(self, delivery: Delivery) -> DeliveryOutcome:
        stores = self._transactor.stores

        try:
            repo, release = await self._resolve(stores, delivery)
        except ReferenceNotFoundError as exc:
            if not await self._record(
                stores, delivery, DeliveryStatus.SKIPPED, error=str(exc)
            ):
                return DeliveryOutcome.STALE
            self._events.log_skipped(delivery.id, str(exc))
            return DeliveryOutcome.SKIPPED

        text = self._formatter(repo, release)
        try:
            await self._retry_policy.run(
                lambda: self._channel.send(delivery.channel, text),
                sleep=self._sleep,
                logger=self._events.logger,
                operation=f"send delivery {delivery.id}",
            )
        except Exception as exc:  # noqa: BLE001
            if not await self._record(
                stores,
                delivery,
                DeliveryStatus.FAILED,
                error=str(exc) or type(exc).__name__,
            ):
                return DeliveryOutcome.STALE
            self._events.log_failed(delivery.id, delivery.attempt + 1, exc)
            return DeliveryOutcome.FAILED

        if not await self._record(stores, delivery, DeliveryStatus.SENT, error=None):
            return DeliveryOutcome.STALE
        self._events.log_sent(delivery.id, delivery.channel)
        return DeliveryOutcome.SENT


__all__ = [
    "DEFAULT_GUARD_TTL",
    "DeliveryOutcome",
    "MessageFormatter",
    "NotifyCycleResult",
    "Notifier",
    "default_send_retry_policy",
    "delivery_key",
]
