"""Observability primitives for the poll and notify loops.

Provides structured logging and error categorisation for release detection
and delivery. All events are emitted as ``[event.type] key=value`` log lines
suitable for parsing by log aggregators.
"""

from __future__ import annotations

import dataclasses
import enum
import typing as typ

from redis.exceptions import RedisError
from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

from releasewatch.channels.telegram import is_transient_send_error
from releasewatch.errors import (
    ConfigError,
    GuardError,
    PersistenceError,
    SendError,
    UpstreamFetchError,
)
from releasewatch.logging import (
    SupportsLog,
    get_logger,
    log_debug,
    log_error,
    log_info,
    log_warning,
)
from releasewatch.sources.errors import ReleaseSourceError, is_transient_fetch_error

if typ.TYPE_CHECKING:
    import datetime as dt


class PollEventType(enum.StrEnum):
    """Structured log event types for the poll loop."""

    CYCLE_STARTED = "poll.cycle.started"
    CYCLE_COMPLETED = "poll.cycle.completed"
    REPO_NOT_MODIFIED = "poll.repo.not_modified"
    REPO_UNCHANGED = "poll.repo.unchanged"
    RELEASE_DETECTED = "poll.release.detected"
    REPO_FAILED = "poll.repo.failed"


class NotifyEventType(enum.StrEnum):
    """Structured log event types for the notify loop."""

    CYCLE_STARTED = "notify.cycle.started"
    CYCLE_COMPLETED = "notify.cycle.completed"
    DELIVERY_SENT = "notify.delivery.sent"
    DELIVERY_FAILED = "notify.delivery.failed"
    DELIVERY_SKIPPED = "notify.delivery.skipped"
    DELIVERY_CLAIMED_ELSEWHERE = "notify.delivery.claimed_elsewhere"
    DELIVERY_ERRORED = "notify.delivery.errored"
    DELIVERY_STALE = "notify.delivery.stale"
    DELIVERY_REQUEUED = "notify.delivery.requeued"
    DELIVERY_DEAD_LETTERED = "notify.delivery.dead_lettered"


class ErrorCategory(enum.StrEnum):
    """Categories for error classification in alerts."""

    TRANSIENT = "transient"
    CLIENT_ERROR = "client_error"
    CONFIGURATION = "configuration"
    DATABASE_CONNECTIVITY = "database_connectivity"
    DATA_INTEGRITY = "data_integrity"
    DATABASE_ERROR = "database_error"
    GUARD_UNAVAILABLE = "guard_unavailable"
    UNKNOWN = "unknown"


_EXCEPTION_CATEGORY_MAP: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (ConfigError, ErrorCategory.CONFIGURATION),
    (GuardError, ErrorCategory.GUARD_UNAVAILABLE),
    (RedisError, ErrorCategory.GUARD_UNAVAILABLE),
    (OperationalError, ErrorCategory.DATABASE_CONNECTIVITY),
    (InterfaceError, ErrorCategory.DATABASE_CONNECTIVITY),
    (IntegrityError, ErrorCategory.DATA_INTEGRITY),
    (SQLAlchemyError, ErrorCategory.DATABASE_ERROR),
)


def categorize_error(exc: BaseException) -> ErrorCategory:
    """Categorize an exception for alerting purposes.

    Wrapper errors are unwrapped first: an :class:`UpstreamFetchError` is
    categorised by its terminal cause and a :class:`PersistenceError` by the
    SQLAlchemy error it wraps.
    """
    if isinstance(exc, UpstreamFetchError):
        return categorize_error(exc.cause)
    if isinstance(exc, PersistenceError):
        cause = exc.__cause__
        return (
            categorize_error(cause)
            if cause is not None
            else ErrorCategory.DATABASE_ERROR
        )
    if isinstance(exc, ReleaseSourceError):
        if is_transient_fetch_error(exc):
            return ErrorCategory.TRANSIENT
        return ErrorCategory.CLIENT_ERROR
    if isinstance(exc, SendError):
        if is_transient_send_error(exc):
            return ErrorCategory.TRANSIENT
        return ErrorCategory.CLIENT_ERROR
    if is_transient_fetch_error(exc):
        return ErrorCategory.TRANSIENT

    for exc_type, category in _EXCEPTION_CATEGORY_MAP:
        if isinstance(exc, exc_type):
            return category

    return ErrorCategory.UNKNOWN


@dataclasses.dataclass(frozen=True, slots=True)
class RepoPollContext:
    """Shared context for polling a single repository."""

    repo_id: str
    repo_slug: str
    started_at: dt.datetime


class PollEventLogger:
    """Emit structured poll-loop events.

    Events are emitted at INFO level for detections and cycle summaries,
    DEBUG for unchanged repositories and ERROR for per-repository failures.
    """

    def __init__(self, logger: SupportsLog | None = None) -> None:
        """Use ``logger`` or the ``releasewatch.poller`` femtologging logger."""
        self.logger: SupportsLog = logger or get_logger("releasewatch.poller")

    def log_cycle_started(self, due_repos: int) -> None:
        """Log the start of a poll cycle."""
        log_info(
            self.logger, "[%s] due_repos=%d", PollEventType.CYCLE_STARTED, due_repos
        )

    def log_cycle_completed(  # noqa: PLR0913
        self,
        *,
        polled: int,
        not_modified: int,
        releases_created: int,
        deliveries_enqueued: int,
        failed: int,
        duration: dt.timedelta,
    ) -> None:
        """Log a completed poll cycle with its counters."""
        log_info(
            self.logger,
            "[%s] repos_polled=%d not_modified=%d releases_created=%d "
            "deliveries_enqueued=%d repos_failed=%d duration_seconds=%.3f",
            PollEventType.CYCLE_COMPLETED,
            polled,
            not_modified,
            releases_created,
            deliveries_enqueued,
            failed,
            duration.total_seconds(),
        )

    def log_not_modified(self, context: RepoPollContext) -> None:
        """Log a repository whose upstream content did not change."""
        log_debug(
            self.logger,
            "[%s] repo_slug=%s",
            PollEventType.REPO_NOT_MODIFIED,
            context.repo_slug,
        )

    def log_unchanged(self, context: RepoPollContext, tag: str) -> None:
        """Log a fetched release whose hash matches the stored one."""
        log_debug(
            self.logger,
            "[%s] repo_slug=%s tag=%s",
            PollEventType.REPO_UNCHANGED,
            context.repo_slug,
            tag,
        )

    def log_release_detected(
        self,
        context: RepoPollContext,
        *,
        tag: str,
        release_id: str,
        deliveries_enqueued: int,
    ) -> None:
        """Log a newly stored release and its fan-out size."""
        log_info(
            self.logger,
            "[%s] repo_slug=%s tag=%s release_id=%s deliveries_enqueued=%d",
            PollEventType.RELEASE_DETECTED,
            context.repo_slug,
            tag,
            release_id,
            deliveries_enqueued,
        )

    def log_repo_failed(self, context: RepoPollContext, error: BaseException) -> None:
        """Log a repository whose poll step was abandoned."""
        log_error(
            self.logger,
            "[%s] repo_slug=%s error_type=%s error_category=%s error_message=%s",
            PollEventType.REPO_FAILED,
            context.repo_slug,
            type(error).__name__,
            categorize_error(error),
            str(error),
            exc_info=error,
        )


class NotifyEventLogger:
    """Emit structured notify-loop events."""

    def __init__(self, logger: SupportsLog | None = None) -> None:
        """Use ``logger`` or the ``releasewatch.notifier`` femtologging logger."""
        self.logger: SupportsLog = logger or get_logger("releasewatch.notifier")

    def log_cycle_started(self, pending: int) -> None:
        """Log the start of a notify cycle."""
        log_debug(
            self.logger, "[%s] pending=%d", NotifyEventType.CYCLE_STARTED, pending
        )

    def log_cycle_completed(  # noqa: PLR0913
        self,
        *,
        sent: int,
        failed: int,
        skipped: int,
        claimed_elsewhere: int,
        errored: int,
        stale: int,
        duration: dt.timedelta,
    ) -> None:
        """Log a completed notify cycle with its counters."""
        log_info(
            self.logger,
            "[%s] sent=%d failed=%d skipped=%d claimed_elsewhere=%d errored=%d "
            "stale=%d duration_seconds=%.3f",
            NotifyEventType.CYCLE_COMPLETED,
            sent,
            failed,
            skipped,
            claimed_elsewhere,
            errored,
            stale,
            duration.total_seconds(),
        )

    def log_sent(self, delivery_id: str, channel: str) -> None:
        """Log a successful send."""
        log_info(
            self.logger,
            "[%s] delivery_id=%s channel=%s",
            NotifyEventType.DELIVERY_SENT,
            delivery_id,
            channel,
        )

    def log_failed(self, delivery_id: str, attempt: int, error: BaseException) -> None:
        """Log a send that failed after retries."""
        log_warning(
            self.logger,
            "[%s] delivery_id=%s attempt=%d error_category=%s error_message=%s",
            NotifyEventType.DELIVERY_FAILED,
            delivery_id,
            attempt,
            categorize_error(error),
            str(error),
        )

    def log_skipped(self, delivery_id: str, reason: str) -> None:
        """Log a delivery whose release, user or repository vanished."""
        log_warning(
            self.logger,
            "[%s] delivery_id=%s reason=%s",
            NotifyEventType.DELIVERY_SKIPPED,
            delivery_id,
            reason,
        )

    def log_claimed_elsewhere(self, delivery_id: str, key: str) -> None:
        """Log a delivery whose idempotency key is already held."""
        log_debug(
            self.logger,
            "[%s] delivery_id=%s key=%s",
            NotifyEventType.DELIVERY_CLAIMED_ELSEWHERE,
            delivery_id,
            key,
        )

    def log_stale(self, delivery_id: str, status: str) -> None:
        """Log a status write lost because the delivery had already moved."""
        log_warning(
            self.logger,
            "[%s] delivery_id=%s intended_status=%s",
            NotifyEventType.DELIVERY_STALE,
            delivery_id,
            status,
        )

    def log_errored(self, delivery_id: str, error: BaseException) -> None:
        """Log a delivery left pending by a guard or storage error."""
        log_error(
            self.logger,
            "[%s] delivery_id=%s error_type=%s error_category=%s error_message=%s",
            NotifyEventType.DELIVERY_ERRORED,
            delivery_id,
            type(error).__name__,
            categorize_error(error),
            str(error),
            exc_info=error,
        )

    def log_requeued(self, delivery_id: str, attempt: int) -> None:
        """Log a failed delivery returned to pending."""
        log_info(
            self.logger,
            "[%s] delivery_id=%s attempt=%d",
            NotifyEventType.DELIVERY_REQUEUED,
            delivery_id,
            attempt,
        )

    def log_dead_lettered(self, delivery_id: str, attempt: int) -> None:
        """Log a delivery that exhausted its retry budget."""
        log_warning(
            self.logger,
            "[%s] delivery_id=%s attempt=%d",
            NotifyEventType.DELIVERY_DEAD_LETTERED,
            delivery_id,
            attempt,
        )


__all__ = [
    "ErrorCategory",
    "NotifyEventLogger",
    "NotifyEventType",
    "PollEventLogger",
    "PollEventType",
    "RepoPollContext",
    "categorize_error",
]
