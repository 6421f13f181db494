"""Worker configuration loaded from ``RELEASEWATCH_*`` environment variables.

Usage
-----
Create a configuration with defaults:

>>> config = WorkerConfig(database_url="sqlite+aiosqlite:///releasewatch.db")
>>> config.poll_interval_s
300.0

Or load from environment variables:

>>> import os
>>> os.environ["RELEASEWATCH_DATABASE_URL"] = "sqlite+aiosqlite:///rw.db"
>>> os.environ["RELEASEWATCH_POLL_INTERVAL_SECONDS"] = "60"
>>> WorkerConfig.from_env().poll_interval_s
60.0

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import os

from releasewatch.errors import ConfigError


def _read(env_var: str) -> str:
    return os.environ.get(env_var, "").strip()


def _parse_positive_int(env_var: str, default: int) -> int:
    """Read a positive integer env var, falling back to a default."""
    raw = _read(env_var)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError.not_positive(env_var, raw) from exc
    if value < 1:
        raise ConfigError.not_positive(env_var, raw)
    return value


def _parse_positive_float(env_var: str, default: float) -> float:
    """Read a positive float env var, falling back to a default."""
    raw = _read(env_var)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError.not_positive(env_var, raw) from exc
    if not value > 0:
        raise ConfigError.not_positive(env_var, raw)
    return value


@dc.dataclass(frozen=True, slots=True)
class WorkerConfig:
    """Settings for the poll and notify loops.

    Attributes
    ----------
    database_url
        SQLAlchemy async URL, e.g. ``postgresql+asyncpg://...``.
    redis_url
        Optional Redis or Valkey URL for idempotency claims. When unset the
        claims live in the ``idempotency_claims`` table.
    poll_interval_s
        Minimum age of ``last_checked_at`` before a repository is polled again,
        and the sleep between poll cycles.
    notify_interval_s
        Sleep between notify cycles.
    retry_attempts, retry_base_delay_s
        Bounded retries around every upstream fetch and channel send.
    request_timeout_s
        Per-attempt timeout for outbound HTTP calls.
    poll_concurrency
        Repositories polled in parallel within one cycle.
    guard_ttl_s
        Lifetime of a notify idempotency claim.
    delivery_max_attempts, requeue_base_backoff_s
        Re-delivery cap and first backoff for failed deliveries.
    log_level
        femtologging level name.

    """

    database_url: str
    redis_url: str | None = None
    poll_interval_s: float = 300.0
    notify_interval_s: float = 10.0
    retry_attempts: int = 3
    retry_base_delay_s: float = 2.0
    request_timeout_s: float = 20.0
    poll_concurrency: int = 4
    guard_ttl_s: float = 600.0
    delivery_max_attempts: int = 5
    requeue_base_backoff_s: float = 600.0
    log_level: str = "INFO"

    @property
    def poll_interval(self) -> dt.timedelta:
        """Return the poll interval as a timedelta."""
        return dt.timedelta(seconds=self.poll_interval_s)

    @property
    def guard_ttl(self) -> dt.timedelta:
        """Return the idempotency claim lifetime as a timedelta."""
        return dt.timedelta(seconds=self.guard_ttl_s)

    @property
    def requeue_base_backoff(self) -> dt.timedelta:
        """Return the first re-delivery backoff as a timedelta."""
        return dt.timedelta(seconds=self.requeue_base_backoff_s)

    @classmethod
    def from_env(cls) -> WorkerConfig:
        """Create configuration from environment variables.

        Reads ``RELEASEWATCH_DATABASE_URL`` (required),
        ``RELEASEWATCH_REDIS_URL``, ``RELEASEWATCH_POLL_INTERVAL_SECONDS``,
        ``RELEASEWATCH_NOTIFY_INTERVAL_SECONDS``,
        ``RELEASEWATCH_RETRY_ATTEMPTS``, ``RELEASEWATCH_RETRY_BASE_DELAY_SECONDS``,
        ``RELEASEWATCH_REQUEST_TIMEOUT_SECONDS``,
        ``RELEASEWATCH_POLL_CONCURRENCY``, ``RELEASEWATCH_GUARD_TTL_SECONDS``,
        ``RELEASEWATCH_DELIVERY_MAX_ATTEMPTS``,
        ``RELEASEWATCH_REQUEUE_BASE_BACKOFF_SECONDS`` and
        ``RELEASEWATCH_LOG_LEVEL``.

        Raises
        ------
        ConfigError
            If the database URL is missing or a numeric value is not positive.

        """
        database_url = _read("RELEASEWATCH_DATABASE_URL")
        if not database_url:
            raise ConfigError.missing("RELEASEWATCH_DATABASE_URL")

        return cls(
            database_url=database_url,
            redis_url=_read("RELEASEWATCH_REDIS_URL") or None,
            poll_interval_s=_parse_positive_float(
                "RELEASEWATCH_POLL_INTERVAL_SECONDS", 300.0
            ),
            notify_interval_s=_parse_positive_float(
                "RELEASEWATCH_NOTIFY_INTERVAL_SECONDS", 10.0
            ),
            retry_attempts=_parse_positive_int("RELEASEWATCH_RETRY_ATTEMPTS", 3),
            retry_base_delay_s=_parse_positive_float(
                "RELEASEWATCH_RETRY_BASE_DELAY_SECONDS", 2.0
            ),
            request_timeout_s=_parse_positive_float(
                "RELEASEWATCH_REQUEST_TIMEOUT_SECONDS", 20.0
            ),
            poll_concurrency=_parse_positive_int("RELEASEWATCH_POLL_CONCURRENCY", 4),
            guard_ttl_s=_parse_positive_float("RELEASEWATCH_GUARD_TTL_SECONDS", 600.0),
            delivery_max_attempts=_parse_positive_int(
                "RELEASEWATCH_DELIVERY_MAX_ATTEMPTS", 5
            ),
            requeue_base_backoff_s=_parse_positive_float(
                "RELEASEWATCH_REQUEUE_BASE_BACKOFF_SECONDS", 600.0
            ),
            log_level=_read("RELEASEWATCH_LOG_LEVEL") or "INFO",
        )


__all__ = ["WorkerConfig"]
