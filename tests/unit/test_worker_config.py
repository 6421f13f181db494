"""Unit tests for worker configuration."""

from __future__ import annotations

import datetime as dt

import pytest

from releasewatch.config import WorkerConfig
from releasewatch.errors import ConfigError

_ENV_VARS = (
    "RELEASEWATCH_DATABASE_URL",
    "RELEASEWATCH_REDIS_URL",
    "RELEASEWATCH_POLL_INTERVAL_SECONDS",
    "RELEASEWATCH_NOTIFY_INTERVAL_SECONDS",
    "RELEASEWATCH_RETRY_ATTEMPTS",
    "RELEASEWATCH_RETRY_BASE_DELAY_SECONDS",
    "RELEASEWATCH_REQUEST_TIMEOUT_SECONDS",
    "RELEASEWATCH_POLL_CONCURRENCY",
    "RELEASEWATCH_GUARD_TTL_SECONDS",
    "RELEASEWATCH_DELIVERY_MAX_ATTEMPTS",
    "RELEASEWATCH_REQUEUE_BASE_BACKOFF_SECONDS",
    "RELEASEWATCH_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every RELEASEWATCH_* variable for the test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env: pytest.MonkeyPatch) -> None:
    """Only the database URL is required."""
    clean_env.setenv("RELEASEWATCH_DATABASE_URL", "sqlite+aiosqlite:///rw.db")

    config = WorkerConfig.from_env()

    assert config == WorkerConfig(database_url="sqlite+aiosqlite:///rw.db")
    assert config.redis_url is None
    assert config.poll_interval == dt.timedelta(minutes=5)
    assert config.guard_ttl == dt.timedelta(minutes=10)
    assert config.requeue_base_backoff == dt.timedelta(minutes=10)
    assert config.retry_attempts == 3
    assert config.retry_base_delay_s == 2.0


def test_overrides_are_parsed(clean_env: pytest.MonkeyPatch) -> None:
    """Every setting can be overridden from the environment."""
    values = {
        "RELEASEWATCH_DATABASE_URL": "postgresql+asyncpg://db/rw",
        "RELEASEWATCH_REDIS_URL": "redis://cache:6379/0",
        "RELEASEWATCH_POLL_INTERVAL_SECONDS": "60",
        "RELEASEWATCH_NOTIFY_INTERVAL_SECONDS": "2.5",
        "RELEASEWATCH_RETRY_ATTEMPTS": "5",
        "RELEASEWATCH_RETRY_BASE_DELAY_SECONDS": "0.5",
        "RELEASEWATCH_REQUEST_TIMEOUT_SECONDS": "7",
        "RELEASEWATCH_POLL_CONCURRENCY": "8",
        "RELEASEWATCH_GUARD_TTL_SECONDS": "900",
        "RELEASEWATCH_DELIVERY_MAX_ATTEMPTS": "2",
        "RELEASEWATCH_REQUEUE_BASE_BACKOFF_SECONDS": "30",
        "RELEASEWATCH_LOG_LEVEL": "debug",
    }
    for name, value in values.items():
        clean_env.setenv(name, value)

    config = WorkerConfig.from_env()

    assert config == WorkerConfig(
        database_url="postgresql+asyncpg://db/rw",
        redis_url="redis://cache:6379/0",
        poll_interval_s=60.0,
        notify_interval_s=2.5,
        retry_attempts=5,
        retry_base_delay_s=0.5,
        request_timeout_s=7.0,
        poll_concurrency=8,
        guard_ttl_s=900.0,
        delivery_max_attempts=2,
        requeue_base_backoff_s=30.0,
        log_level="debug",
    )


def test_missing_database_url(clean_env: pytest.MonkeyPatch) -> None:
    """The worker refuses to start without a database."""
    with pytest.raises(ConfigError, match="RELEASEWATCH_DATABASE_URL is required"):
        WorkerConfig.from_env()


@pytest.mark.parametrize(
    ("name", "raw"),
    [
        ("RELEASEWATCH_POLL_INTERVAL_SECONDS", "0"),
        ("RELEASEWATCH_POLL_INTERVAL_SECONDS", "soon"),
        ("RELEASEWATCH_RETRY_ATTEMPTS", "-1"),
        ("RELEASEWATCH_POLL_CONCURRENCY", "1.5"),
        ("RELEASEWATCH_GUARD_TTL_SECONDS", "nan"),
    ],
)
def test_non_positive_values_are_rejected(
    clean_env: pytest.MonkeyPatch, name: str, raw: str
) -> None:
    """Numeric settings must parse as positive numbers."""
    clean_env.setenv("RELEASEWATCH_DATABASE_URL", "sqlite+aiosqlite:///rw.db")
    clean_env.setenv(name, raw)

    with pytest.raises(ConfigError, match=name):
        WorkerConfig.from_env()
