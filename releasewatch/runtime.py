"""Worker runtime running the poll and notify loops.

Configuration is driven by ``RELEASEWATCH_*`` environment variables (see
:class:`releasewatch.config.WorkerConfig`), plus
``RELEASEWATCH_GITHUB_TOKEN`` and ``RELEASEWATCH_TELEGRAM_BOT_TOKEN`` for the
upstream and channel adapters.

Both loops run in one event loop until SIGINT or SIGTERM. On shutdown each
loop finishes the cycle it is running and exits; the runtime then closes the
HTTP clients, the Redis client and the database engine.

Run the worker with ``releasewatch-worker`` or
``python -m releasewatch.runtime``.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import signal
import typing as typ

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from releasewatch.channels.telegram import (
    TelegramChannel,
    TelegramConfig,
    is_transient_send_error,
)
from releasewatch.config import WorkerConfig
from releasewatch.errors import ConfigError
from releasewatch.idempotency import IdempotencyGuard, RedisClaimStore, SqlClaimStore
from releasewatch.logging import (
    SupportsLog,
    configure_logging,
    get_logger,
    log_error,
    log_exception,
    log_info,
    log_warning,
)
from releasewatch.notify import DeliveryRequeuePolicy, Notifier
from releasewatch.observability import NotifyEventLogger, PollEventLogger
from releasewatch.polling import PollerConfig, ReleasePoller
from releasewatch.retry import RetryPolicy
from releasewatch.sources.errors import is_transient_fetch_error
from releasewatch.sources.github import GitHubReleaseClient, GitHubReleaseConfig
from releasewatch.storage import SqlAlchemyTransactor, init_storage

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from releasewatch.idempotency import ClaimStore

__all__ = ["Worker", "build_worker", "main", "run_periodic", "run_worker"]

logger = get_logger(__name__)

type Cycle = typ.Callable[[], typ.Awaitable[object]]


async def run_periodic(
    name: str,
    cycle: Cycle,
    interval: float,
    stop_event: asyncio.Event,
    *,
    log: SupportsLog | None = None,
) -> None:
    """Run ``cycle`` every ``interval`` seconds until ``stop_event`` is set.

    A cycle always runs to completion before the next sleep, so a slow cycle
    delays the following one instead of overlapping it. Exceptions escaping a
    cycle are logged and the loop carries on.
    """
    sink = log or logger
    while not stop_event.is_set():
        try:
            await cycle()
        except Exception as exc:  # noqa: BLE001
            log_exception(sink, f"{name} cycle failed", exc)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
    log_info(sink, "%s loop stopped", name)


@dataclasses.dataclass(slots=True)
class Worker:
    """Assembled poller and notifier with the resources they hold."""

    config: WorkerConfig
    engine: AsyncEngine
    poller: ReleasePoller
    notifier: Notifier
    source: GitHubReleaseClient
    channel: TelegramChannel
    redis_client: aioredis.Redis | None = None

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run both loops until ``stop_event`` is set."""
        await asyncio.gather(
            run_periodic(
                "poll",
                self.poller.poll_cycle,
                self.config.poll_interval_s,
                stop_event,
            ),
            run_periodic(
                "notify",
                self.notifier.notify_cycle,
                self.config.notify_interval_s,
                stop_event,
            ),
        )

    async def aclose(self) -> None:
        """Release HTTP clients, the Redis client and the engine."""
        await self.source.aclose()
        await self.channel.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        await self.engine.dispose()


def build_worker(
    config: WorkerConfig,
    *,
    github_config: GitHubReleaseConfig | None = None,
    telegram_config: TelegramConfig | None = None,
) -> Worker:
    """Wire stores, adapters and both loops from configuration.

    Raises
    ------
    ConfigError
        If the Telegram bot token is not configured.

    """
    telegram = telegram_config or TelegramConfig.from_env()
    github = github_config or GitHubReleaseConfig.from_env()
    github = dataclasses.replace(github, timeout_s=config.request_timeout_s)
    telegram = dataclasses.replace(telegram, timeout_s=config.request_timeout_s)

    engine = create_async_engine(config.database_url)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    transactor = SqlAlchemyTransactor(session_factory)

    redis_client: aioredis.Redis | None = None
    claim_store: ClaimStore
    if config.redis_url:
        redis_client = aioredis.Redis.from_url(config.redis_url)
        claim_store = RedisClaimStore(redis_client)
    else:
        claim_store = SqlClaimStore(session_factory)

    source = GitHubReleaseClient(github)
    channel = TelegramChannel(telegram)

    poller = ReleasePoller(
        transactor,
        source,
        config=PollerConfig(
            poll_interval=config.poll_interval,
            concurrency=config.poll_concurrency,
        ),
        retry_policy=RetryPolicy(
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay_s,
            attempt_timeout=config.request_timeout_s,
            retry_if=is_transient_fetch_error,
        ),
        event_logger=PollEventLogger(get_logger("releasewatch.poller")),
    )
    notifier = Notifier(
        transactor,
        channel,
        IdempotencyGuard(claim_store),
        ttl=config.guard_ttl,
        retry_policy=RetryPolicy(
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay_s,
            attempt_timeout=config.request_timeout_s,
            retry_if=is_transient_send_error,
        ),
        requeue_policy=DeliveryRequeuePolicy(
            max_attempts=config.delivery_max_attempts,
            base_backoff=config.requeue_base_backoff,
        ),
        event_logger=NotifyEventLogger(get_logger("releasewatch.notifier")),
    )
    return Worker(
        config=config,
        engine=engine,
        poller=poller,
        notifier=notifier,
        source=source,
        channel=channel,
        redis_client=redis_client,
    )


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform; Ctrl+C still raises there.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)


async def run_worker(
    worker: Worker, *, stop_event: asyncio.Event | None = None
) -> None:
    """Create the schema, run both loops and close resources on shutdown."""
    stop = stop_event or asyncio.Event()
    if stop_event is None:
        _install_signal_handlers(stop)
    try:
        await init_storage(worker.engine)
        log_info(
            logger,
            "Starting releasewatch worker (poll_interval=%.0fs notify_interval=%.0fs "
            "claim_store=%s)",
            worker.config.poll_interval_s,
            worker.config.notify_interval_s,
            "redis" if worker.redis_client is not None else "sql",
        )
        await worker.run(stop)
    finally:
        await worker.aclose()
        log_info(logger, "releasewatch worker stopped")


def main() -> None:
    """Start the worker from environment configuration."""
    try:
        config = WorkerConfig.from_env()
    except ConfigError as exc:
        configure_logging("INFO")
        log_error(logger, "Invalid configuration: %s", exc)
        raise SystemExit(1) from exc

    normalized_level, invalid_level = configure_logging(config.log_level)
    if invalid_level:
        log_warning(
            logger,
            "Invalid RELEASEWATCH_LOG_LEVEL %r, falling back to %s",
            config.log_level,
            normalized_level,
        )

    try:
        worker = build_worker(config)
    except ConfigError as exc:
        log_error(logger, "Invalid configuration: %s", exc)
        raise SystemExit(1) from exc

    asyncio.run(run_worker(worker))


if __name__ == "__main__":
    main()
