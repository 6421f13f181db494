"""Release polling cycle over every due tracked repository.

Each cycle lists the repositories whose ``last_checked_at`` is unset or older
than the poll interval and polls them with a bounded worker pool. A
repository's conditional fetch runs outside any transaction; the release
insert, the delivery fan-out and the advanced poll state are then committed
together, so a crash between them cannot leave a release without its
deliveries.

Failures are isolated per repository: an exhausted fetch or a failed
transaction is logged, the repository keeps its previous validator and
timestamp, and it is retried on the next cycle.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import typing as typ

from releasewatch.common.slug import repo_slug
from releasewatch.common.time import ensure_utc, utcnow
from releasewatch.errors import UpstreamFetchError
from releasewatch.observability import PollEventLogger, RepoPollContext
from releasewatch.retry import RetryPolicy
from releasewatch.sources.errors import is_transient_fetch_error
from releasewatch.storage.ports import ReleaseDraft

from .enqueuer import DeliveryEnqueuer
from .hashing import content_hash

if typ.TYPE_CHECKING:
    from releasewatch.retry import Sleeper
    from releasewatch.sources.github import ReleaseSource
    from releasewatch.sources.models import FetchResult
    from releasewatch.storage.models import TrackedRepo
    from releasewatch.storage.ports import Stores, Transactor

DEFAULT_POLL_INTERVAL = dt.timedelta(minutes=5)
DEFAULT_POLL_CONCURRENCY = 4


def default_fetch_retry_policy(*, attempt_timeout: float = 20.0) -> RetryPolicy:
    """Return the fetch policy: 3 attempts, 2 s base delay, transient errors only."""
    return RetryPolicy(
        attempts=3,
        base_delay=2.0,
        attempt_timeout=attempt_timeout,
        retry_if=is_transient_fetch_error,
    )


@dataclasses.dataclass(frozen=True, slots=True)
class PollerConfig:
    """Scheduling knobs for :class:`ReleasePoller`."""

    poll_interval: dt.timedelta = DEFAULT_POLL_INTERVAL
    concurrency: int = DEFAULT_POLL_CONCURRENCY

    def __post_init__(self) -> None:
        """Reject non-positive intervals and pool sizes."""
        if self.poll_interval <= dt.timedelta(0):
            msg = f"poll_interval must be positive, got {self.poll_interval}"
            raise ValueError(msg)
        if self.concurrency < 1:
            msg = f"concurrency must be >= 1, got {self.concurrency}"
            raise ValueError(msg)


@dataclasses.dataclass(frozen=True, slots=True)
class RepoPollOutcome:
    """What polling one repository changed."""

    not_modified: bool = False
    release_id: str | None = None
    release_created: bool = False
    deliveries_enqueued: int = 0


@dataclasses.dataclass(slots=True)
class PollCycleResult:
    """Counters summarising one poll cycle."""

    repos_polled: int = 0
    not_modified: int = 0
    releases_created: int = 0
    deliveries_enqueued: int = 0
    failed_repos: list[str] = dataclasses.field(default_factory=list)

    @property
    def failures(self) -> int:
        """Return the number of repositories abandoned this cycle."""
        return len(self.failed_repos)

    def record(self, outcome: RepoPollOutcome) -> None:
        """Fold one repository outcome into the counters."""
        self.repos_polled += 1
        if outcome.not_modified:
            self.not_modified += 1
        if outcome.release_created:
            self.releases_created += 1
        self.deliveries_enqueued += outcome.deliveries_enqueued


class ReleasePoller:
    """Detect new or changed releases and enqueue their deliveries."""

    def __init__(  # noqa: PLR0913
        self,
        transactor: Transactor,
        source: ReleaseSource,
        *,
        config: PollerConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        enqueuer: DeliveryEnqueuer | None = None,
        event_logger: PollEventLogger | None = None,
        clock: typ.Callable[[], dt.datetime] = utcnow,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """Wire the poller to its stores, release source and collaborators.

        Parameters
        ----------
        transactor
            Store access; steps that write run inside one transaction.
        source
            Upstream release source queried with the stored validator.
        config
            Poll interval and worker pool size.
        retry_policy
            Policy wrapping each conditional fetch. Defaults to
            :func:`default_fetch_retry_policy`.
        enqueuer
            Delivery fan-out; defaults to one bound to ``transactor``.
        event_logger
            Structured event sink for cycle and repository events.
        clock
            Source of the current UTC time.
        sleep
            Coroutine used for retry backoff.

        """
        self._transactor = transactor
        self._source = source
        self._config = config or PollerConfig()
        self._retry_policy = retry_policy or default_fetch_retry_policy()
        self._enqueuer = enqueuer or DeliveryEnqueuer(transactor)
        self._events = event_logger or PollEventLogger()
        self._clock = clock
        self._sleep = sleep

    async def poll_cycle(self) -> PollCycleResult:
        """Poll every due repository once and return the cycle counters."""
        started = ensure_utc(self._clock(), field="clock")
        repos = await self._transactor.stores.repos.list_due_for_poll(
            now=started, poll_interval=self._config.poll_interval
        )
        self._events.log_cycle_started(len(repos))

        semaphore = asyncio.Semaphore(self._config.concurrency)

        async def bounded_poll(repo: TrackedRepo) -> RepoPollOutcome:
            async with semaphore:
                return await self.poll_repo(repo)

        gathered = await asyncio.gather(
            *(bounded_poll(repo) for repo in repos), return_exceptions=True
        )

        result = PollCycleResult()
        for repo, outcome in zip(repos, gathered, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                result.failed_repos.append(repo_slug(repo.owner, repo.name))
                continue
            result.record(outcome)

        self._events.log_cycle_completed(
            polled=result.repos_polled,
            not_modified=result.not_modified,
            releases_created=result.releases_created,
            deliveries_enqueued=result.deliveries_enqueued,
            failed=result.failures,
            duration=self._clock() - started,
        )
        return result

    async def poll_repo(self, repo: TrackedRepo) -> RepoPollOutcome:
        """Poll a single repository.

        Raises
        ------
        UpstreamFetchError
            The release source still failed after the retry policy gave up.
        PersistenceError
            Writing the release, deliveries or poll state failed; nothing from
            this repository's step was committed.

        """
        context = RepoPollContext(
            repo_id=repo.id,
            repo_slug=repo_slug(repo.owner, repo.name),
            started_at=self._clock(),
        )
        try:
            fetched = await self._fetch(repo, context)

            async def apply(stores: Stores) -> RepoPollOutcome:
                return await self._apply(stores, repo, fetched, context)

            outcome = await self._transactor.within_transaction(apply)
        except Exception as exc:
            self._events.log_repo_failed(context, exc)
            raise

        if outcome.not_modified:
            self._events.log_not_modified(context)
        return outcome

    async def _fetch(self, repo: TrackedRepo, context: RepoPollContext) -> FetchResult:
        try:
            return await self._retry_policy.run(
                lambda: self._source.get_latest(repo.owner, repo.name, repo.etag),
                sleep=self._sleep,
                logger=self._events.logger,
                operation=f"fetch latest release of {context.repo_slug}",
            )
        except Exception as exc:
            raise UpstreamFetchError(context.repo_slug, exc) from exc

    async def _apply(
        self,
        stores: Stores,
        repo: TrackedRepo,
        fetched: FetchResult,
        context: RepoPollContext,
    ) -> RepoPollOutcome:
        outcome = RepoPollOutcome(not_modified=fetched.not_modified)
        upstream = fetched.release
        if upstream is not None:
            digest = content_hash(
                body=upstream.body,
                tag=upstream.tag,
                title=upstream.title,
                url=upstream.url,
            )
            latest = await stores.releases.get_latest_for_tag(repo.id, upstream.tag)
            if latest is not None and latest.content_hash == digest:
                self._events.log_unchanged(context, upstream.tag)
            else:
                release, created = await stores.releases.create_if_absent(
                    ReleaseDraft(
                        repo_id=repo.id,
                        tag=upstream.tag,
                        title=upstream.title,
                        url=upstream.url,
                        body=upstream.body,
                        content_hash=digest,
                        published_at=upstream.published_at,
                    )
                )
                enqueued = 0
                if created:
                    enqueued = await self._enqueuer.enqueue(release, stores=stores)
                    self._events.log_release_detected(
                        context,
                        tag=release.tag,
                        release_id=release.id,
                        deliveries_enqueued=enqueued,
                    )
                outcome = dataclasses.replace(
                    outcome,
                    release_id=release.id,
                    release_created=created,
                    deliveries_enqueued=enqueued,
                )

        validator = fetched.validator or repo.etag
        await stores.repos.update_poll_state(
            repo.id, etag=validator, last_checked_at=context.started_at
        )
        return outcome


__all__ = [
    "DEFAULT_POLL_CONCURRENCY",
    "DEFAULT_POLL_INTERVAL",
    "PollCycleResult",
    "PollerConfig",
    "ReleasePoller",
    "RepoPollOutcome",
    "default_fetch_retry_policy",
]
