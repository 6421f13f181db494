"""In-memory fakes for the repository, source, channel and claim ports."""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import itertools
import typing as typ

from releasewatch.errors import PersistenceError, SendError
from releasewatch.sources.models import FetchResult, UpstreamRelease
from releasewatch.storage.models import DeliveryStatus
from releasewatch.storage.ports import Stores

if typ.TYPE_CHECKING:
    from releasewatch.storage.ports import ReleaseDraft

T0 = dt.datetime(2024, 7, 1, 12, 0, tzinfo=dt.UTC)


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, now: dt.datetime = T0) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, delta: dt.timedelta) -> None:
        self.now += delta


@dataclasses.dataclass(slots=True)
class FakeRepo:
    id: str
    owner: str
    name: str
    etag: str | None = None
    last_checked_at: dt.datetime | None = None


@dataclasses.dataclass(slots=True)
class FakeRelease:
    id: str
    repo_id: str
    tag: str
    title: str
    url: str
    body: str
    content_hash: str
    published_at: dt.datetime | None = None
    created_at: dt.datetime = T0


@dataclasses.dataclass(slots=True)
class FakeSubscription:
    id: str
    repo_id: str
    user_id: str
    channel: str


@dataclasses.dataclass(slots=True)
class FakeUser:
    id: str
    email: str


@dataclasses.dataclass(slots=True)
class FakeDelivery:
    id: str
    release_id: str
    user_id: str
    channel: str
    status: str = DeliveryStatus.PENDING.value
    attempt: int = 0
    last_error: str | None = None
    created_at: dt.datetime = T0
    updated_at: dt.datetime = T0


@dataclasses.dataclass(slots=True)
class InMemoryData:
    """Rows shared by the in-memory stores."""

    clock: FakeClock
    repos: dict[str, FakeRepo] = dataclasses.field(default_factory=dict)
    releases: list[FakeRelease] = dataclasses.field(default_factory=list)
    subscriptions: list[FakeSubscription] = dataclasses.field(default_factory=list)
    users: dict[str, FakeUser] = dataclasses.field(default_factory=dict)
    deliveries: dict[str, FakeDelivery] = dataclasses.field(default_factory=dict)
    ids: typ.Iterator[int] = dataclasses.field(default_factory=itertools.count)

    def next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self.ids)}"

    def snapshot(self) -> dict[str, object]:
        return {
            "repos": {k: dataclasses.replace(v) for k, v in self.repos.items()},
            "releases": [dataclasses.replace(r) for r in self.releases],
            "deliveries": {
                k: dataclasses.replace(v) for k, v in self.deliveries.items()
            },
        }

    def restore(self, snapshot: dict[str, object]) -> None:
        self.repos = typ.cast("dict[str, FakeRepo]", snapshot["repos"])
        self.releases = typ.cast("list[FakeRelease]", snapshot["releases"])
        self.deliveries = typ.cast("dict[str, FakeDelivery]", snapshot["deliveries"])

    def add_repo(
        self,
        owner: str,
        name: str,
        **fields: typ.Any,  # noqa: ANN401
    ) -> FakeRepo:
        repo = FakeRepo(id=self.next_id("repo"), owner=owner, name=name, **fields)
        self.repos[repo.id] = repo
        return repo

    def add_user(self, email: str) -> FakeUser:
        user = FakeUser(id=self.next_id("user"), email=email)
        self.users[user.id] = user
        return user

    def subscribe(self, repo: FakeRepo, user: FakeUser, channel: str) -> None:
        self.subscriptions.append(
            FakeSubscription(
                id=self.next_id("sub"),
                repo_id=repo.id,
                user_id=user.id,
                channel=channel,
            )
        )

    def add_release(
        self,
        repo: FakeRepo,
        tag: str,
        **fields: typ.Any,  # noqa: ANN401
    ) -> FakeRelease:
        values: dict[str, typ.Any] = {
            "title": tag,
            "url": f"https://example.test/{repo.owner}/{repo.name}/{tag}",
            "body": "",
            "content_hash": "0" * 64,
            "created_at": self.clock(),
        }
        values.update(fields)
        release = FakeRelease(
            id=self.next_id("release"), repo_id=repo.id, tag=tag, **values
        )
        self.releases.append(release)
        return release

    def add_delivery(
        self,
        release_id: str,
        user_id: str,
        channel: str,
        **fields: typ.Any,  # noqa: ANN401
    ) -> FakeDelivery:
        delivery = FakeDelivery(
            id=self.next_id("delivery"),
            release_id=release_id,
            user_id=user_id,
            channel=channel,
            **fields,
        )
        self.deliveries[delivery.id] = delivery
        return delivery


class _RepoStore:
    def __init__(self, data: InMemoryData) -> None:
        self._data = data
        self.fail_poll_state_for: set[str] = set()

    async def create(self, owner: str, name: str) -> FakeRepo:
        return self._data.add_repo(owner, name)

    async def get_by_id(self, repo_id: str) -> FakeRepo | None:
        return self._data.repos.get(repo_id)

    async def get_by_owner_name(self, owner: str, name: str) -> FakeRepo | None:
        for repo in self._data.repos.values():
            if (repo.owner, repo.name) == (owner, name):
                return repo
        return None

    async def update_poll_state(
        self, repo_id: str, *, etag: str | None, last_checked_at: dt.datetime
    ) -> None:
        if repo_id in self.fail_poll_state_for:
            msg = "update poll state failed: database is locked"
            raise PersistenceError(msg)
        repo = self._data.repos[repo_id]
        repo.etag = etag
        repo.last_checked_at = last_checked_at

    async def list_due_for_poll(
        self, *, now: dt.datetime, poll_interval: dt.timedelta
    ) -> list[FakeRepo]:
        return [
            r
            for r in self._data.repos.values()
            if r.last_checked_at is None or r.last_checked_at + poll_interval <= now
        ]


class _ReleaseStore:
    def __init__(self, data: InMemoryData) -> None:
        self._data = data

    async def create_if_absent(self, draft: ReleaseDraft) -> tuple[FakeRelease, bool]:
        for release in self._data.releases:
            if (release.repo_id, release.tag, release.content_hash) == (
                draft.repo_id,
                draft.tag,
                draft.content_hash,
            ):
                return release, False
        release = FakeRelease(
            id=self._data.next_id("release"),
            repo_id=draft.repo_id,
            tag=draft.tag,
            title=draft.title,
            url=draft.url,
            body=draft.body,
            content_hash=draft.content_hash,
            published_at=draft.published_at,
            created_at=self._data.clock(),
        )
        self._data.releases.append(release)
        return release, True

    async def get_by_id(self, release_id: str) -> FakeRelease | None:
        return next((r for r in self._data.releases if r.id == release_id), None)

    async def get_latest_for_tag(self, repo_id: str, tag: str) -> FakeRelease | None:
        matching = [
            r for r in self._data.releases if (r.repo_id, r.tag) == (repo_id, tag)
        ]
        return matching[-1] if matching else None


class _SubscriptionStore:
    def __init__(self, data: InMemoryData) -> None:
        self._data = data

    async def list_by_repo(self, repo_id: str) -> list[FakeSubscription]:
        return [s for s in self._data.subscriptions if s.repo_id == repo_id]


class _DeliveryStore:
    def __init__(self, data: InMemoryData) -> None:
        self._data = data
        self.fail_updates_with: Exception | None = None

    async def create_if_absent(
        self, *, release_id: str, user_id: str, channel: str
    ) -> bool:
        key = (release_id, user_id, channel)
        if any(
            (d.release_id, d.user_id, d.channel) == key
            for d in self._data.deliveries.values()
        ):
            return False
        now = self._data.clock()
        self._data.add_delivery(
            release_id, user_id, channel, created_at=now, updated_at=now
        )
        return True

    async def update_status(  # noqa: PLR0913
        self,
        delivery_id: str,
        status: DeliveryStatus,
        *,
        error: str | None,
        attempt: int,
        expected_status: DeliveryStatus | None = None,
    ) -> bool:
        if self.fail_updates_with is not None:
            raise self.fail_updates_with
        delivery = self._data.deliveries.get(delivery_id)
        if delivery is None:
            return False
        if expected_status is not None and delivery.status != expected_status:
            return False
        delivery.status = status.value
        delivery.last_error = error
        delivery.attempt = attempt
        delivery.updated_at = self._data.clock()
        return True

    async def list_by_status(self, status: DeliveryStatus) -> list[FakeDelivery]:
        return [d for d in self._data.deliveries.values() if d.status == status]

    async def list_pending(self) -> list[FakeDelivery]:
        return await self.list_by_status(DeliveryStatus.PENDING)


class _UserStore:
    def __init__(self, data: InMemoryData) -> None:
        self._data = data

    async def get_by_id(self, user_id: str) -> FakeUser | None:
        return self._data.users.get(user_id)


class FakeTransactor:
    """Transactor over :class:`InMemoryData` with snapshot rollback."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.data = InMemoryData(clock=clock or FakeClock())
        self.repos = _RepoStore(self.data)
        self.deliveries = _DeliveryStore(self.data)
        self._stores = Stores(
            repos=self.repos,
            releases=_ReleaseStore(self.data),
            subscriptions=_SubscriptionStore(self.data),
            deliveries=self.deliveries,
            users=_UserStore(self.data),
        )
        self.transactions = 0

    @property
    def stores(self) -> Stores:
        return self._stores

    async def within_transaction[T](
        self, fn: typ.Callable[[Stores], typ.Awaitable[T]]
    ) -> T:
        self.transactions += 1
        snapshot = self.data.snapshot()
        try:
            result = await fn(self._stores)
        except BaseException:
            self.data.restore(snapshot)
            raise
        return result


class FakeReleaseSource:
    """Release source replaying scripted results per repository."""

    def __init__(self) -> None:
        self.scripts: dict[tuple[str, str], list[FetchResult | Exception]] = {}
        self.calls: list[tuple[str, str, str | None]] = []

    def script(
        self, owner: str, name: str, *results: FetchResult | Exception
    ) -> None:
        self.scripts.setdefault((owner, name), []).extend(results)

    async def get_latest(
        self, owner: str, name: str, validator: str | None
    ) -> FetchResult:
        self.calls.append((owner, name, validator))
        queue = self.scripts.get((owner, name), [])
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        return result


def release_result(
    tag: str,
    *,
    body: str = "notes",
    title: str = "",
    url: str | None = None,
    validator: str | None = None,
) -> FetchResult:
    """Build a modified fetch result for ``tag``."""
    return FetchResult(
        release=UpstreamRelease(
            tag=tag,
            title=title or tag,
            url=url or f"https://example.test/releases/{tag}",
            body=body,
        ),
        validator=validator,
    )


class FakeChannel:
    """Notification channel recording sends and failing on demand."""

    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.sent: list[tuple[str, str]] = []
        self.attempts = 0

    async def send(self, channel_id: str, text: str) -> None:
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append((channel_id, text))


def failing_sends(count: int, message: str = "telegram unavailable") -> list[Exception]:
    """Return ``count`` transient send errors."""
    return [SendError(message, status_code=503) for _ in range(count)]


class FakeClaimStore:
    """Claim store keeping keys in a set; yields once before each claim."""

    def __init__(self, error: Exception | None = None) -> None:
        self.keys: set[str] = set()
        self.error = error

    async def claim_if_absent(self, key: str, ttl: dt.timedelta) -> bool:
        del ttl
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if key in self.keys:
            return False
        self.keys.add(key)
        return True
