"""Repository ports consumed by the poller, enqueuer and notifier.

The core only depends on these protocols. The SQLAlchemy implementations in
:mod:`releasewatch.storage.sql` satisfy them; tests may substitute fakes.
"""

from __future__ import annotations

import dataclasses
import typing as typ

if typ.TYPE_CHECKING:
    import datetime as dt

    from .models import (
        Delivery,
        DeliveryStatus,
        Release,
        Subscription,
        TrackedRepo,
        User,
    )


@dataclasses.dataclass(frozen=True, slots=True)
class ReleaseDraft:
    """Release fields captured from upstream before persistence."""

    repo_id: str
    tag: str
    title: str
    url: str
    body: str
    content_hash: str
    published_at: dt.datetime | None = None


class TrackedRepoStore(typ.Protocol):
    """Access to tracked repositories."""

    async def create(self, owner: str, name: str) -> TrackedRepo:
        """Insert a tracked repository."""
        ...

    async def get_by_id(self, repo_id: str) -> TrackedRepo | None:
        """Return the repository with ``repo_id`` or ``None``."""
        ...

    async def get_by_owner_name(self, owner: str, name: str) -> TrackedRepo | None:
        """Return the repository for ``owner/name`` or ``None``."""
        ...

    async def update_poll_state(
        self, repo_id: str, *, etag: str | None, last_checked_at: dt.datetime
    ) -> None:
        """Persist the validator and poll timestamp after a cycle."""
        ...

    async def list_due_for_poll(
        self, *, now: dt.datetime, poll_interval: dt.timedelta
    ) -> list[TrackedRepo]:
        """Return repositories never polled or last polled before ``now - interval``."""
        ...


class ReleaseStore(typ.Protocol):
    """Access to stored release snapshots."""

    async def create_if_absent(self, draft: ReleaseDraft) -> tuple[Release, bool]:
        """Insert a release unless (repo, tag, hash) exists; report creation."""
        ...

    async def get_by_id(self, release_id: str) -> Release | None:
        """Return the release with ``release_id`` or ``None``."""
        ...

    async def get_latest_for_tag(self, repo_id: str, tag: str) -> Release | None:
        """Return the most recently stored release for ``(repo, tag)``."""
        ...


class SubscriptionStore(typ.Protocol):
    """Read-only access to subscriptions."""

    async def list_by_repo(self, repo_id: str) -> list[Subscription]:
        """Return every subscription on the repository."""
        ...


class DeliveryStore(typ.Protocol):
    """Access to delivery records."""

    async def create_if_absent(
        self, *, release_id: str, user_id: str, channel: str
    ) -> bool:
        """Insert a pending delivery unless one exists; return True if inserted."""
        ...

    async def update_status(  # noqa: PLR0913
        self,
        delivery_id: str,
        status: DeliveryStatus,
        *,
        error: str | None,
        attempt: int,
        expected_status: DeliveryStatus | None = None,
    ) -> bool:
        """Set status, error text and attempt; return False if nothing matched."""
        ...

    async def list_by_status(self, status: DeliveryStatus) -> list[Delivery]:
        """Return deliveries currently in ``status``."""
        ...

    async def list_pending(self) -> list[Delivery]:
        """Return deliveries awaiting a send."""
        ...


class UserStore(typ.Protocol):
    """Read-only access to users."""

    async def get_by_id(self, user_id: str) -> User | None:
        """Return the user with ``user_id`` or ``None``."""
        ...


@dataclasses.dataclass(frozen=True, slots=True)
class Stores:
    """Repository ports sharing one unit of work."""

    repos: TrackedRepoStore
    releases: ReleaseStore
    subscriptions: SubscriptionStore
    deliveries: DeliveryStore
    users: UserStore


class Transactor(typ.Protocol):
    """Scoped transactional execution over :class:`Stores`."""

    @property
    def stores(self) -> Stores:
        """Stores whose calls each commit independently."""
        ...

    async def within_transaction[T](
        self, fn: typ.Callable[[Stores], typ.Awaitable[T]]
    ) -> T:
        """Run ``fn`` so every store call inside commits or rolls back together."""
        ...
