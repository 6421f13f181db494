"""SQLAlchemy implementations of the repository ports.

Uniqueness is enforced by the database, never by check-then-insert: releases
and deliveries are written with ``INSERT ... ON CONFLICT DO NOTHING`` so
concurrent poller replicas racing on the same release cannot create
duplicates. Every SQLAlchemy failure surfaces as
:class:`~releasewatch.errors.PersistenceError`.
"""

from __future__ import annotations

import contextlib
import typing as typ
import uuid

from sqlalchemy import or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from releasewatch.common.time import utcnow
from releasewatch.errors import PersistenceError

from .models import (
    Delivery,
    DeliveryStatus,
    Release,
    Subscription,
    TrackedRepo,
    User,
)
from .ports import Stores

if typ.TYPE_CHECKING:
    import datetime as dt

    from sqlalchemy.engine import CursorResult
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from .ports import ReleaseDraft

    type SessionFactory = async_sessionmaker[AsyncSession]


class _SessionScope:
    """Yield either a transaction-bound session or a fresh committing one."""

    def __init__(
        self, session_factory: SessionFactory, session: AsyncSession | None = None
    ) -> None:
        self._session_factory = session_factory
        self._bound = session

    @contextlib.asynccontextmanager
    async def session(self, operation: str) -> typ.AsyncIterator[AsyncSession]:
        try:
            if self._bound is not None:
                yield self._bound
            else:
                async with self._session_factory() as session, session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise PersistenceError.during(operation, exc) from exc


async def insert_ignoring_conflicts(
    session: AsyncSession,
    model: type[typ.Any],
    values: dict[str, typ.Any],
    *,
    conflict_columns: list[str],
) -> bool:
    """Insert a row unless it violates the given unique columns.

    Returns True when a row was inserted. Only PostgreSQL and SQLite expose
    ``ON CONFLICT DO NOTHING``; other dialects are rejected.
    """
    bind = session.bind
    dialect = bind.dialect.name if bind is not None else ""
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        msg = f"unsupported database dialect for atomic upsert: {dialect!r}"
        raise PersistenceError(msg)
    stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
    result = typ.cast("CursorResult[typ.Any]", await session.execute(stmt))
    return result.rowcount == 1


class SqlTrackedRepoStore:
    """Tracked repository persistence."""

    def __init__(self, scope: _SessionScope) -> None:
        """Bind the store to a session scope."""
        self._scope = scope

    async def create(self, owner: str, name: str) -> TrackedRepo:
        """Insert a tracked repository and return it."""
        async with self._scope.session("create tracked repo") as session:
            repo = TrackedRepo(owner=owner, name=name)
            session.add(repo)
            await session.flush()
            return repo

    async def get_by_id(self, repo_id: str) -> TrackedRepo | None:
        """Return the repository with ``repo_id`` or ``None``."""
        async with self._scope.session("load tracked repo") as session:
            return await session.get(TrackedRepo, repo_id)

    async def get_by_owner_name(self, owner: str, name: str) -> TrackedRepo | None:
        """Return the repository for ``owner/name`` or ``None``."""
        async with self._scope.session("load tracked repo by slug") as session:
            return await session.scalar(
                select(TrackedRepo).where(
                    TrackedRepo.owner == owner, TrackedRepo.name == name
                )
            )

    async def update_poll_state(
        self, repo_id: str, *, etag: str | None, last_checked_at: dt.datetime
    ) -> None:
        """Persist the validator and poll timestamp after a cycle."""
        async with self._scope.session("update poll state") as session:
            await session.execute(
                update(TrackedRepo)
                .where(TrackedRepo.id == repo_id)
                .values(etag=etag, last_checked_at=last_checked_at, updated_at=utcnow())
            )

    async def list_due_for_poll(
        self, *, now: dt.datetime, poll_interval: dt.timedelta
    ) -> list[TrackedRepo]:
        """Return repositories never polled or last polled before ``now - interval``."""
        cutoff = now - poll_interval
        async with self._scope.session("list due repos") as session:
            rows = await session.scalars(
                select(TrackedRepo)
                .where(
                    or_(
                        TrackedRepo.last_checked_at.is_(None),
                        TrackedRepo.last_checked_at <= cutoff,
                    )
                )
                .order_by(TrackedRepo.last_checked_at.asc().nulls_first())
            )
            return list(rows.all())


class SqlReleaseStore:
    """Release snapshot persistence."""

    def __init__(self, scope: _SessionScope) -> None:
        """Bind the store to a session scope."""
        self._scope = scope

    async def create_if_absent(self, draft: ReleaseDraft) -> tuple[Release, bool]:
        """Insert a release unless (repo, tag, hash) exists; report creation."""
        async with self._scope.session("create release") as session:
            created = await insert_ignoring_conflicts(
                session,
                Release,
                {
                    "id": str(uuid.uuid4()),
                    "repo_id": draft.repo_id,
                    "tag": draft.tag,
                    "title": draft.title,
                    "url": draft.url,
                    "body": draft.body,
                    "published_at": draft.published_at,
                    "content_hash": draft.content_hash,
                    "created_at": utcnow(),
                },
                conflict_columns=["repo_id", "tag", "content_hash"],
            )
            release = await session.scalar(
                select(Release).where(
                    Release.repo_id == draft.repo_id,
                    Release.tag == draft.tag,
                    Release.content_hash == draft.content_hash,
                )
            )
            if release is None:
                msg = "expected release row after insert"
                raise PersistenceError(msg)
            return release, created

    async def get_by_id(self, release_id: str) -> Release | None:
        """Return the release with ``release_id`` or ``None``."""
        async with self._scope.session("load release") as session:
            return await session.get(Release, release_id)

    async def get_latest_for_tag(self, repo_id: str, tag: str) -> Release | None:
        """Return the most recently stored release for ``(repo, tag)``."""
        async with self._scope.session("load latest release") as session:
            return await session.scalar(
                select(Release)
                .where(Release.repo_id == repo_id, Release.tag == tag)
                .order_by(Release.created_at.desc())
                .limit(1)
            )


class SqlSubscriptionStore:
    """Read-only subscription access."""

    def __init__(self, scope: _SessionScope) -> None:
        """Bind the store to a session scope."""
        self._scope = scope

    async def list_by_repo(self, repo_id: str) -> list[Subscription]:
        """Return every subscription on the repository."""
        async with self._scope.session("list subscriptions") as session:
            rows = await session.scalars(
                select(Subscription).where(Subscription.repo_id == repo_id)
            )
            return list(rows.all())


class SqlDeliveryStore:
    """Delivery record persistence."""

    def __init__(self, scope: _SessionScope) -> None:
        """Bind the store to a session scope."""
        self._scope = scope

    async def create_if_absent(
        self, *, release_id: str, user_id: str, channel: str
    ) -> bool:
        """Insert a pending delivery unless one exists; return True if inserted."""
        now = utcnow()
        async with self._scope.session("create delivery") as session:
            return await insert_ignoring_conflicts(
                session,
                Delivery,
                {
                    "id": str(uuid.uuid4()),
                    "release_id": release_id,
                    "user_id": user_id,
                    "channel": channel,
                    "status": DeliveryStatus.PENDING.value,
                    "attempt": 0,
                    "created_at": now,
                    "updated_at": now,
                },
                conflict_columns=["release_id", "user_id", "channel"],
            )

    async def update_status(  # noqa: PLR0913
        self,
        delivery_id: str,
        status: DeliveryStatus,
        *,
        error: str | None,
        attempt: int,
        expected_status: DeliveryStatus | None = None,
    ) -> bool:
        """Set status, error text and attempt; return False if nothing matched.

        ``expected_status`` turns the update into a compare-and-set so two
        notifier replicas cannot both act on the same transition.
        """
        stmt = update(Delivery).where(Delivery.id == delivery_id)
        if expected_status is not None:
            stmt = stmt.where(Delivery.status == expected_status.value)
        stmt = stmt.values(
            status=status.value,
            last_error=error,
            attempt=attempt,
            updated_at=utcnow(),
        ).execution_options(synchronize_session=False)
        async with self._scope.session("update delivery status") as session:
            result = typ.cast("CursorResult[typ.Any]", await session.execute(stmt))
            return result.rowcount == 1

    async def list_by_status(self, status: DeliveryStatus) -> list[Delivery]:
        """Return deliveries currently in ``status``, oldest first."""
        async with self._scope.session("list deliveries") as session:
            rows = await session.scalars(
                select(Delivery)
                .where(Delivery.status == status.value)
                .order_by(Delivery.created_at.asc())
            )
            return list(rows.all())

    async def list_pending(self) -> list[Delivery]:
        """Return deliveries awaiting a send."""
        return await self.list_by_status(DeliveryStatus.PENDING)


class SqlUserStore:
    """Read-only user access."""

    def __init__(self, scope: _SessionScope) -> None:
        """Bind the store to a session scope."""
        self._scope = scope

    async def get_by_id(self, user_id: str) -> User | None:
        """Return the user with ``user_id`` or ``None``."""
        async with self._scope.session("load user") as session:
            return await session.get(User, user_id)


def _build_stores(scope: _SessionScope) -> Stores:
    return Stores(
        repos=SqlTrackedRepoStore(scope),
        releases=SqlReleaseStore(scope),
        subscriptions=SqlSubscriptionStore(scope),
        deliveries=SqlDeliveryStore(scope),
        users=SqlUserStore(scope),
    )


class SqlAlchemyTransactor:
    """Expose SQL-backed stores, standalone or inside one transaction."""

    def __init__(self, session_factory: SessionFactory) -> None:
        """Create stores bound to ``session_factory``."""
        self._session_factory = session_factory
        self._stores = _build_stores(_SessionScope(session_factory))

    @property
    def stores(self) -> Stores:
        """Stores whose calls each commit independently."""
        return self._stores

    async def within_transaction[T](
        self, fn: typ.Callable[[Stores], typ.Awaitable[T]]
    ) -> T:
        """Run ``fn`` with stores sharing one session; commit on success.

        Any exception raised by ``fn`` rolls the whole transaction back.
        """
        try:
            async with self._session_factory() as session, session.begin():
                return await fn(
                    _build_stores(_SessionScope(self._session_factory, session))
                )
        except SQLAlchemyError as exc:
            raise PersistenceError.during("transaction", exc) from exc


__all__ = [
    "SqlAlchemyTransactor",
    "SqlDeliveryStore",
    "SqlReleaseStore",
    "SqlSubscriptionStore",
    "SqlTrackedRepoStore",
    "SqlUserStore",
    "insert_ignoring_conflicts",
]
