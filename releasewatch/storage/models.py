"""Persistence models for tracked repositories, releases and deliveries."""

from __future__ import annotations

import datetime as dt
import enum
import typing as typ
import uuid

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from releasewatch.common.time import utcnow

if typ.TYPE_CHECKING:
    from sqlalchemy.engine import Dialect
    from sqlalchemy.ext.asyncio import AsyncEngine


def _new_id() -> str:
    return str(uuid.uuid4())


class DeliveryStatus(enum.StrEnum):
    """Lifecycle of a single notification obligation."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEAD_LETTER = "dead_letter"


class Base(DeclarativeBase):
    """Base declarative class for releasewatch models."""


class UTCDateTime(TypeDecorator[dt.datetime]):
    """DateTime wrapper that round-trips UTC tzinfo even on SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: dt.datetime | None, dialect: Dialect
    ) -> dt.datetime | None:
        """Force bound datetime values to UTC with tzinfo."""
        if value is None:
            return None
        if value.tzinfo is None:
            msg = "datetime values must be timezone aware"
            raise ValueError(msg)
        return value.astimezone(dt.UTC)

    def process_result_value(
        self, value: dt.datetime | None, dialect: Dialect
    ) -> dt.datetime | None:
        """Ensure result datetimes are UTC and timezone aware."""
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.UTC)
        return value.astimezone(dt.UTC)


class User(Base):
    """Subscriber account; created by the sign-up flow, read by the notifier."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(320), unique=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


class TrackedRepo(Base):
    """Upstream repository polled for new releases."""

    __tablename__ = "tracked_repos"
    __table_args__ = (
        UniqueConstraint("owner", "name", name="uq_tracked_repos_owner_name"),
        Index("ix_tracked_repos_last_checked", "last_checked_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255))
    etag: Mapped[str | None] = mapped_column(String(255), default=None)
    last_checked_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


class Release(Base):
    """Release snapshot; a changed hash for a reused tag is a new row."""

    __tablename__ = "releases"
    __table_args__ = (
        UniqueConstraint(
            "repo_id", "tag", "content_hash", name="uq_releases_repo_tag_hash"
        ),
        Index("ix_releases_repo_tag_created", "repo_id", "tag", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    repo_id: Mapped[str] = mapped_column(
        ForeignKey("tracked_repos.id", ondelete="CASCADE")
    )
    tag: Mapped[str] = mapped_column(String(255))
    title: Mapped[str] = mapped_column(Text(), default="")
    url: Mapped[str] = mapped_column(Text(), default="")
    body: Mapped[str] = mapped_column(Text(), default="")
    published_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    content_hash: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)


class Subscription(Base):
    """A user's request to hear about a repository on one channel."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "repo_id", "user_id", "channel", name="uq_subscriptions_repo_user_chan"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    repo_id: Mapped[str] = mapped_column(
        ForeignKey("tracked_repos.id", ondelete="CASCADE")
    )
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    channel: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)


class Delivery(Base):
    """One obligation to notify one user, on one channel, about one release.

    ``release_id`` and ``user_id`` are deliberately not foreign keys: a
    release or user deleted after fan-out must leave the delivery behind so
    the notifier can mark it skipped.
    """

    __tablename__ = "deliveries"
    __table_args__ = (
        UniqueConstraint(
            "release_id", "user_id", "channel", name="uq_deliveries_release_user_chan"
        ),
        Index("ix_deliveries_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    release_id: Mapped[str] = mapped_column(String(36))
    user_id: Mapped[str] = mapped_column(String(36))
    channel: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(
        String(16), default=DeliveryStatus.PENDING.value
    )
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text(), default=None)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


class IdempotencyClaim(Base):
    """Claimed idempotency key for the SQL-backed claim store."""

    __tablename__ = "idempotency_claims"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    expires_at: Mapped[dt.datetime] = mapped_column(UTCDateTime())


async def init_storage(engine: AsyncEngine) -> None:
    """Create all tables registered with Base if they are absent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
