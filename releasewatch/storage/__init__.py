"""Persistence models, repository ports and their SQLAlchemy implementations."""

from __future__ import annotations

from .models import (
    Base,
    Delivery,
    DeliveryStatus,
    IdempotencyClaim,
    Release,
    Subscription,
    TrackedRepo,
    User,
    UTCDateTime,
    init_storage,
)
from .ports import (
    DeliveryStore,
    ReleaseDraft,
    ReleaseStore,
    Stores,
    SubscriptionStore,
    TrackedRepoStore,
    Transactor,
    UserStore,
)
from .sql import SqlAlchemyTransactor, insert_ignoring_conflicts

__all__ = [
    "Base",
    "Delivery",
    "DeliveryStatus",
    "DeliveryStore",
    "IdempotencyClaim",
    "Release",
    "ReleaseDraft",
    "ReleaseStore",
    "SqlAlchemyTransactor",
    "Stores",
    "Subscription",
    "SubscriptionStore",
    "TrackedRepo",
    "TrackedRepoStore",
    "Transactor",
    "UTCDateTime",
    "User",
    "UserStore",
    "init_storage",
    "insert_ignoring_conflicts",
]
