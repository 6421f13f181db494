"""Fan-out of pending deliveries for a newly detected release."""

from __future__ import annotations

import typing as typ

if typ.TYPE_CHECKING:
    from releasewatch.storage.models import Release
    from releasewatch.storage.ports import Stores, Transactor


class DeliveryEnqueuer:
    """Create one pending delivery per subscription on a release's repository.

    Every insert is an ``ON CONFLICT DO NOTHING`` keyed by
    ``(release, user, channel)``, so re-running :meth:`enqueue` after a crash
    fills in whatever is missing without touching deliveries that already
    exist.
    """

    def __init__(self, transactor: Transactor) -> None:
        """Bind the enqueuer to the stores it writes through."""
        self._transactor = transactor

    async def enqueue(self, release: Release, *, stores: Stores | None = None) -> int:
        """Enqueue deliveries for ``release`` and return how many were new.

        Parameters
        ----------
        release
            The stored release to announce.
        stores
            Stores of an enclosing transaction. When omitted each insert
            commits on its own.

        Returns
        -------
        int
            Number of delivery rows created by this call.

        """
        active = stores or self._transactor.stores
        subscriptions = await active.subscriptions.list_by_repo(release.repo_id)
        created = 0
        for subscription in subscriptions:
            if await active.deliveries.create_if_absent(
                release_id=release.id,
                user_id=subscription.user_id,
                channel=subscription.channel,
            ):
                created += 1
        return created
