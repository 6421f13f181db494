"""Unit tests for the failed-delivery requeue policy."""

from __future__ import annotations

import datetime as dt

import pytest

from releasewatch.notify import DeliveryRequeuePolicy, requeue_failed_deliveries
from releasewatch.observability import NotifyEventLogger
from releasewatch.storage.models import DeliveryStatus
from tests.fakes import T0, FakeDelivery, FakeTransactor
from tests.helpers import FakeLogger

MINUTE = dt.timedelta(minutes=1)


def _failed(attempt: int, *, updated_at: dt.datetime = T0) -> FakeDelivery:
    return FakeDelivery(
        id="d-1",
        release_id="r-1",
        user_id="u-1",
        channel="chat-1",
        status="failed",
        attempt=attempt,
        updated_at=updated_at,
    )


class TestDeliveryRequeuePolicy:
    """Backoff and exhaustion rules."""

    @pytest.mark.parametrize(
        ("attempt", "expected"),
        [(0, MINUTE), (1, MINUTE), (2, 2 * MINUTE), (4, 8 * MINUTE)],
    )
    def test_backoff_doubles_per_attempt(
        self, attempt: int, expected: dt.timedelta
    ) -> None:
        """The wait doubles after every failed attempt."""
        policy = DeliveryRequeuePolicy(base_backoff=MINUTE)

        assert policy.backoff_for(attempt) == expected

    def test_is_due_measures_from_last_update(self) -> None:
        """A delivery becomes due once its backoff has elapsed."""
        policy = DeliveryRequeuePolicy(base_backoff=MINUTE)
        delivery = _failed(2)

        assert not policy.is_due(delivery, T0 + MINUTE)
        assert policy.is_due(delivery, T0 + 2 * MINUTE)

    def test_is_exhausted_at_max_attempts(self) -> None:
        """Deliveries at the cap are exhausted."""
        policy = DeliveryRequeuePolicy(max_attempts=3)

        assert not policy.is_exhausted(_failed(2))
        assert policy.is_exhausted(_failed(3))

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"base_backoff": -MINUTE}],
    )
    def test_rejects_invalid_settings(self, kwargs: dict[str, object]) -> None:
        """Attempt cap and backoff are validated."""
        with pytest.raises(ValueError, match="max_attempts|base_backoff"):
            DeliveryRequeuePolicy(**kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_requeue_pass_moves_due_and_exhausted_deliveries() -> None:
    """One pass requeues due failures and dead-letters exhausted ones."""
    transactor = FakeTransactor()
    data = transactor.data
    due = data.add_delivery("r-1", "u-1", "chat-1", status="failed", attempt=1)
    waiting = data.add_delivery(
        "r-1", "u-2", "chat-2", status="failed", attempt=3, updated_at=T0
    )
    exhausted = data.add_delivery("r-1", "u-3", "chat-3", status="failed", attempt=5)
    sent = data.add_delivery("r-1", "u-4", "chat-4", status="sent", attempt=1)
    logger = FakeLogger()

    result = await requeue_failed_deliveries(
        transactor.deliveries,
        DeliveryRequeuePolicy(max_attempts=5, base_backoff=10 * MINUTE),
        now=T0 + 15 * MINUTE,
        event_logger=NotifyEventLogger(logger),
    )

    assert result.requeued == 1
    assert result.dead_lettered == 1
    assert data.deliveries[due.id].status == DeliveryStatus.PENDING
    assert data.deliveries[due.id].attempt == 1
    assert data.deliveries[waiting.id].status == DeliveryStatus.FAILED
    assert data.deliveries[exhausted.id].status == DeliveryStatus.DEAD_LETTER
    assert data.deliveries[sent.id].status == DeliveryStatus.SENT
    assert any("[notify.delivery.requeued]" in m for m in logger.messages("INFO"))
    assert any(
        "[notify.delivery.dead_lettered]" in m for m in logger.messages("WARNING")
    )


class _RacingStore:
    """Delivery store whose rows are moved by another replica mid-pass."""

    def __init__(self, delivery: FakeDelivery) -> None:
        self.delivery = delivery

    async def list_by_status(self, status: DeliveryStatus) -> list[FakeDelivery]:
        del status
        return [self.delivery]

    async def update_status(self, *args: object, **kwargs: object) -> bool:
        del args, kwargs
        return False


@pytest.mark.asyncio
async def test_lost_compare_and_set_is_not_counted() -> None:
    """A delivery already moved by another replica is left alone."""
    logger = FakeLogger()

    result = await requeue_failed_deliveries(
        _RacingStore(_failed(1)),  # type: ignore[arg-type]
        DeliveryRequeuePolicy(base_backoff=MINUTE),
        now=T0 + dt.timedelta(hours=1),
        event_logger=NotifyEventLogger(logger),
    )

    assert result.requeued == 0
    assert logger.calls == []
