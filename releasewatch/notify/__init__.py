"""Delivery of pending notifications and re-delivery of failed ones."""

from __future__ import annotations

from .notifier import (
    DeliveryOutcome,
    Notifier,
    NotifyCycleResult,
    default_send_retry_policy,
    delivery_key,
)
from .requeue import DeliveryRequeuePolicy, RequeueResult, requeue_failed_deliveries

__all__ = [
    "DeliveryOutcome",
    "DeliveryRequeuePolicy",
    "Notifier",
    "NotifyCycleResult",
    "RequeueResult",
    "default_send_retry_policy",
    "delivery_key",
    "requeue_failed_deliveries",
]
