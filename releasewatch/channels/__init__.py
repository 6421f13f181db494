"""Notification channels and message rendering."""

from __future__ import annotations

from .formatting import format_release_message
from .telegram import (
    NotificationChannel,
    TelegramChannel,
    TelegramConfig,
    is_transient_send_error,
)

__all__ = [
    "NotificationChannel",
    "TelegramChannel",
    "TelegramConfig",
    "format_release_message",
    "is_transient_send_error",
]
