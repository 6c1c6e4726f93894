"""
Notifications Package.

Telegram delivery for Zabbix alerts.
"""

from .telegram import (
    AlertMessage,
    DeliveryResult,
    DeliveryTier,
    FORMAT_LADDER,
    TelegramAPIError,
    TelegramClient,
    TelegramError,
    TelegramFormatter,
    deliver,
)
from .dispatcher import NotificationDispatcher


__all__ = [
    "AlertMessage",
    "DeliveryResult",
    "DeliveryTier",
    "FORMAT_LADDER",
    "TelegramAPIError",
    "TelegramClient",
    "TelegramError",
    "TelegramFormatter",
    "deliver",
    "NotificationDispatcher",
]
