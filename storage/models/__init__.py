"""
Storage Models Package.

This package contains all ORM models for the alert bridge database.

============================================================
MODEL ORGANIZATION
============================================================

base.py
- Base, TimestampMixin, JSONType, UTCDateTime

monitoring.py
- MonitoringConfig
- ZabbixAlert
- NotificationGroup
- Subscriber

============================================================
"""

from storage.models.base import Base, JSONType, TimestampMixin, UTCDateTime
from storage.models.monitoring import (
    MonitoringConfig,
    NotificationGroup,
    Subscriber,
    ZabbixAlert,
)

__all__ = [
    "Base",
    "JSONType",
    "TimestampMixin",
    "UTCDateTime",
    "MonitoringConfig",
    "NotificationGroup",
    "Subscriber",
    "ZabbixAlert",
]
