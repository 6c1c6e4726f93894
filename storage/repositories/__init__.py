"""
Repository Layer Package.

The only gateway to persistent storage. Sessions are injected,
repositories flush but never commit, and every database error
is re-raised as a RepositoryException.
"""

from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import (
    ConstraintViolationError,
    DatabaseUnavailableError,
    DuplicateRecordError,
    RecordNotFoundError,
    RepositoryException,
)
from storage.repositories.monitoring import (
    AlertRepository,
    MonitoringConfigRepository,
    MonitoringRepositories,
    NotificationGroupRepository,
    SubscriberRepository,
)

__all__ = [
    "BaseRepository",
    "ConstraintViolationError",
    "DatabaseUnavailableError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "RepositoryException",
    "AlertRepository",
    "MonitoringConfigRepository",
    "MonitoringRepositories",
    "NotificationGroupRepository",
    "SubscriberRepository",
]
