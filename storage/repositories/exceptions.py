"""
Repository Layer Exceptions.

Repositories translate SQLAlchemy errors into these so callers
never depend on driver-specific exception types:

    RepositoryException
    ├── RecordNotFoundError       lookup by id found nothing
    ├── DuplicateRecordError      unique constraint (alert_id, group name)
    ├── ConstraintViolationError  NOT NULL / check constraints
    └── DatabaseUnavailableError  connection refused, pool exhausted

The poll pipeline catches RepositoryException per alert so one
bad record does not abort the batch.
"""

from typing import Any, Dict, Optional


class RepositoryException(Exception):
    """Base class; str() is "[Repository] operation: message"."""

    def __init__(
        self,
        message: str,
        repository_name: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.repository_name = repository_name
        self.operation = operation
        self.details = details or {}
        super().__init__(f"[{repository_name}] {operation}: {message}")


class RecordNotFoundError(RepositoryException):

    def __init__(self, repository_name: str, record_id: Any, id_field: str = "id") -> None:
        super().__init__(
            f"No record with {id_field}={record_id}",
            repository_name,
            "get",
            {id_field: str(record_id)},
        )
        self.record_id = record_id
        self.id_field = id_field


class DuplicateRecordError(RepositoryException):

    def __init__(self, repository_name: str, operation: str, field: str, value: Any) -> None:
        super().__init__(
            f"{field}={value} already exists",
            repository_name,
            operation,
            {"field": field, "value": str(value)},
        )
        self.field = field
        self.value = value


class ConstraintViolationError(RepositoryException):
    pass


class DatabaseUnavailableError(RepositoryException):
    pass
