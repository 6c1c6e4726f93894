"""
Base Repository.

============================================================
PURPOSE
============================================================
Shared plumbing for the monitoring repositories:

- The session is injected; repositories flush, the caller
  commits (see storage.database.session_scope)
- Every SQLAlchemy error leaves as a RepositoryException
- savepoint() isolates one record inside a batch

============================================================
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models.base import Base
from storage.repositories.exceptions import (
    ConstraintViolationError,
    DatabaseUnavailableError,
    DuplicateRecordError,
    RepositoryException,
)


ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):

    def __init__(self, session: Session, model_class: Type[ModelT], repository_name: str) -> None:
        self._session = session
        self._model_class = model_class
        self._repository_name = repository_name
        self._logger = logging.getLogger(f"repository.{repository_name}")

    @property
    def session(self) -> Session:
        return self._session

    # =========================================================
    # ERROR TRANSLATION
    # =========================================================

    def _handle_db_error(
        self,
        error: SQLAlchemyError,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log and re-raise a SQLAlchemy error as a RepositoryException.

        The first context item names the offending field when a
        unique constraint fired.
        """
        context = context or {}
        self._logger.error(f"{operation} failed: {error}", extra={"context": context})

        if isinstance(error, OperationalError):
            raise DatabaseUnavailableError(
                f"Database unavailable: {error.orig or error}",
                self._repository_name,
                operation,
            ) from error

        if isinstance(error, IntegrityError):
            text = str(error.orig or error).lower()
            if "unique" in text or "duplicate" in text:
                field, value = next(iter(context.items()), ("unknown", "unknown"))
                raise DuplicateRecordError(self._repository_name, operation, field, value) from error
            raise ConstraintViolationError(
                f"Constraint violated: {error.orig or error}",
                self._repository_name,
                operation,
                dict(context),
            ) from error

        raise RepositoryException(
            f"Query failed: {error}",
            self._repository_name,
            operation,
            dict(context),
        ) from error

    # =========================================================
    # SESSION HELPERS
    # =========================================================

    def _flush(self, operation: str, context: Optional[Dict[str, Any]] = None) -> None:
        try:
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, context)

    def _add(self, entity: ModelT, context: Optional[Dict[str, Any]] = None) -> ModelT:
        self._session.add(entity)
        self._flush("add", context)
        return entity

    def _delete(self, entity: ModelT) -> None:
        self._session.delete(entity)
        self._flush("delete", {"entity": repr(entity)})

    def _get(self, record_id: Any) -> Optional[ModelT]:
        try:
            return self._session.get(self._model_class, record_id)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "get", {"id": str(record_id)})
            raise

    def _execute_query(self, stmt: Any) -> List[ModelT]:
        try:
            return list(self._session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query")
            raise

    def _execute_scalar(self, stmt: Any) -> Optional[ModelT]:
        try:
            return self._session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query")
            raise

    def _count(self, *criteria: Any) -> int:
        stmt = select(func.count()).select_from(self._model_class)
        if criteria:
            stmt = stmt.where(*criteria)
        try:
            return self._session.execute(stmt).scalar() or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count")
            raise

    @contextmanager
    def _savepoint(self, operation: str) -> Generator[None, None, None]:
        """
        Run a block inside SAVEPOINT.

        On failure only the block is rolled back and the outer
        transaction stays usable. A failed flush deactivates the
        savepoint, which must still be rolled back explicitly.
        """
        try:
            nested = self._session.begin_nested()
        except SQLAlchemyError as e:
            self._handle_db_error(e, f"{operation}.savepoint")
            raise
        try:
            yield
        except Exception:
            nested.rollback()
            raise
        try:
            nested.commit()
        except SQLAlchemyError as e:
            self._handle_db_error(e, f"{operation}.release")
