"""
Base service implementation with common functionality for all services.

Every broker service works inside one SQLAlchemy session. A service either
receives the session from its caller (a unit of work shared by several
services) or opens and owns one from the global database manager.
"""

from contextlib import contextmanager
from typing import NoReturn, Optional

from sqlalchemy.orm import Session

from ..exceptions import ErrorCode, ServiceError
from ..utils.logger import ContextAwareLogger, get_logger


class SessionManagedService:
    """
    Service bound to a database session.

    Services commit their own writes: a broker operation is complete, audit
    record included, once the call returns.
    """

    def __init__(
        self,
        session: Optional[Session] = None,
        logger: Optional[ContextAwareLogger] = None,
    ):
        """
        Initialize service with a session.

        Args:
            session: Optional existing session (shared unit of work)
            logger: Optional logger instance
        """
        if session is not None:
            self.session = session
            self._owns_session = False
        else:
            self.session = self._create_session()
            self._owns_session = True
        self.logger = logger or get_logger()

    def _create_session(self) -> Session:
        """Open a new session from the global database manager."""
        from ..db.db_config import get_db_manager

        return get_db_manager().new_session()

    @property
    def dialect_name(self) -> str:
        return self.session.bind.dialect.name

    @contextmanager
    def transaction(self):
        """
        Context manager for transactional operations.

        Usage:
            with service.transaction():
                service.session.add(record)
                # Commits on success, rolls back on exception
        """
        try:
            yield self.session
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def commit(self):
        """Commit the current transaction."""
        self.session.commit()

    def rollback(self):
        """Roll back the current transaction."""
        self.session.rollback()

    def close(self):
        """Close the session if we own it."""
        if self._owns_session and self.session:
            self.session.close()

    def __enter__(self):
        """Support for 'with' statement."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Roll back on error and release an owned session."""
        if exc_type:
            self.rollback()
        self.close()

    def _handle_service_exception(
        self, operation: str, exception: Exception, entity_id: Optional[str] = None
    ) -> NoReturn:
        """
        Log and wrap an unexpected exception as a ServiceError.

        Raises:
            ServiceError: Always
        """
        error_msg = f"Error in {operation}: {type(exception).__name__}"
        self.logger.error(
            error_msg,
            extra={
                "operation": operation,
                "entity_id": entity_id,
                "error_type": type(exception).__name__,
            },
        )
        raise ServiceError(
            error_msg,
            error_code=ErrorCode.DATABASE_ERROR,
            operation=operation,
            entity_id=entity_id,
            cause=exception,
        )
