"""
Service layer decorators for reducing code duplication.

This module provides reusable decorators for common service patterns,
particularly turning database driver errors into broker errors.
"""

from functools import wraps
from typing import Any, Callable, Optional, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import BaseError

F = TypeVar("F", bound=Callable[..., Any])


def handle_database_errors(operation_name: Optional[str] = None):
    """
    Decorator that rolls back and wraps SQLAlchemy errors raised by a service method.

    Broker errors (``BaseError``) propagate untouched. Anything else goes
    through the service's ``_handle_service_exception``.

    Usage:
        @handle_database_errors("grant")
        def grant(self, ...):
            ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            op_name = operation_name or func.__name__
            try:
                return func(self, *args, **kwargs)
            except BaseError:
                raise
            except SQLAlchemyError as e:
                self.rollback()
                entity_id = args[0] if args and isinstance(args[0], str) else None
                self._handle_service_exception(op_name, e, entity_id)

        return cast(F, wrapper)

    return decorator
