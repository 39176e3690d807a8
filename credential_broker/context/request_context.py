"""
Request context management for the credential broker.

This module keeps the caller of the current unit of work (user, agent,
IP address, session) in thread-local storage so that logging and auditing
can pick it up without threading it through every call.
"""

import threading
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Generator, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import ErrorCode, ValidationError, get_correlation_id
from ..utils.logger import get_logger


class CallerContext(BaseModel):
    """Who is making a request, as recorded on audit events."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    user_id: Optional[str] = Field(None, description="Authenticated end user")
    agent_id: Optional[str] = Field(None, description="Agent acting on the user's behalf")
    ip_address: Optional[str] = Field(None, description="Caller IP address")
    session_id: Optional[str] = Field(None, description="Caller session identifier")
    correlation_id: Optional[str] = Field(
        default_factory=get_correlation_id, description="Correlation id of the request"
    )


class RequestContext:
    """
    Manages the caller context using thread-local storage.
    """

    _thread_local = threading.local()
    _logger = get_logger()

    @classmethod
    def set_current(cls, caller: CallerContext) -> None:
        """
        Set the caller for the current thread.

        Raises:
            ValidationError: If caller is not a CallerContext
        """
        if not isinstance(caller, CallerContext):
            raise ValidationError(
                "caller must be a CallerContext",
                error_code=ErrorCode.MISSING_REQUIRED,
                field="caller",
            )
        cls._thread_local.caller = caller
        cls._logger.debug("Request context set", extra={"user_id": caller.user_id})

    @classmethod
    def get_current(cls) -> Optional[CallerContext]:
        """Get the caller for the current thread, if any."""
        return getattr(cls._thread_local, "caller", None)

    @classmethod
    def clear(cls) -> None:
        """Clear the caller for the current thread."""
        if hasattr(cls._thread_local, "caller"):
            delattr(cls._thread_local, "caller")


@contextmanager
def request_context(caller: CallerContext) -> Generator[CallerContext, None, None]:
    """
    Context manager that sets the caller for the duration of the block.

    Args:
        caller: Caller making the request

    Yields:
        The caller context
    """
    previous = RequestContext.get_current()
    RequestContext.set_current(caller)
    try:
        yield caller
    finally:
        if previous is not None:
            RequestContext.set_current(previous)
        else:
            RequestContext.clear()


def resolve_caller(caller: Optional[CallerContext] = None) -> CallerContext:
    """Return the explicit caller, the thread's caller, or an empty context."""
    if caller is not None:
        return caller
    return RequestContext.get_current() or CallerContext()


def with_caller(func: Callable) -> Callable:
    """
    Decorator that binds a ``caller_context`` keyword argument for the call.

    When the decorated function is called with ``caller_context=...``, that
    caller becomes the thread's request context while the function runs.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        caller = kwargs.get("caller_context")
        if caller is None:
            return func(*args, **kwargs)
        with request_context(caller):
            return func(*args, **kwargs)

    return wrapper
