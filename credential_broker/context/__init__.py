"""Context management for operations and request callers."""

from .operation_context import OperationContext, operation
from .request_context import CallerContext, RequestContext, request_context, resolve_caller, with_caller

__all__ = [
    "operation",
    "OperationContext",
    "CallerContext",
    "RequestContext",
    "request_context",
    "resolve_caller",
    "with_caller",
]
