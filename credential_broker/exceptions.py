"""
Consolidated exception system with error codes, error kinds, and correlation support.

This module provides a unified exception hierarchy for the broker, with
automatic logging and correlation ID tracking. Every broker error carries a
stable ``BrokerErrorKind`` so callers branch on ``error.kind`` rather than on
message text, and a ``public_message`` that is safe to show to end users.
"""

import threading
import traceback
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

_thread_local = threading.local()


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # System errors (1xxx)
    INTERNAL_ERROR = "1000"
    DATABASE_ERROR = "1001"
    CONNECTION_ERROR = "1002"
    CONFIGURATION_ERROR = "1003"
    TIMEOUT_ERROR = "1004"

    # Validation errors (2xxx)
    VALIDATION_FAILED = "2000"
    INVALID_FORMAT = "2001"
    MISSING_REQUIRED = "2002"

    # Resource errors (3xxx)
    NOT_FOUND = "3000"
    DUPLICATE = "3001"
    CONFLICT = "3002"
    LOCKED = "3003"
    EXPIRED = "3004"

    # Business logic errors (4xxx)
    BUSINESS_RULE_VIOLATION = "4000"
    INVALID_STATE_TRANSITION = "4001"
    PERMISSION_DENIED = "4003"
    PRECONDITION_FAILED = "4004"

    # External service errors (5xxx)
    EXTERNAL_API_ERROR = "5002"
    INTEGRATION_ERROR = "5003"
    DOWNSTREAM_ERROR = "5004"


class BrokerErrorKind(str, Enum):
    """Stable error kinds surfaced by broker operations."""

    UNKNOWN_PROVIDER = "unknown_provider"
    INVALID_OR_EXPIRED_STATE = "invalid_or_expired_state"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    CREDENTIAL_NOT_FOUND = "credential_not_found"
    CREDENTIAL_REVOKED = "credential_revoked"
    CREDENTIAL_NEEDS_REAUTHORIZATION = "credential_needs_reauthorization"
    NOT_AUTHORIZED = "not_authorized"
    NOT_OWNER = "not_owner"
    SCOPE_NOT_GRANTED = "scope_not_granted"
    VAULT_UNAVAILABLE = "vault_unavailable"
    HANDLE_NOT_FOUND = "handle_not_found"
    VALIDATION = "validation"
    INTERNAL = "internal"


NOT_PERMITTED_MESSAGE = "The requested operation is not permitted."
RECONNECT_MESSAGE = "This connection needs to be reconnected."


class BaseError(Exception):
    """Base exception with context, error codes, logging, and error chaining."""

    kind: BrokerErrorKind = BrokerErrorKind.INTERNAL
    default_public_message = "An internal error occurred."

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        public_message: Optional[str] = None,
        **context: Any,
    ):
        """
        Initialize base error with rich context.

        Args:
            message: Internal error message (logged, never shown to end users)
            error_code: Standardized error code from ErrorCode enum
            status_code: HTTP status code for API responses
            cause: Original exception that caused this error
            public_message: Message safe to surface to end users
            **context: Additional context information
        """
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.cause = cause
        self.public_message = public_message or self.default_public_message
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.error_id = str(uuid.uuid4())
        self.context = context

        correlation_id = get_correlation_id()
        if correlation_id:
            self.context["correlation_id"] = correlation_id

        self.context["error_id"] = self.error_id

        if cause:
            self.context["cause"] = {
                "type": type(cause).__name__,
                "message": str(cause),
                "traceback": traceback.format_exception(type(cause), cause, cause.__traceback__),
            }

        self._log_error()

        super().__init__(message)

    def _log_error(self) -> None:
        """Log error with appropriate level based on status code."""
        # Import logger here to avoid circular dependency at module load time
        from .utils.logger import get_logger

        logger = get_logger()

        log_data = {
            "error_id": self.error_id,
            "error_code": self.error_code.value,
            "error_kind": self.kind.value,
            "status_code": self.status_code,
            "error_message": self.message,
            "timestamp": self.timestamp,
            "context": {k: v for k, v in self.context.items() if k not in ["cause", "traceback"]},
        }

        if "correlation_id" in self.context:
            log_data["correlation_id"] = self.context["correlation_id"]

        if self.status_code >= 500:
            logger.error(
                f"Error {self.error_code}: {self.message}", extra=log_data, exc_info=self.cause
            )
        elif self.status_code >= 400:
            logger.warning(f"Client error {self.error_code}: {self.message}", extra=log_data)
        else:
            logger.info(f"Error {self.error_code}: {self.message}", extra=log_data)

    def to_dict(
        self, include_cause: bool = False, include_traceback: bool = False
    ) -> Dict[str, Any]:
        """
        Convert to dict for API responses.

        Only the public message is included; internal messages and identifiers
        from the context stay in the logs.

        Args:
            include_cause: Include cause information (useful for debugging)
            include_traceback: Include full traceback (only in debug mode)

        Returns:
            Dictionary representation suitable for JSON serialization
        """
        result: Dict[str, Any] = {
            "error": {
                "id": self.error_id,
                "code": self.error_code.value,
                "kind": self.kind.value,
                "message": self.public_message,
                "timestamp": self.timestamp,
            }
        }

        if "correlation_id" in self.context:
            result["error"]["correlation_id"] = self.context["correlation_id"]

        if include_cause and "cause" in self.context:
            result["error"]["cause"] = {
                "type": self.context["cause"]["type"],
                "message": self.context["cause"]["message"],
            }
            if include_traceback:
                result["error"]["cause"]["traceback"] = self.context["cause"]["traceback"]

        return result

    def add_context(self, **kwargs: Any) -> "BaseError":
        """
        Add additional context to the error (fluent interface).

        Returns:
            Self for method chaining
        """
        self.context.update(kwargs)
        return self

    @property
    def error_chain(self) -> List[Exception]:
        """Get the full chain of errors."""
        chain: List[Exception] = [self]
        current = self.cause
        while current:
            chain.append(current)
            current = getattr(current, "cause", None)
        return chain


# Layer-specific base exceptions
class RepositoryError(BaseError):
    """Repository layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        **context,
    ):
        """Initialize repository error with database context."""
        super().__init__(message, error_code, status_code, cause, **context)


class ServiceError(BaseError):
    """Service layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        operation: Optional[str] = None,
        cause: Optional[Exception] = None,
        **context,
    ):
        """Initialize service error with operation context."""
        if operation:
            context["operation"] = operation
        super().__init__(message, error_code, 500, cause, **context)


class ValidationError(BaseError):
    """Validation errors."""

    kind = BrokerErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        cause: Optional[Exception] = None,
        **context,
    ):
        """Initialize validation error with field context."""
        if field:
            context["field"] = field
        super().__init__(message, error_code, 400, cause, public_message=message, **context)


class ExternalServiceError(BaseError):
    """External service integration errors."""

    def __init__(
        self,
        message: str,
        service_name: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_API_ERROR,
        cause: Optional[Exception] = None,
        **context,
    ):
        """Initialize external service error with service context."""
        context["service_name"] = service_name
        super().__init__(message, error_code, 502, cause, **context)


def validation_failed(
    field: str, reason: str, cause: Optional[Exception] = None
) -> ValidationError:
    """
    Factory for validation errors.

    The offending value is deliberately not recorded since it may be a secret.

    Args:
        field: Field that failed validation
        reason: Why validation failed
        cause: Original exception if any

    Returns:
        Configured ValidationError instance
    """
    return ValidationError(
        f"Validation failed for {field}: {reason}",
        field=field,
        error_code=ErrorCode.VALIDATION_FAILED,
        cause=cause,
        reason=reason,
    )


# Correlation ID management
def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current thread."""
    _thread_local.correlation_id = correlation_id


def get_correlation_id() -> Optional[str]:
    """Get the current thread's correlation ID."""
    return getattr(_thread_local, "correlation_id", None)


def clear_correlation_id() -> None:
    """Clear the current thread's correlation ID."""
    if hasattr(_thread_local, "correlation_id"):
        delattr(_thread_local, "correlation_id")


# ==================== BROKER EXCEPTIONS ====================


class UnknownProviderError(BaseError):
    """Raised when a provider name is not registered."""

    kind = BrokerErrorKind.UNKNOWN_PROVIDER
    default_public_message = "This service provider is not supported."

    def __init__(self, provider: str, **kwargs):
        super().__init__(
            message=f"Unknown provider: {provider}",
            error_code=ErrorCode.NOT_FOUND,
            status_code=400,
            provider=provider,
            **kwargs,
        )


class InvalidOrExpiredStateError(BaseError):
    """Raised when an OAuth callback carries a missing, used, or expired state."""

    kind = BrokerErrorKind.INVALID_OR_EXPIRED_STATE
    default_public_message = (
        "This authorization request is invalid or has expired. Please start again."
    )

    def __init__(self, message: str = "OAuth state is invalid or expired", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.EXPIRED, status_code=400, **kwargs
        )


class TokenExchangeFailedError(BaseError):
    """Raised when the provider token endpoint rejects an exchange or is unreachable."""

    kind = BrokerErrorKind.TOKEN_EXCHANGE_FAILED

    def __init__(
        self,
        provider: str,
        provider_error: Optional[str] = None,
        provider_error_description: Optional[str] = None,
        **kwargs,
    ):
        self.provider = provider
        self.provider_error = provider_error
        self.provider_error_description = provider_error_description
        detail = provider_error or "unreachable"
        if provider_error_description:
            detail = f"{detail}: {provider_error_description}"
        super().__init__(
            message=f"Token exchange with {provider} failed ({detail})",
            error_code=ErrorCode.EXTERNAL_API_ERROR,
            status_code=502,
            public_message=f"The provider rejected the authorization ({detail}).",
            provider=provider,
            provider_error=provider_error,
            **kwargs,
        )


class ProviderTokenError(BaseError):
    """
    Raised by the token endpoint client when a provider call does not yield tokens.

    ``transient`` separates failures worth retrying (network, 5xx, 429) from
    definitive rejections such as ``invalid_grant``.
    """

    kind = BrokerErrorKind.TOKEN_EXCHANGE_FAILED

    def __init__(
        self,
        provider: str,
        provider_error: Optional[str] = None,
        provider_error_description: Optional[str] = None,
        http_status: Optional[int] = None,
        transient: bool = False,
        cause: Optional[Exception] = None,
    ):
        self.provider = provider
        self.provider_error = provider_error
        self.provider_error_description = provider_error_description
        self.http_status = http_status
        self.transient = transient
        super().__init__(
            message=f"Token endpoint call to {provider} failed: {provider_error or 'no response'}",
            error_code=ErrorCode.DOWNSTREAM_ERROR,
            status_code=502 if transient else 400,
            cause=cause,
            provider=provider,
            provider_error=provider_error,
            http_status=http_status,
            transient=transient,
        )

    @property
    def is_invalid_grant(self) -> bool:
        """The provider says the grant (code or refresh token) is invalid, expired or revoked."""
        return self.provider_error == "invalid_grant" or (
            not self.transient and self.http_status in (400, 401)
        )


class CredentialNotFoundError(BaseError):
    """Raised when a requested credential does not exist."""

    kind = BrokerErrorKind.CREDENTIAL_NOT_FOUND
    default_public_message = NOT_PERMITTED_MESSAGE

    def __init__(self, message: str = "Credential not found", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.NOT_FOUND, status_code=403, **kwargs
        )


class CredentialRevokedError(BaseError):
    """Raised when a credential has been disconnected by its owner."""

    kind = BrokerErrorKind.CREDENTIAL_REVOKED
    default_public_message = NOT_PERMITTED_MESSAGE

    def __init__(self, message: str = "Credential has been revoked", **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=403,
            **kwargs,
        )


class CredentialNeedsReauthorizationError(BaseError):
    """Raised when a credential is expired or in error and must be reconnected."""

    kind = BrokerErrorKind.CREDENTIAL_NEEDS_REAUTHORIZATION
    default_public_message = RECONNECT_MESSAGE

    def __init__(self, message: str = "Credential needs reauthorization", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.EXPIRED, status_code=409, **kwargs
        )


class NotAuthorizedError(BaseError):
    """Raised when an agent holds no usable grant for the requested scope."""

    kind = BrokerErrorKind.NOT_AUTHORIZED
    default_public_message = NOT_PERMITTED_MESSAGE

    def __init__(self, message: str = "Agent is not authorized", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.PERMISSION_DENIED, status_code=403, **kwargs
        )


class NotOwnerError(BaseError):
    """Raised when a user manages a credential or grant they do not own."""

    kind = BrokerErrorKind.NOT_OWNER
    default_public_message = NOT_PERMITTED_MESSAGE

    def __init__(self, message: str = "User does not own this credential", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.PERMISSION_DENIED, status_code=403, **kwargs
        )


class ScopeNotGrantedError(BaseError):
    """Raised when requested scopes exceed what a credential or provider allows."""

    kind = BrokerErrorKind.SCOPE_NOT_GRANTED
    default_public_message = "The requested scopes exceed what this connection allows."

    def __init__(self, message: str = "Requested scopes not granted", **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.BUSINESS_RULE_VIOLATION,
            status_code=400,
            **kwargs,
        )


class VaultUnavailableError(BaseError):
    """Raised when the secret vault cannot be reached or times out."""

    kind = BrokerErrorKind.VAULT_UNAVAILABLE
    default_public_message = "The service is temporarily unavailable. Please try again."

    def __init__(self, message: str = "Secret vault unavailable", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.CONNECTION_ERROR, status_code=503, **kwargs
        )


class HandleNotFoundError(BaseError):
    """Raised when a vault handle no longer resolves to a secret."""

    kind = BrokerErrorKind.HANDLE_NOT_FOUND
    default_public_message = RECONNECT_MESSAGE

    def __init__(self, message: str = "Vault handle not found", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.NOT_FOUND, status_code=500, **kwargs
        )
