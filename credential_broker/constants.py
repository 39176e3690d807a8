"""
Constants and enums for the credential broker.

This module centralizes all magic strings and constants used throughout
the broker to ensure consistency and maintainability.
"""

from enum import Enum


class CredentialStatus(str, Enum):
    """Lifecycle status of a stored credential."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ERROR = "error"


class AuthType(str, Enum):
    """How a credential was obtained."""

    OAUTH2 = "oauth2"
    API_KEY = "api_key"


class PermissionLevel(str, Enum):
    """Access level an owner delegates to an agent."""

    READ_ONLY = "read_only"
    READ_WRITE = "read_write"


class AuditEventType(str, Enum):
    """Security-relevant events recorded in the audit log."""

    GRANT = "grant"
    REVOKE = "revoke"
    DECRYPT_SUCCESS = "decrypt_success"
    DECRYPT_DENIED = "decrypt_denied"
    DECRYPT_FAILURE = "decrypt_failure"
    REFRESH_SUCCESS = "refresh_success"
    REFRESH_FAILURE = "refresh_failure"
    CREDENTIAL_CONNECTED = "credential_connected"
    CREDENTIAL_DISCONNECTED = "credential_disconnected"


class AuditOutcome(str, Enum):
    """Outcome recorded on an audit event."""

    SUCCESS = "success"
    DENIED = "denied"
    FAILURE = "failure"
    RETRY_SCHEDULED = "retry_scheduled"
    NOOP = "noop"


class FlowStatus(str, Enum):
    """States of an OAuth authorization flow."""

    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGED = "exchanged"
    EXPIRED = "expired"
    INVALID = "invalid"


class DenialReason(str, Enum):
    """Why an authorization check did not pass."""

    NO_GRANT = "no_grant"
    GRANT_REVOKED = "grant_revoked"
    GRANT_EXPIRED = "grant_expired"
    SCOPE_NOT_ALLOWED = "scope_not_allowed"
    CREDENTIAL_NOT_ACTIVE = "credential_not_active"


class TokenEndpointAuthMethod(str, Enum):
    """Client authentication methods at the provider token endpoint."""

    CLIENT_SECRET_POST = "client_secret_post"
    CLIENT_SECRET_BASIC = "client_secret_basic"
    NONE = "none"


class RefreshOutcomeStatus(str, Enum):
    """Result of a single credential refresh attempt."""

    REFRESHED = "refreshed"
    SKIPPED = "skipped"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


class LogLevel(str, Enum):
    """Standard logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EnvironmentVariable(str, Enum):
    """Standard environment variable names."""

    AZURE_STORAGE_CONNECTION = "AzureWebJobsStorage"
    DATABASE_URL = "DATABASE_URL"
    APP_ENV = "APP_ENV"
    LOG_LEVEL = "LOG_LEVEL"
    DEBUG = "DEBUG"
    VAULT_KEY = "BROKER_VAULT_KEY"
    AUDIT_SIGNING_KEY = "BROKER_AUDIT_SIGNING_KEY"
    PROVIDERS_FILE = "BROKER_PROVIDERS_FILE"
    OAUTH_REDIRECT_URI = "BROKER_OAUTH_REDIRECT_URI"
    ENABLE_LOGS_QUEUE = "BROKER_ENABLE_LOGS_QUEUE"


class LogContextKey(str, Enum):
    """Standard keys for logging context."""

    OPERATION_ID = "operation_id"
    CORRELATION_ID = "correlation_id"
    USER_ID = "user_id"
    AGENT_ID = "agent_id"
    CREDENTIAL_ID = "credential_id"
    PROVIDER = "provider"
    DURATION_MS = "duration_ms"
    STATUS = "status"
    ERROR_CODE = "error_code"
    OPERATION = "operation"


SYSTEM_ACTOR = "system"
VAULT_HANDLE_PREFIX = "vault:"


class Limits:
    """System limits and thresholds."""

    MIN_PKCE_VERIFIER_BYTES = 32
    MAX_PKCE_VERIFIER_BYTES = 96
    STATE_TOKEN_BYTES = 32
    DEFAULT_PAGE_SIZE = 50
    MAX_PAGE_SIZE = 500
