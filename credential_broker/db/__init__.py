"""
SQLAlchemy models for the credential broker.

This module provides a common entry point for all models.
"""

from .db_audit_models import AuditEvent
from .db_base import JSON, EncryptedBinary, TimestampMixin, UTCDateTime, UUIDMixin, as_utc, utc_now
from .db_config import (
    Base,
    DatabaseConfig,
    DatabaseManager,
    get_development_config,
    get_production_config,
    import_all_models,
)
from .db_credential_models import Credential
from .db_grant_models import PermissionGrant
from .db_oauth_models import OAuthFlowState
from .db_vault_models import VaultSecret

__all__ = [
    # Base definitions
    "Base",
    "JSON",
    "EncryptedBinary",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDMixin",
    "as_utc",
    "utc_now",
    # Configuration
    "DatabaseConfig",
    "DatabaseManager",
    "import_all_models",
    "get_production_config",
    "get_development_config",
    # Models
    "AuditEvent",
    "Credential",
    "OAuthFlowState",
    "PermissionGrant",
    "VaultSecret",
]
