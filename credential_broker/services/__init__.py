"""Service layer for credential broker operations."""

from .audit_service import AuditService
from .base_service import SessionManagedService
from .credential_broker_service import CredentialBrokerService
from .credential_service import CredentialService
from .oauth_flow_service import OAuthFlowService
from .permission_grant_service import PermissionGrantService
from .token_refresh_service import TokenRefreshService

__all__ = [
    "AuditService",
    "SessionManagedService",
    "CredentialBrokerService",
    "CredentialService",
    "OAuthFlowService",
    "PermissionGrantService",
    "TokenRefreshService",
]
