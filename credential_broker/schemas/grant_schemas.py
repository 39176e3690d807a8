"""
Pydantic schemas for permission grants and authorization decisions.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..constants import DenialReason, PermissionLevel


class PermissionGrantRead(BaseModel):
    """A grant as shown to the owning user."""

    id: str
    agent_id: str
    credential_id: str
    granted_by_user_id: str
    permission_level: PermissionLevel
    allowed_scopes: List[str]
    granted_at: datetime
    expires_at: Optional[datetime] = None
    is_active: bool
    revoked_at: Optional[datetime] = None
    revoked_by_user_id: Optional[str] = None
    revoke_reason: Optional[str] = None
    usage_count: int = 0
    last_used_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AuthorizationDecision(BaseModel):
    """Result of an authorization check: authorized, or denied with a reason."""

    model_config = ConfigDict(frozen=True)

    authorized: bool
    reason: Optional[DenialReason] = None
    grant_id: Optional[str] = Field(None, description="Grant that authorized the request")

    @classmethod
    def allow(cls, grant_id: str) -> "AuthorizationDecision":
        return cls(authorized=True, grant_id=grant_id)

    @classmethod
    def deny(cls, reason: DenialReason, grant_id: Optional[str] = None) -> "AuthorizationDecision":
        return cls(authorized=False, reason=reason, grant_id=grant_id)

    def __bool__(self) -> bool:
        return self.authorized
