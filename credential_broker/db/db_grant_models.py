"""
Permission grant model.

Just the data structure - no business logic or class methods.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String

from ..constants import PermissionLevel
from .db_base import JSON, TimestampMixin, UTCDateTime, UUIDMixin, utc_now
from .db_config import Base


class PermissionGrant(Base, UUIDMixin, TimestampMixin):
    """Delegation of a credential's scopes to one agent - just data, no logic."""

    __tablename__ = "permission_grants"

    agent_id = Column(String(100), nullable=False, index=True)
    credential_id = Column(String(36), ForeignKey("credentials.id"), nullable=False, index=True)
    granted_by_user_id = Column(String(100), nullable=False)

    permission_level = Column(
        String(20), nullable=False, default=PermissionLevel.READ_ONLY.value
    )
    allowed_scopes = Column(JSON, nullable=False)

    # Lifecycle
    granted_at = Column(UTCDateTime, nullable=False, default=utc_now)
    expires_at = Column(UTCDateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    revoked_at = Column(UTCDateTime, nullable=True)
    revoked_by_user_id = Column(String(100), nullable=True)
    revoke_reason = Column(String(100), nullable=True)

    # Usage tracking
    usage_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_grant_lookup", "agent_id", "credential_id", "is_active"),
    )
