"""
Credential model.

Just the data structure - no business logic or class methods.
Secret-bearing fields hold vault handles only, never secret values.
"""

from sqlalchemy import Column, Index, Integer, String

from ..constants import CredentialStatus
from .db_base import JSON, TimestampMixin, UTCDateTime, UUIDMixin
from .db_config import Base


class Credential(Base, UUIDMixin, TimestampMixin):
    """A user's connection to an external service - just data, no logic."""

    __tablename__ = "credentials"

    # Ownership and provider
    owner_user_id = Column(String(100), nullable=False, index=True)
    provider = Column(String(100), nullable=False)
    auth_type = Column(String(20), nullable=False)
    external_account_id = Column(String(255), nullable=True)

    # Vault handles
    access_token_handle = Column(String(64), nullable=True)
    refresh_token_handle = Column(String(64), nullable=True)
    api_key_handle = Column(String(64), nullable=True)

    # Granted scopes as reported by the provider
    scopes = Column(JSON, nullable=False, default=list)

    # Lifecycle
    expires_at = Column(UTCDateTime, nullable=True, index=True)
    status = Column(String(20), nullable=False, default=CredentialStatus.ACTIVE.value)
    status_reason = Column(String(255), nullable=True)
    last_validated_at = Column(UTCDateTime, nullable=True)
    revoked_at = Column(UTCDateTime, nullable=True)

    # Refresh bookkeeping
    refresh_failure_count = Column(Integer, nullable=False, default=0)
    next_refresh_attempt_at = Column(UTCDateTime, nullable=True)
    refresh_claimed_by = Column(String(100), nullable=True)
    refresh_claim_expires_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_credential_owner_provider", "owner_user_id", "provider", "status"),
        Index("ix_credential_refresh_scan", "status", "expires_at"),
    )
