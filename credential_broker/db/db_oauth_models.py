"""
OAuth flow state model.

Just the data structure - no business logic or class methods.
"""

from sqlalchemy import Boolean, Column, String, Text

from ..constants import FlowStatus
from .db_base import JSON, UTCDateTime, utc_now
from .db_config import Base


class OAuthFlowState(Base):
    """Short-lived record of an authorization flow awaiting its callback."""

    __tablename__ = "oauth_flow_states"

    state = Column(String(128), primary_key=True)
    code_verifier = Column(Text, nullable=False)

    provider = Column(String(100), nullable=False)
    user_id = Column(String(100), nullable=False, index=True)
    agent_id = Column(String(100), nullable=True)
    requested_scopes = Column(JSON, nullable=False, default=list)
    redirect_uri = Column(Text, nullable=False)

    status = Column(String(30), nullable=False, default=FlowStatus.AWAITING_CALLBACK.value)
    used = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    completed_at = Column(UTCDateTime, nullable=True)
