"""
Audit event model.

Audit events are append-only: the ORM refuses to update or delete them.
"""

from sqlalchemy import Column, Index, String, Text, event

from ..exceptions import ErrorCode, RepositoryError
from .db_base import JSON, UTCDateTime, UUIDMixin, utc_now
from .db_config import Base


class AuditEvent(Base, UUIDMixin):
    """One security-relevant event - written once, never changed."""

    __tablename__ = "audit_events"

    event_type = Column(String(40), nullable=False)
    outcome = Column(String(30), nullable=False)
    actor = Column(String(100), nullable=False)

    # No foreign keys: events outlive the rows they describe
    agent_id = Column(String(100), nullable=True)
    credential_id = Column(String(36), nullable=True)
    owner_user_id = Column(String(100), nullable=True)
    grant_id = Column(String(36), nullable=True)
    scope = Column(String(255), nullable=True)
    reason = Column(String(100), nullable=True)

    # Request context
    ip_address = Column(String(64), nullable=True)
    session_id = Column(String(100), nullable=True)
    correlation_id = Column(String(64), nullable=True)

    details = Column(JSON, nullable=True)
    occurred_at = Column(UTCDateTime, nullable=False, default=utc_now)
    signature = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_credential_time", "credential_id", "occurred_at"),
        Index("ix_audit_owner_time", "owner_user_id", "occurred_at"),
        Index("ix_audit_agent_time", "agent_id", "occurred_at"),
    )


def _reject_mutation(mapper, connection, target):
    raise RepositoryError(
        "Audit events are append-only",
        error_code=ErrorCode.BUSINESS_RULE_VIOLATION,
        status_code=500,
        audit_event_id=target.id,
    )


event.listen(AuditEvent, "before_update", _reject_mutation)
event.listen(AuditEvent, "before_delete", _reject_mutation)
