"""
Pydantic schemas for audit events.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..constants import AuditEventType, AuditOutcome, Limits


class AuditEventRead(BaseModel):
    """An audit event as returned to callers."""

    id: str
    event_type: AuditEventType
    outcome: AuditOutcome
    actor: str
    agent_id: Optional[str] = None
    credential_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    grant_id: Optional[str] = None
    scope: Optional[str] = None
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    occurred_at: datetime
    signature: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AuditEventFilter(BaseModel):
    """Query parameters for listing audit events."""

    model_config = ConfigDict(extra="forbid")

    owner_user_id: Optional[str] = None
    agent_id: Optional[str] = None
    credential_id: Optional[str] = None
    event_types: Optional[List[AuditEventType]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = Field(default=Limits.DEFAULT_PAGE_SIZE, gt=0, le=Limits.MAX_PAGE_SIZE)
    offset: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def validate_range(self):
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")
        return self
