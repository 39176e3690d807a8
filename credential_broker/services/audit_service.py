"""
Append-only audit log of security-relevant credential events.

The service exposes writes and reads only. Events never contain secret
material: detail dictionaries are scrubbed of secret-looking keys before
they are stored. When a signing key is configured each event carries an
HMAC over its content so later modification can be detected.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic_core import to_jsonable_python
from sqlalchemy.orm import Session

from ..config import AppConfig, get_config
from ..constants import AuditEventType, AuditOutcome
from ..context.request_context import CallerContext, resolve_caller
from ..context.service_decorators import handle_database_errors
from ..db.db_audit_models import AuditEvent
from ..db.db_base import utc_now
from ..schemas.audit_schemas import AuditEventFilter, AuditEventRead
from ..utils import signature_utils
from ..utils.logger import redact_sensitive
from .base_service import SessionManagedService

_EVENT_FIELDS = signature_utils.SIGNED_AUDIT_FIELDS


class AuditService(SessionManagedService):
    """Writes and queries audit events."""

    def __init__(self, session: Optional[Session] = None, config: Optional[AppConfig] = None):
        super().__init__(session=session)
        self.config = config or get_config()

    @property
    def _signing_key(self) -> Optional[str]:
        if not self.config.features.enable_audit_signing:
            return None
        return self.config.security.audit_signing_key or None

    def record(
        self,
        event_type: Union[AuditEventType, str],
        outcome: Union[AuditOutcome, str],
        actor: str,
        agent_id: Optional[str] = None,
        credential_id: Optional[str] = None,
        owner_user_id: Optional[str] = None,
        grant_id: Optional[str] = None,
        scope: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        caller_context: Optional[CallerContext] = None,
        commit: bool = True,
    ) -> AuditEvent:
        """
        Append an audit event.

        Args:
            event_type: What happened
            outcome: How it ended
            actor: User id, agent id or 'system'
            caller_context: Request context; falls back to the thread's context
            commit: Commit immediately. Pass False to make the event part of
                the caller's transaction.

        Returns:
            The stored event
        """
        caller = resolve_caller(caller_context)
        values: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "event_type": AuditEventType(event_type).value,
            "outcome": AuditOutcome(outcome).value,
            "actor": actor,
            "agent_id": agent_id,
            "credential_id": credential_id,
            "owner_user_id": owner_user_id,
            "grant_id": grant_id,
            "scope": scope,
            "reason": reason,
            "ip_address": caller.ip_address,
            "session_id": caller.session_id,
            "correlation_id": caller.correlation_id,
            "details": to_jsonable_python(redact_sensitive(details)) if details else None,
            "occurred_at": utc_now(),
        }

        key = self._signing_key
        signature = signature_utils.sign(values, key) if key else None

        event = AuditEvent(**values, signature=signature)
        self.session.add(event)
        self.session.flush()

        if commit:
            self.session.commit()

        self.logger.info(
            f"Audit: {values['event_type']}",
            extra={
                "audit_event_id": event.id,
                "outcome": values["outcome"],
                "actor": actor,
                "agent_id": agent_id,
                "credential_id": credential_id,
                "reason": reason,
            },
        )
        return event

    def _query(self, filters: AuditEventFilter):
        query = self.session.query(AuditEvent)
        if filters.owner_user_id:
            query = query.filter(AuditEvent.owner_user_id == filters.owner_user_id)
        if filters.agent_id:
            query = query.filter(AuditEvent.agent_id == filters.agent_id)
        if filters.credential_id:
            query = query.filter(AuditEvent.credential_id == filters.credential_id)
        if filters.event_types:
            query = query.filter(
                AuditEvent.event_type.in_([t.value for t in filters.event_types])
            )
        if filters.since:
            query = query.filter(AuditEvent.occurred_at >= filters.since)
        if filters.until:
            query = query.filter(AuditEvent.occurred_at <= filters.until)
        return query

    @handle_database_errors("list_audit_events")
    def list_events(self, filters: Optional[AuditEventFilter] = None) -> List[AuditEventRead]:
        """List events, newest first."""
        filters = filters or AuditEventFilter()
        events = (
            self._query(filters)
            .order_by(AuditEvent.occurred_at.desc(), AuditEvent.id)
            .offset(filters.offset)
            .limit(filters.limit)
            .all()
        )
        return [AuditEventRead.model_validate(e) for e in events]

    @handle_database_errors("count_audit_events")
    def count_events(self, filters: Optional[AuditEventFilter] = None) -> int:
        return self._query(filters or AuditEventFilter()).count()

    def verify_event(self, event: Union[AuditEvent, AuditEventRead]) -> bool:
        """
        Check an event's signature against its current content.

        Returns False for unsigned events when signing is configured.
        """
        key = self._signing_key
        if not key:
            return True
        values = {field: getattr(event, field) for field in _EVENT_FIELDS}
        return signature_utils.verify(values, event.signature, key)

    @handle_database_errors("find_tampered_events")
    def find_tampered_events(
        self, since: Optional[datetime] = None, batch_size: int = 500
    ) -> List[str]:
        """Return ids of events whose signature no longer matches their content."""
        query = self.session.query(AuditEvent)
        if since:
            query = query.filter(AuditEvent.occurred_at >= since)
        tampered = []
        for event in query.order_by(AuditEvent.occurred_at).yield_per(batch_size):
            if not self.verify_event(event):
                tampered.append(event.id)
        if tampered:
            self.logger.warning("Audit events failed verification", extra={"count": len(tampered)})
        return tampered
