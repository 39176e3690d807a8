"""
Permission grant registry.

Owners delegate a subset of a credential's scopes to an agent. Authorization
decisions are pure reads; grant and revoke are audited writes.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..config import AppConfig, get_config
from ..constants import (
    AuditEventType,
    AuditOutcome,
    CredentialStatus,
    DenialReason,
    PermissionLevel,
)
from ..context.operation_context import operation
from ..context.request_context import CallerContext, with_caller
from ..context.service_decorators import handle_database_errors
from ..db.db_base import as_utc, utc_now
from ..db.db_credential_models import Credential
from ..db.db_grant_models import PermissionGrant
from ..exceptions import (
    CredentialNotFoundError,
    CredentialRevokedError,
    ErrorCode,
    NotOwnerError,
    ScopeNotGrantedError,
    ValidationError,
    validation_failed,
)
from ..schemas.grant_schemas import AuthorizationDecision, PermissionGrantRead
from .audit_service import AuditService
from .base_service import SessionManagedService


def _dedupe(scopes: List[str]) -> List[str]:
    seen: List[str] = []
    for scope in scopes:
        if scope not in seen:
            seen.append(scope)
    return seen


class PermissionGrantService(SessionManagedService):
    """Grants, revocations and authorization checks for agents."""

    def __init__(
        self,
        session: Optional[Session] = None,
        audit: Optional[AuditService] = None,
        config: Optional[AppConfig] = None,
    ):
        super().__init__(session=session)
        self.config = config or get_config()
        self.audit = audit or AuditService(self.session, self.config)

    def _owned_credential(self, credential_id: str, user_id: str) -> Credential:
        credential = self.session.get(Credential, credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id=credential_id)
        if credential.owner_user_id != user_id:
            raise NotOwnerError(credential_id=credential_id, user_id=user_id)
        return credential

    def _active_grant(self, agent_id: str, credential_id: str) -> Optional[PermissionGrant]:
        return (
            self.session.query(PermissionGrant)
            .filter(
                PermissionGrant.agent_id == agent_id,
                PermissionGrant.credential_id == credential_id,
                PermissionGrant.is_active.is_(True),
            )
            .order_by(PermissionGrant.granted_at.desc())
            .first()
        )

    def _latest_grant(self, agent_id: str, credential_id: str) -> Optional[PermissionGrant]:
        return (
            self.session.query(PermissionGrant)
            .filter(
                PermissionGrant.agent_id == agent_id,
                PermissionGrant.credential_id == credential_id,
            )
            .order_by(PermissionGrant.granted_at.desc())
            .first()
        )

    def _deactivate(self, grant: PermissionGrant, actor: str, reason: str) -> None:
        grant.is_active = False
        grant.revoked_at = utc_now()
        grant.revoked_by_user_id = actor
        grant.revoke_reason = reason

    # ==================== GRANT ====================

    @operation()
    @with_caller
    @handle_database_errors("grant")
    def grant(
        self,
        agent_id: str,
        credential_id: str,
        permission_level: PermissionLevel,
        scopes: List[str],
        granting_user_id: str,
        expires_at: Optional[datetime] = None,
        caller_context: Optional[CallerContext] = None,
    ) -> PermissionGrantRead:
        """
        Delegate scopes of a credential to an agent.

        A previous active grant for the same agent and credential is
        superseded by the new one.

        Raises:
            CredentialNotFoundError: If the credential does not exist
            NotOwnerError: If the granting user does not own the credential
            CredentialRevokedError: If the credential was disconnected
            ScopeNotGrantedError: If scopes are empty or exceed the credential's scopes
            ValidationError: If expires_at is not in the future
        """
        if not agent_id or not agent_id.strip():
            raise validation_failed("agent_id", "must be a non-empty string")
        permission_level = PermissionLevel(permission_level)

        credential = self._owned_credential(credential_id, granting_user_id)
        if credential.status == CredentialStatus.REVOKED.value:
            raise CredentialRevokedError(credential_id=credential_id)

        requested = _dedupe(list(scopes or []))
        if not requested:
            raise ScopeNotGrantedError("At least one scope must be granted", credential_id=credential_id)
        not_held = [s for s in requested if s not in (credential.scopes or [])]
        if not_held:
            raise ScopeNotGrantedError(credential_id=credential_id, scopes=not_held)

        now = utc_now()
        expires_at = as_utc(expires_at)
        if expires_at is not None and expires_at <= now:
            raise ValidationError(
                "expires_at must be in the future",
                field="expires_at",
                error_code=ErrorCode.VALIDATION_FAILED,
            )

        previous = self._active_grant(agent_id, credential_id)
        if previous is not None:
            self._deactivate(previous, granting_user_id, "superseded")

        grant = PermissionGrant(
            agent_id=agent_id,
            credential_id=credential_id,
            granted_by_user_id=granting_user_id,
            permission_level=permission_level.value,
            allowed_scopes=requested,
            granted_at=now,
            expires_at=expires_at,
            is_active=True,
        )
        self.session.add(grant)
        self.session.flush()

        self.audit.record(
            AuditEventType.GRANT,
            AuditOutcome.SUCCESS,
            actor=granting_user_id,
            agent_id=agent_id,
            credential_id=credential_id,
            owner_user_id=credential.owner_user_id,
            grant_id=grant.id,
            details={
                "scopes": requested,
                "permission_level": permission_level.value,
                "expires_at": expires_at,
                "superseded_grant_id": previous.id if previous else None,
            },
            commit=False,
        )
        self.commit()
        return PermissionGrantRead.model_validate(grant)

    # ==================== REVOKE ====================

    @operation()
    @with_caller
    @handle_database_errors("revoke")
    def revoke(
        self,
        grant_id: str,
        revoking_user_id: str,
        caller_context: Optional[CallerContext] = None,
    ) -> PermissionGrantRead:
        """
        Deactivate a grant. Revoking an inactive grant changes nothing.

        Raises:
            NotOwnerError: If the user does not own the grant's credential, or
                the grant does not exist
        """
        grant = self.session.get(PermissionGrant, grant_id)
        if grant is None:
            raise NotOwnerError("Grant not found for user", grant_id=grant_id)
        credential = self.session.get(Credential, grant.credential_id)
        if credential is None or credential.owner_user_id != revoking_user_id:
            raise NotOwnerError(grant_id=grant_id, user_id=revoking_user_id)

        outcome = AuditOutcome.NOOP
        if grant.is_active:
            self._deactivate(grant, revoking_user_id, "revoked_by_owner")
            outcome = AuditOutcome.SUCCESS

        self.audit.record(
            AuditEventType.REVOKE,
            outcome,
            actor=revoking_user_id,
            agent_id=grant.agent_id,
            credential_id=grant.credential_id,
            owner_user_id=credential.owner_user_id,
            grant_id=grant.id,
            reason=grant.revoke_reason,
            commit=False,
        )
        self.commit()
        return PermissionGrantRead.model_validate(grant)

    def deactivate_for_credential(
        self, credential: Credential, actor: str, reason: str
    ) -> List[str]:
        """
        Deactivate every active grant on a credential. Does not commit.

        Returns:
            Ids of the grants that were deactivated
        """
        grants = (
            self.session.query(PermissionGrant)
            .filter(
                PermissionGrant.credential_id == credential.id,
                PermissionGrant.is_active.is_(True),
            )
            .all()
        )
        for grant in grants:
            self._deactivate(grant, actor, reason)
            self.audit.record(
                AuditEventType.REVOKE,
                AuditOutcome.SUCCESS,
                actor=actor,
                agent_id=grant.agent_id,
                credential_id=credential.id,
                owner_user_id=credential.owner_user_id,
                grant_id=grant.id,
                reason=reason,
                commit=False,
            )
        return [grant.id for grant in grants]

    @operation()
    @handle_database_errors("revoke_all_for_agent")
    def revoke_all_for_agent(self, agent_id: str, actor: str) -> List[str]:
        """
        Deactivate every grant held by an agent, e.g. when the agent is deleted.

        Returns:
            Ids of the grants that were deactivated
        """
        grants = (
            self.session.query(PermissionGrant)
            .filter(PermissionGrant.agent_id == agent_id, PermissionGrant.is_active.is_(True))
            .all()
        )
        for grant in grants:
            credential = self.session.get(Credential, grant.credential_id)
            self._deactivate(grant, actor, "agent_deleted")
            self.audit.record(
                AuditEventType.REVOKE,
                AuditOutcome.SUCCESS,
                actor=actor,
                agent_id=agent_id,
                credential_id=grant.credential_id,
                owner_user_id=credential.owner_user_id if credential else None,
                grant_id=grant.id,
                reason="agent_deleted",
                commit=False,
            )
        self.commit()
        return [grant.id for grant in grants]

    # ==================== AUTHORIZE ====================

    def authorize(
        self,
        agent_id: str,
        credential_id: str,
        required_scope: str,
        now: Optional[datetime] = None,
    ) -> AuthorizationDecision:
        """
        Decide whether an agent may use a credential for one scope.

        Grant checks come first (exists, active, unexpired, scope allowed);
        the parent credential's status is checked last, so a
        ``credential_not_active`` denial means the grant itself is sound.
        This method never writes.
        """
        now = as_utc(now) or utc_now()

        grant = self._active_grant(agent_id, credential_id)
        if grant is None:
            latest = self._latest_grant(agent_id, credential_id)
            if latest is None:
                return AuthorizationDecision.deny(DenialReason.NO_GRANT)
            return AuthorizationDecision.deny(DenialReason.GRANT_REVOKED, grant_id=latest.id)

        if grant.expires_at is not None and as_utc(grant.expires_at) <= now:
            return AuthorizationDecision.deny(DenialReason.GRANT_EXPIRED, grant_id=grant.id)

        if required_scope not in (grant.allowed_scopes or []):
            return AuthorizationDecision.deny(DenialReason.SCOPE_NOT_ALLOWED, grant_id=grant.id)

        credential = self.session.get(Credential, credential_id)
        if credential is None or credential.status != CredentialStatus.ACTIVE.value:
            return AuthorizationDecision.deny(
                DenialReason.CREDENTIAL_NOT_ACTIVE, grant_id=grant.id
            )

        return AuthorizationDecision.allow(grant.id)

    def record_use(self, grant_id: str) -> None:
        """Bump a grant's usage counter in the database. Does not commit."""
        self.session.execute(
            update(PermissionGrant)
            .where(PermissionGrant.id == grant_id)
            .values(
                usage_count=func.coalesce(PermissionGrant.usage_count, 0) + 1,
                last_used_at=utc_now(),
            )
            .execution_options(synchronize_session="fetch")
        )

    # ==================== QUERIES ====================

    @handle_database_errors("list_grants")
    def list_grants(
        self,
        user_id: str,
        credential_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[PermissionGrantRead]:
        """Grants on credentials owned by the user."""
        query = (
            self.session.query(PermissionGrant)
            .join(Credential, Credential.id == PermissionGrant.credential_id)
            .filter(Credential.owner_user_id == user_id)
        )
        if credential_id:
            query = query.filter(PermissionGrant.credential_id == credential_id)
        if agent_id:
            query = query.filter(PermissionGrant.agent_id == agent_id)
        if active_only:
            query = query.filter(PermissionGrant.is_active.is_(True))
        grants = query.order_by(PermissionGrant.granted_at.desc()).all()
        return [PermissionGrantRead.model_validate(g) for g in grants]
