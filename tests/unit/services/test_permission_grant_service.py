"""
Tests for the permission grant registry.
"""

from datetime import timedelta

import pytest

from credential_broker.constants import (
    AuditEventType,
    AuditOutcome,
    CredentialStatus,
    DenialReason,
    PermissionLevel,
)
from credential_broker.db.db_base import utc_now
from credential_broker.db.db_grant_models import PermissionGrant
from credential_broker.exceptions import (
    CredentialNotFoundError,
    CredentialRevokedError,
    NotOwnerError,
    ScopeNotGrantedError,
    ValidationError,
)
from credential_broker.schemas.audit_schemas import AuditEventFilter
from credential_broker.services.permission_grant_service import PermissionGrantService
from tests.fixtures.factories import CredentialFactory, PermissionGrantFactory


@pytest.fixture
def credential(db_session):
    return CredentialFactory()


class TestGrant:
    """Test creating grants."""

    def test_grant_subset(self, grant_service, audit_service, credential):
        """Owners can delegate a subset of the credential's scopes."""
        grant = grant_service.grant(
            "agent-a", credential.id, PermissionLevel.READ_ONLY, ["gmail.readonly"], "user-alice"
        )

        assert grant.is_active
        assert grant.allowed_scopes == ["gmail.readonly"]
        assert grant.permission_level == PermissionLevel.READ_ONLY
        assert grant.granted_by_user_id == "user-alice"

        events = audit_service.list_events(AuditEventFilter(agent_id="agent-a"))
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.GRANT
        assert events[0].grant_id == grant.id
        assert events[0].details["scopes"] == ["gmail.readonly"]

    def test_duplicate_scopes_collapsed(self, grant_service, credential):
        """Repeated scopes are stored once."""
        grant = grant_service.grant(
            "agent-a", credential.id, "read_only", ["gmail.readonly", "gmail.readonly"], "user-alice"
        )
        assert grant.allowed_scopes == ["gmail.readonly"]

    def test_supersedes_previous(self, grant_service, db_session, credential):
        """A new grant for the same agent and credential replaces the active one."""
        first = grant_service.grant("agent-a", credential.id, "read_only", ["gmail.readonly"], "user-alice")
        second = grant_service.grant(
            "agent-a", credential.id, "read_write", ["gmail.readonly", "gmail.send"], "user-alice"
        )

        old = db_session.get(PermissionGrant, first.id)
        assert old.is_active is False
        assert old.revoke_reason == "superseded"
        assert second.is_active
        active = grant_service.list_grants("user-alice", agent_id="agent-a", active_only=True)
        assert [g.id for g in active] == [second.id]

    def test_scopes_beyond_credential(self, grant_service, credential):
        """A grant can never exceed the credential's own scopes."""
        with pytest.raises(ScopeNotGrantedError):
            grant_service.grant(
                "agent-a", credential.id, "read_only", ["gmail.readonly", "gmail.delete"], "user-alice"
            )

    def test_empty_scopes(self, grant_service, credential):
        with pytest.raises(ScopeNotGrantedError):
            grant_service.grant("agent-a", credential.id, "read_only", [], "user-alice")

    def test_not_owner(self, grant_service, credential):
        """Only the credential's owner can grant it."""
        with pytest.raises(NotOwnerError):
            grant_service.grant("agent-a", credential.id, "read_only", ["gmail.readonly"], "user-bob")

    def test_unknown_credential(self, grant_service, db_session):
        with pytest.raises(CredentialNotFoundError):
            grant_service.grant("agent-a", "missing", "read_only", ["gmail.readonly"], "user-alice")

    def test_revoked_credential(self, grant_service, db_session):
        """Disconnected credentials cannot be granted."""
        credential = CredentialFactory(status=CredentialStatus.REVOKED.value)
        with pytest.raises(CredentialRevokedError):
            grant_service.grant("agent-a", credential.id, "read_only", ["gmail.readonly"], "user-alice")

    def test_expiry_in_past(self, grant_service, credential):
        """Grants must expire in the future, if at all."""
        with pytest.raises(ValidationError):
            grant_service.grant(
                "agent-a", credential.id, "read_only", ["gmail.readonly"], "user-alice",
                expires_at=utc_now() - timedelta(minutes=1),
            )

    def test_blank_agent(self, grant_service, credential):
        with pytest.raises(ValidationError):
            grant_service.grant("  ", credential.id, "read_only", ["gmail.readonly"], "user-alice")


class TestRevoke:
    """Test revoking grants."""

    def test_revoke(self, grant_service, audit_service, credential):
        """Revoking deactivates the grant and records who did it."""
        grant = grant_service.grant("agent-a", credential.id, "read_only", ["gmail.readonly"], "user-alice")

        revoked = grant_service.revoke(grant.id, "user-alice")

        assert revoked.is_active is False
        assert revoked.revoked_by_user_id == "user-alice"
        assert revoked.revoke_reason == "revoked_by_owner"
        events = audit_service.list_events(AuditEventFilter(event_types=[AuditEventType.REVOKE]))
        assert [e.outcome for e in events] == [AuditOutcome.SUCCESS]

    def test_revoke_twice_is_noop(self, grant_service, audit_service, credential):
        """Revoking an inactive grant changes nothing but is still audited."""
        grant = grant_service.grant("agent-a", credential.id, "read_only", ["gmail.readonly"], "user-alice")
        first = grant_service.revoke(grant.id, "user-alice")

        second = grant_service.revoke(grant.id, "user-alice")

        assert second.revoked_at == first.revoked_at
        events = audit_service.list_events(AuditEventFilter(event_types=[AuditEventType.REVOKE]))
        assert sorted(e.outcome.value for e in events) == ["noop", "success"]

    def test_revoke_not_owner(self, grant_service, credential):
        grant = PermissionGrantFactory(credential_id=credential.id)
        with pytest.raises(NotOwnerError):
            grant_service.revoke(grant.id, "user-bob")

    def test_revoke_unknown(self, grant_service, db_session):
        with pytest.raises(NotOwnerError):
            grant_service.revoke("missing", "user-alice")

    def test_revoke_all_for_agent(self, grant_service, db_session):
        """Deleting an agent deactivates all of its grants across credentials."""
        first = CredentialFactory()
        second = CredentialFactory(owner_user_id="user-bob")
        kept = PermissionGrantFactory(credential_id=first.id, agent_id="agent-b")
        ids = {
            PermissionGrantFactory(credential_id=first.id).id,
            PermissionGrantFactory(credential_id=second.id).id,
        }

        revoked = grant_service.revoke_all_for_agent("agent-a", actor="system")

        assert set(revoked) == ids
        assert db_session.get(PermissionGrant, kept.id).is_active is True
        for grant_id in ids:
            grant = db_session.get(PermissionGrant, grant_id)
            assert grant.is_active is False
            assert grant.revoke_reason == "agent_deleted"

    def test_deactivate_for_credential(self, grant_service, db_session, credential):
        """Every active grant on the credential is deactivated; none is committed yet."""
        PermissionGrantFactory(credential_id=credential.id, agent_id="agent-a")
        PermissionGrantFactory(credential_id=credential.id, agent_id="agent-b")
        PermissionGrantFactory(credential_id=credential.id, agent_id="agent-c", is_active=False)

        revoked = grant_service.deactivate_for_credential(credential, actor="user-alice", reason="credential_disconnected")

        assert len(revoked) == 2
        assert db_session.query(PermissionGrant).filter(PermissionGrant.is_active.is_(True)).count() == 0


class TestAuthorize:
    """Test authorization decisions."""

    def test_allowed(self, grant_service, credential):
        """An active, unexpired grant with the scope on an active credential authorizes."""
        grant = PermissionGrantFactory(credential_id=credential.id)

        decision = grant_service.authorize("agent-a", credential.id, "gmail.readonly")

        assert decision.authorized
        assert decision.grant_id == grant.id
        assert decision.reason is None

    def test_no_grant(self, grant_service, credential):
        decision = grant_service.authorize("agent-a", credential.id, "gmail.readonly")
        assert not decision
        assert decision.reason == DenialReason.NO_GRANT

    def test_other_agent(self, grant_service, credential):
        """Grants belong to one agent."""
        PermissionGrantFactory(credential_id=credential.id, agent_id="agent-b")
        decision = grant_service.authorize("agent-a", credential.id, "gmail.readonly")
        assert decision.reason == DenialReason.NO_GRANT

    def test_revoked(self, grant_service, credential):
        grant = PermissionGrantFactory(credential_id=credential.id, is_active=False)
        decision = grant_service.authorize("agent-a", credential.id, "gmail.readonly")
        assert decision.reason == DenialReason.GRANT_REVOKED
        assert decision.grant_id == grant.id

    def test_expired(self, grant_service, credential):
        PermissionGrantFactory(credential_id=credential.id, expires_at=utc_now() - timedelta(seconds=1))
        decision = grant_service.authorize("agent-a", credential.id, "gmail.readonly")
        assert decision.reason == DenialReason.GRANT_EXPIRED

    def test_expiry_uses_given_clock(self, grant_service, credential):
        """Expiry is judged against the supplied time."""
        expires_at = utc_now() + timedelta(hours=1)
        PermissionGrantFactory(credential_id=credential.id, expires_at=expires_at)

        assert grant_service.authorize("agent-a", credential.id, "gmail.readonly", now=expires_at - timedelta(seconds=1))
        late = grant_service.authorize("agent-a", credential.id, "gmail.readonly", now=expires_at)
        assert late.reason == DenialReason.GRANT_EXPIRED

    def test_scope_not_allowed(self, grant_service, credential):
        """Holding the credential does not extend to scopes outside the grant."""
        PermissionGrantFactory(credential_id=credential.id)
        decision = grant_service.authorize("agent-a", credential.id, "gmail.send")
        assert decision.reason == DenialReason.SCOPE_NOT_ALLOWED

    @pytest.mark.parametrize(
        "status", [CredentialStatus.ERROR, CredentialStatus.EXPIRED, CredentialStatus.REVOKED]
    )
    def test_credential_not_active(self, grant_service, db_session, status):
        """Sound grants on a credential that is not active are denied."""
        credential = CredentialFactory(status=status.value)
        PermissionGrantFactory(credential_id=credential.id)

        decision = grant_service.authorize("agent-a", credential.id, "gmail.readonly")

        assert decision.reason == DenialReason.CREDENTIAL_NOT_ACTIVE

    def test_authorize_never_writes(self, grant_service, audit_service, db_session, credential):
        """Decisions leave no audit events and no usage counts behind."""
        grant = PermissionGrantFactory(credential_id=credential.id)

        grant_service.authorize("agent-a", credential.id, "gmail.readonly")
        grant_service.authorize("agent-a", credential.id, "gmail.send")

        assert audit_service.count_events() == 0
        assert db_session.get(PermissionGrant, grant.id).usage_count == 0

    def test_record_use(self, grant_service, db_session, credential):
        grant = PermissionGrantFactory(credential_id=credential.id)

        grant_service.record_use(grant.id)
        grant_service.record_use(grant.id)

        stored = db_session.get(PermissionGrant, grant.id)
        assert stored.usage_count == 2
        assert stored.last_used_at is not None

    def test_record_use_from_parallel_sessions(self, db_manager, db_session, credential, app_config):
        """Uses recorded by workers holding stale copies of the grant are all counted."""
        grant = PermissionGrantFactory(credential_id=credential.id)
        first, second = db_manager.new_session(), db_manager.new_session()
        try:
            first_service = PermissionGrantService(first, config=app_config)
            second_service = PermissionGrantService(second, config=app_config)
            assert first.get(PermissionGrant, grant.id).usage_count == 0
            assert second.get(PermissionGrant, grant.id).usage_count == 0

            first_service.record_use(grant.id)
            first.commit()
            second_service.record_use(grant.id)
            second.commit()
        finally:
            first.close()
            second.close()

        stored = db_session.get(PermissionGrant, grant.id, populate_existing=True)
        assert stored.usage_count == 2


class TestListGrants:
    """Test owner-scoped grant listing."""

    def test_only_owned_credentials(self, grant_service, db_session):
        mine = CredentialFactory()
        theirs = CredentialFactory(owner_user_id="user-bob")
        visible = PermissionGrantFactory(credential_id=mine.id)
        PermissionGrantFactory(credential_id=theirs.id)

        grants = grant_service.list_grants("user-alice")

        assert [g.id for g in grants] == [visible.id]

    def test_filters(self, grant_service, credential):
        PermissionGrantFactory(credential_id=credential.id, agent_id="agent-a")
        PermissionGrantFactory(credential_id=credential.id, agent_id="agent-b", is_active=False)

        assert len(grant_service.list_grants("user-alice", credential_id=credential.id)) == 2
        assert len(grant_service.list_grants("user-alice", agent_id="agent-b")) == 1
        assert len(grant_service.list_grants("user-alice", active_only=True)) == 1
