"""
End-to-end broker scenarios against a file-backed database.

Each scenario builds on a Gmail connection made through the real OAuth flow
engine, with only the provider's HTTP endpoints mocked.
"""

from datetime import timedelta
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy import select

from credential_broker.constants import (
    AuditEventType,
    CredentialStatus,
    DenialReason,
    PermissionLevel,
)
from credential_broker.db.db_base import utc_now
from credential_broker.db.db_config import Base
from credential_broker.db.db_credential_models import Credential
from credential_broker.exceptions import (
    CredentialNeedsReauthorizationError,
    CredentialRevokedError,
    InvalidOrExpiredStateError,
    NotAuthorizedError,
    VaultUnavailableError,
)
from credential_broker.schemas.audit_schemas import AuditEventFilter
from credential_broker.vault.secret_vault import is_vault_handle
from tests.fixtures.factories import CredentialFactory, PermissionGrantFactory
from tests.fixtures.provider_responses import make_response, token_body

FIRST_ACCESS = "ya29.first-access-token"
FIRST_REFRESH = "1//first-refresh-token"
SECOND_ACCESS = "ya29.second-access-token"
SECOND_REFRESH = "1//second-refresh-token"
SEARCH_KEY = "wk_SearchKey0123456789abc"


def connect_gmail(app, mock_http):
    """Scenario 1: begin a flow, then complete it from the provider callback."""
    with app.unit_of_work() as session:
        start = app.oauth(session).begin_flow("gmail", "user-1", ["gmail.readonly"])

    params = parse_qs(urlsplit(start.authorization_url).query)
    assert params["code_challenge_method"] == ["S256"]
    assert params["state"] == [start.state]

    mock_http.post.return_value = make_response(
        200, token_body(access_token=FIRST_ACCESS, refresh_token=FIRST_REFRESH)
    )
    mock_http.get.return_value = make_response(200, {"email": "user1@example.com"})
    with app.unit_of_work() as session:
        return app.oauth(session).complete_flow("provider-code-1", start.state)


def grant_read_only(app, credential_id):
    with app.unit_of_work() as session:
        return app.grants(session).grant(
            "agent-a", credential_id, PermissionLevel.READ_ONLY, ["gmail.readonly"], "user-1"
        )


def request_secret(app, credential_id, scope="gmail.readonly", agent_id="agent-a"):
    with app.unit_of_work() as session:
        return app.broker(session).request_secret(agent_id, credential_id, scope)


def audit_events(app, **filters):
    with app.unit_of_work() as session:
        return app.audit(session).list_events(AuditEventFilter(**filters))


class TestEndToEndScenarios:
    """Test the broker lifecycle from connection to refresh."""

    def test_connect_gmail(self, broker_app, mock_http, session):
        """Completing the flow creates exactly one active credential with the requested scope."""
        credential = connect_gmail(broker_app, mock_http)

        assert credential.status == CredentialStatus.ACTIVE
        assert credential.scopes == ["gmail.readonly"]
        assert session.query(Credential).count() == 1

    def test_grant_and_authorize(self, broker_app, mock_http):
        """A read-only grant authorizes its scope and nothing more."""
        credential = connect_gmail(broker_app, mock_http)
        grant = grant_read_only(broker_app, credential.id)

        with broker_app.unit_of_work() as session:
            grants = broker_app.grants(session)
            allowed = grants.authorize("agent-a", credential.id, "gmail.readonly")
            denied = grants.authorize("agent-a", credential.id, "gmail.send")

        assert allowed.authorized
        assert allowed.grant_id == grant.id
        assert not denied.authorized
        assert denied.reason == DenialReason.SCOPE_NOT_ALLOWED

    def test_revoked_grant_denies(self, broker_app, mock_http):
        """After revocation the agent is refused and the denial is audited."""
        credential = connect_gmail(broker_app, mock_http)
        grant = grant_read_only(broker_app, credential.id)
        assert request_secret(broker_app, credential.id) == FIRST_ACCESS

        with broker_app.unit_of_work() as session:
            broker_app.grants(session).revoke(grant.id, "user-1")

        with pytest.raises(NotAuthorizedError):
            request_secret(broker_app, credential.id)

        denied = audit_events(broker_app, event_types=[AuditEventType.DECRYPT_DENIED])
        assert len(denied) == 1
        assert denied[0].reason == DenialReason.GRANT_REVOKED.value
        assert denied[0].agent_id == "agent-a"

    def test_refresh_rotates_tokens(self, broker_app, mock_http, session):
        """A credential inside the refresh window gets new handles and keeps working."""
        credential = connect_gmail(broker_app, mock_http)
        grant_read_only(broker_app, credential.id)

        row = session.get(Credential, credential.id)
        old_access_handle = row.access_token_handle
        row.expires_at = utc_now() + timedelta(minutes=2)
        session.commit()

        mock_http.post.return_value = make_response(
            200, token_body(access_token=SECOND_ACCESS, refresh_token=SECOND_REFRESH)
        )
        result = broker_app.refresher(worker_id="worker-1").run_cycle()

        assert result.refreshed == 1
        row = session.get(Credential, credential.id, populate_existing=True)
        assert row.access_token_handle != old_access_handle
        assert row.status == CredentialStatus.ACTIVE.value
        assert len(audit_events(broker_app, event_types=[AuditEventType.REFRESH_SUCCESS])) == 1
        assert request_secret(broker_app, credential.id) == SECOND_ACCESS

    def test_api_key_never_refreshed(self, broker_app, mock_http, session):
        """API-key credentials have no expiry, are skipped by refresh, and stay active."""
        with broker_app.unit_of_work() as uow:
            credential = broker_app.credentials(uow).connect_api_key("user-1", "weatherapi", SEARCH_KEY)

        assert credential.expires_at is None
        refresher = broker_app.refresher()
        assert refresher.find_refresh_candidates(utc_now() + timedelta(days=365)) == []
        assert refresher.run_cycle().candidates == 0
        mock_http.post.assert_not_called()
        assert session.get(Credential, credential.id).status == CredentialStatus.ACTIVE.value

    def test_replayed_callback(self, broker_app, mock_http, session):
        """Replaying a completed callback fails and never re-sends the code."""
        with broker_app.unit_of_work() as uow:
            start = broker_app.oauth(uow).begin_flow("gmail", "user-1", ["gmail.readonly"])
        mock_http.post.return_value = make_response(200, token_body())
        mock_http.get.return_value = make_response(200, {"email": "user1@example.com"})
        with broker_app.unit_of_work() as uow:
            broker_app.oauth(uow).complete_flow("provider-code-1", start.state)

        with pytest.raises(InvalidOrExpiredStateError):
            with broker_app.unit_of_work() as uow:
                broker_app.oauth(uow).complete_flow("provider-code-1", start.state)

        assert mock_http.post.call_count == 1
        assert session.query(Credential).count() == 1


class TestSecretsAtRest:
    """Test that plaintext secrets never reach durable rows or logs."""

    def test_no_plaintext_in_rows_or_logs(self, broker_app, mock_http, session, caplog):
        with caplog.at_level("DEBUG"):
            credential = connect_gmail(broker_app, mock_http)
            grant_read_only(broker_app, credential.id)
            request_secret(broker_app, credential.id)
            with broker_app.unit_of_work() as uow:
                broker_app.credentials(uow).connect_api_key("user-1", "weatherapi", SEARCH_KEY)

        plaintexts = [FIRST_ACCESS, FIRST_REFRESH, SEARCH_KEY, "gmail-client-secret"]
        for table in Base.metadata.sorted_tables:
            for row in session.execute(select(table)).all():
                dumped = repr(tuple(row))
                for secret in plaintexts:
                    assert secret not in dumped, f"plaintext found in {table.name}"

        for row in session.query(Credential).all():
            for handle in (row.access_token_handle, row.refresh_token_handle, row.api_key_handle):
                assert handle is None or is_vault_handle(handle)

        for secret in plaintexts:
            assert secret not in caplog.text


class TestAuthorizationMatrix:
    """request_secret succeeds only for an active grant with the scope on an active credential."""

    @pytest.mark.parametrize("grant_state", ["active", "inactive", "expired"])
    @pytest.mark.parametrize(
        "credential_status",
        [CredentialStatus.ACTIVE, CredentialStatus.EXPIRED, CredentialStatus.REVOKED],
    )
    @pytest.mark.parametrize("scope_granted", [True, False])
    def test_matrix(self, broker_app, session, grant_state, credential_status, scope_granted):
        vault = broker_app.vault(session)
        credential = CredentialFactory(
            owner_user_id="user-1",
            status=credential_status.value,
            access_token_handle=vault.store(FIRST_ACCESS),
        )
        PermissionGrantFactory(
            credential_id=credential.id,
            granted_by_user_id="user-1",
            allowed_scopes=["gmail.readonly"] if scope_granted else ["gmail.send"],
            is_active=grant_state != "inactive",
            expires_at=utc_now() - timedelta(minutes=1) if grant_state == "expired" else None,
        )
        should_succeed = (
            grant_state == "active" and credential_status == CredentialStatus.ACTIVE and scope_granted
        )

        if should_succeed:
            assert request_secret(broker_app, credential.id) == FIRST_ACCESS
        else:
            with pytest.raises((NotAuthorizedError, CredentialRevokedError, CredentialNeedsReauthorizationError)):
                request_secret(broker_app, credential.id)

        assert len(audit_events(broker_app)) == 1


class TestAuditCompleteness:
    """Every request_secret outcome leaves exactly one audit event."""

    def test_one_event_per_call(self, broker_app, session):
        vault = broker_app.vault(session)
        credential = CredentialFactory(owner_user_id="user-1", access_token_handle=vault.store(FIRST_ACCESS))
        PermissionGrantFactory(credential_id=credential.id, granted_by_user_id="user-1")

        request_secret(broker_app, credential.id)
        with pytest.raises(NotAuthorizedError):
            request_secret(broker_app, credential.id, agent_id="agent-b")
        with patch(
            "credential_broker.vault.secret_vault.DatabaseSecretVault.decrypt",
            side_effect=VaultUnavailableError("down"),
        ):
            with pytest.raises(VaultUnavailableError):
                request_secret(broker_app, credential.id)

        events = audit_events(broker_app, credential_id=credential.id)
        assert sorted(e.event_type.value for e in events) == [
            "decrypt_denied",
            "decrypt_failure",
            "decrypt_success",
        ]
