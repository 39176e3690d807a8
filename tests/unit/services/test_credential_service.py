"""
Tests for the credential store.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from credential_broker.constants import AuditEventType, AuthType, CredentialStatus, PermissionLevel
from credential_broker.db.db_base import utc_now
from credential_broker.db.db_credential_models import Credential
from credential_broker.db.db_grant_models import PermissionGrant
from credential_broker.exceptions import (
    CredentialNotFoundError,
    CredentialRevokedError,
    HandleNotFoundError,
    NotOwnerError,
    ScopeNotGrantedError,
    UnknownProviderError,
    ValidationError,
    VaultUnavailableError,
)
from credential_broker.schemas.audit_schemas import AuditEventFilter
from tests.fixtures.factories import CredentialFactory, PermissionGrantFactory
from tests.fixtures.settings import WEATHER_KEY


class TestConnectApiKey:
    """Test API key connections."""

    def test_creates_active_credential(self, credential_service, db_session, vault):
        """The key goes to the vault and the credential holds only its handle."""
        result = credential_service.connect_api_key(
            "user-alice", "weatherapi", WEATHER_KEY, external_account_id="acct-7"
        )

        assert result.status == CredentialStatus.ACTIVE
        assert result.auth_type == AuthType.API_KEY
        assert result.scopes == ["weather.read", "weather.alerts"]
        assert result.expires_at is None
        assert result.external_account_id == "acct-7"
        assert "api_key_handle" not in result.model_dump()

        row = db_session.get(Credential, result.id)
        assert row.api_key_handle.startswith("vault:")
        assert WEATHER_KEY not in str(row.__dict__)
        assert vault.decrypt(row.api_key_handle) == WEATHER_KEY

    def test_audited(self, credential_service, audit_service):
        """Connecting writes a credential_connected event."""
        result = credential_service.connect_api_key("user-alice", "weatherapi", WEATHER_KEY)

        events = audit_service.list_events(AuditEventFilter(credential_id=result.id))
        assert [e.event_type for e in events] == [AuditEventType.CREDENTIAL_CONNECTED]
        assert events[0].actor == "user-alice"
        assert WEATHER_KEY not in str(events[0].model_dump())

    def test_scope_subset(self, credential_service):
        """Users may connect a key for a subset of the provider scopes."""
        result = credential_service.connect_api_key(
            "user-alice", "weatherapi", WEATHER_KEY, scopes=["weather.read"]
        )
        assert result.scopes == ["weather.read"]

    def test_scope_not_offered(self, credential_service):
        """Scopes the provider does not offer are refused."""
        with pytest.raises(ScopeNotGrantedError):
            credential_service.connect_api_key(
                "user-alice", "weatherapi", WEATHER_KEY, scopes=["weather.admin"]
            )

    @pytest.mark.parametrize("api_key", ["", " wk_0123456789abcdefXYZ", "sk-wrong-format-key"])
    def test_invalid_keys(self, credential_service, db_session, api_key):
        """Empty, padded and malformed keys are rejected and nothing is stored."""
        with pytest.raises(ValidationError):
            credential_service.connect_api_key("user-alice", "weatherapi", api_key)
        assert db_session.query(Credential).count() == 0

    def test_unknown_provider(self, credential_service):
        """Unregistered providers are refused."""
        with pytest.raises(UnknownProviderError):
            credential_service.connect_api_key("user-alice", "dropbox", WEATHER_KEY)

    def test_oauth_provider(self, credential_service):
        """OAuth providers cannot take a pasted key."""
        with pytest.raises(ValidationError):
            credential_service.connect_api_key("user-alice", "gmail", WEATHER_KEY)

    def test_vault_unavailable(self, credential_service, db_session):
        """Nothing is written when the vault cannot store the key."""
        with patch.object(
            credential_service.vault, "store", side_effect=VaultUnavailableError("down")
        ):
            with pytest.raises(VaultUnavailableError):
                credential_service.connect_api_key("user-alice", "weatherapi", WEATHER_KEY)
        assert db_session.query(Credential).count() == 0


class TestLookups:
    """Test owner-scoped reads."""

    def test_list_credentials(self, credential_service):
        """Users see only their own, non-revoked credentials by default."""
        mine = CredentialFactory(owner_user_id="user-alice")
        CredentialFactory(owner_user_id="user-alice", status=CredentialStatus.REVOKED.value)
        CredentialFactory(owner_user_id="user-bob")

        listed = credential_service.list_credentials("user-alice")
        assert [c.id for c in listed] == [mine.id]
        assert len(credential_service.list_credentials("user-alice", include_revoked=True)) == 2

    def test_get_owned(self, credential_service):
        """Other users' credentials and unknown ids are refused."""
        credential = CredentialFactory(owner_user_id="user-alice")

        assert credential_service.get_owned(credential.id, "user-alice").id == credential.id
        with pytest.raises(NotOwnerError):
            credential_service.get_owned(credential.id, "user-bob")
        with pytest.raises(CredentialNotFoundError):
            credential_service.get_owned("missing", "user-alice")


class TestDisconnect:
    """Test disconnecting credentials."""

    def test_cascades_to_grants(self, credential_service, grant_service, audit_service, db_session, weather_credential):
        """Disconnect revokes the credential, its grants and its secrets."""
        grant = grant_service.grant(
            "agent-a", weather_credential.id, PermissionLevel.READ_ONLY, ["weather.read"], "user-alice"
        )
        row = db_session.get(Credential, weather_credential.id)
        handle = row.api_key_handle

        result = credential_service.disconnect(weather_credential.id, "user-alice")

        assert result.status == CredentialStatus.REVOKED
        assert result.revoked_at is not None
        stored_grant = db_session.get(PermissionGrant, grant.id)
        assert stored_grant.is_active is False
        assert stored_grant.revoke_reason == "credential_disconnected"
        assert row.api_key_handle is None
        with pytest.raises(HandleNotFoundError):
            credential_service.vault.decrypt(handle)

        types = [e.event_type for e in audit_service.list_events(AuditEventFilter(credential_id=weather_credential.id))]
        assert AuditEventType.CREDENTIAL_DISCONNECTED in types
        assert AuditEventType.REVOKE in types

    def test_not_owner(self, credential_service, weather_credential):
        """Only the owner can disconnect."""
        with pytest.raises(NotOwnerError):
            credential_service.disconnect(weather_credential.id, "user-bob")

    def test_already_revoked(self, credential_service, weather_credential):
        """Disconnecting twice is refused."""
        credential_service.disconnect(weather_credential.id, "user-alice")
        with pytest.raises(CredentialRevokedError):
            credential_service.disconnect(weather_credential.id, "user-alice")

    def test_vault_cleanup_failure_keeps_handles(self, credential_service, db_session, weather_credential):
        """If the vault is down the credential is still revoked; handles wait for cleanup."""
        with patch.object(
            credential_service.vault, "revoke", side_effect=VaultUnavailableError("down")
        ):
            result = credential_service.disconnect(weather_credential.id, "user-alice")

        assert result.status == CredentialStatus.REVOKED
        assert db_session.get(Credential, weather_credential.id).api_key_handle is not None


class TestOAuthUpsert:
    """Test create-or-update after a completed flow."""

    def test_creates_new(self, credential_service, vault):
        """A first connection creates an active OAuth credential."""
        credential, superseded, created = credential_service.upsert_oauth_credential(
            "user-alice", "gmail", "alice@example.com", vault.store("a1"), vault.store("r1"),
            ["gmail.readonly"], utc_now() + timedelta(hours=1),
        )

        assert created
        assert superseded == []
        assert credential.auth_type == AuthType.OAUTH2.value
        assert credential.status == CredentialStatus.ACTIVE.value

    def test_reconnect_updates_same_account(self, credential_service, vault):
        """Reconnecting the same account updates it and reports the replaced handles."""
        old_access, old_refresh = vault.store("a1"), vault.store("r1")
        existing = CredentialFactory(
            external_account_id="alice@example.com",
            access_token_handle=old_access,
            refresh_token_handle=old_refresh,
            status=CredentialStatus.ERROR.value,
            refresh_failure_count=4,
        )

        credential, superseded, created = credential_service.upsert_oauth_credential(
            "user-alice", "gmail", "alice@example.com", vault.store("a2"), vault.store("r2"),
            ["gmail.readonly", "gmail.send"], utc_now() + timedelta(hours=1),
        )

        assert not created
        assert credential.id == existing.id
        assert set(superseded) == {old_access, old_refresh}
        assert credential.status == CredentialStatus.ACTIVE.value
        assert credential.refresh_failure_count == 0

    def test_reconnect_without_new_refresh_token(self, credential_service, vault):
        """A reconnect without a refresh token keeps the stored one."""
        old_refresh = vault.store("r1")
        CredentialFactory(
            external_account_id="alice@example.com",
            access_token_handle=vault.store("a1"),
            refresh_token_handle=old_refresh,
        )

        credential, superseded, _ = credential_service.upsert_oauth_credential(
            "user-alice", "gmail", "alice@example.com", vault.store("a2"), None,
            ["gmail.readonly"], None,
        )

        assert credential.refresh_token_handle == old_refresh
        assert old_refresh not in superseded
        assert len(superseded) == 1

        credential_service.release_handles(superseded)
        assert vault.decrypt(credential.refresh_token_handle) == "r1"

    def test_unknown_account_never_matches(self, credential_service, vault):
        """Without an account id a connection never overwrites an existing credential."""
        existing = CredentialFactory(external_account_id=None)

        credential, superseded, created = credential_service.upsert_oauth_credential(
            "user-alice", "gmail", None, vault.store("a2"), vault.store("r2"), ["gmail.readonly"], None,
        )

        assert created
        assert superseded == []
        assert credential.id != existing.id

    def test_other_account_creates_new(self, credential_service, vault):
        """A different account of the same provider is a separate credential."""
        existing = CredentialFactory(external_account_id="alice@example.com")

        credential, _, created = credential_service.upsert_oauth_credential(
            "user-alice", "gmail", "alice.work@example.com", vault.store("a"), None, ["gmail.readonly"], None,
        )

        assert created
        assert credential.id != existing.id


class TestRefreshSupport:
    """Test helpers used by the refresh service."""

    def test_rotate_tokens(self, credential_service, vault):
        """Rotation swaps handles, clears failures and returns the old handles."""
        old_access, old_refresh = vault.store("a1"), vault.store("r1")
        credential = CredentialFactory(
            access_token_handle=old_access, refresh_token_handle=old_refresh, refresh_failure_count=2
        )
        new_access, new_refresh = vault.store("a2"), vault.store("r2")
        expires_at = utc_now() + timedelta(hours=1)

        old = credential_service.rotate_tokens(credential, new_access, new_refresh, expires_at, ["gmail.readonly"])

        assert old == [old_access, old_refresh]
        assert credential.access_token_handle == new_access
        assert credential.refresh_token_handle == new_refresh
        assert credential.scopes == ["gmail.readonly"]
        assert credential.refresh_failure_count == 0

    def test_rotate_keeps_refresh_token(self, credential_service, vault):
        """Without a rotated refresh token the old one stays in place."""
        old_refresh = vault.store("r1")
        credential = CredentialFactory(access_token_handle=vault.store("a1"), refresh_token_handle=old_refresh)

        old = credential_service.rotate_tokens(credential, vault.store("a2"), None, None)

        assert credential.refresh_token_handle == old_refresh
        assert old_refresh not in old
        assert credential.scopes == ["gmail.readonly", "gmail.send"]

    def test_mark_status_never_resurrects_revoked(self, credential_service):
        """A revoked credential stays revoked."""
        credential = CredentialFactory(status=CredentialStatus.REVOKED.value)
        credential_service.mark_status(credential, CredentialStatus.ERROR, "invalid_grant")
        assert credential.status == CredentialStatus.REVOKED.value

    def test_mark_status(self, credential_service):
        """Status and reason change together."""
        credential = CredentialFactory()
        credential_service.mark_status(credential, CredentialStatus.ERROR, "invalid_grant")
        assert credential.status == CredentialStatus.ERROR.value
        assert credential.status_reason == "invalid_grant"

    def test_release_handles(self, credential_service, vault, db_session):
        """Released handles no longer resolve."""
        handle = vault.store("old")
        db_session.commit()

        assert credential_service.release_handles([handle, None])
        with pytest.raises(HandleNotFoundError):
            vault.decrypt(handle)
