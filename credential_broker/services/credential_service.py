"""
Credential store: a user's connections to external services.

Credential rows hold metadata and vault handles only. This service creates
credentials from API-key submissions and completed OAuth flows, lists them for
their owner, rotates their handles on refresh, and disconnects them, which
cascades to every grant that depends on them.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from pydantic import SecretStr
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..config import AppConfig, get_config
from ..constants import AuditEventType, AuditOutcome, AuthType, CredentialStatus
from ..context.operation_context import operation
from ..context.request_context import CallerContext, with_caller
from ..context.service_decorators import handle_database_errors
from ..db.db_base import utc_now
from ..db.db_credential_models import Credential
from ..exceptions import (
    CredentialNotFoundError,
    CredentialRevokedError,
    NotOwnerError,
    ScopeNotGrantedError,
    VaultUnavailableError,
    validation_failed,
)
from ..providers.registry import ProviderRegistry
from ..schemas.credential_schemas import ApiKeySubmission, CredentialRead
from ..vault.secret_vault import SecretVault
from .audit_service import AuditService
from .base_service import SessionManagedService


class CredentialService(SessionManagedService):
    """
    Service for managing stored credentials.

    This service provides:
    - API-key connections stored through the vault
    - Create-or-update of OAuth credentials after a completed flow
    - Owner-scoped listing and disconnect with cascading grant revocation
    - Handle rotation and status changes for the refresh service
    """

    def __init__(
        self,
        session: Optional[Session],
        vault: SecretVault,
        registry: Optional[ProviderRegistry] = None,
        audit: Optional[AuditService] = None,
        config: Optional[AppConfig] = None,
    ):
        super().__init__(session=session)
        self.vault = vault
        self.config = config or get_config()
        self.registry = registry or ProviderRegistry.from_config(self.config)
        self.audit = audit or AuditService(self.session, self.config)

    # ==================== LOOKUPS ====================

    def find(self, credential_id: str) -> Optional[Credential]:
        return self.session.get(Credential, credential_id)

    def get_credential(self, credential_id: str) -> Credential:
        credential = self.find(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id=credential_id)
        return credential

    def get_owned(self, credential_id: str, user_id: str) -> Credential:
        """
        Load a credential on behalf of a user.

        Raises:
            CredentialNotFoundError: If it does not exist
            NotOwnerError: If the user does not own it
        """
        credential = self.get_credential(credential_id)
        if credential.owner_user_id != user_id:
            raise NotOwnerError(credential_id=credential_id, user_id=user_id)
        return credential

    @handle_database_errors("list_credentials")
    def list_credentials(self, user_id: str, include_revoked: bool = False) -> List[CredentialRead]:
        query = self.session.query(Credential).filter(Credential.owner_user_id == user_id)
        if not include_revoked:
            query = query.filter(Credential.status != CredentialStatus.REVOKED.value)
        credentials = query.order_by(Credential.created_at.desc()).all()
        return [CredentialRead.model_validate(c) for c in credentials]

    def find_reconnect_target(
        self, user_id: str, provider: str, external_account_id: Optional[str]
    ) -> Optional[Credential]:
        """
        The non-revoked credential a reconnect of the same account should update.

        Without a known account id there is nothing to match on, so the
        connection always becomes a new credential.
        """
        if external_account_id is None:
            return None
        return (
            self.session.query(Credential)
            .filter(
                Credential.owner_user_id == user_id,
                Credential.provider == provider,
                Credential.status != CredentialStatus.REVOKED.value,
                Credential.external_account_id == external_account_id,
            )
            .order_by(Credential.created_at.desc())
            .first()
        )

    # ==================== API KEYS ====================

    @operation()
    @with_caller
    @handle_database_errors("connect_api_key")
    def connect_api_key(
        self,
        user_id: str,
        provider: str,
        api_key: str,
        scopes: Optional[List[str]] = None,
        external_account_id: Optional[str] = None,
        caller_context: Optional[CallerContext] = None,
    ) -> CredentialRead:
        """
        Store a user-supplied API key and create an active credential for it.

        The key goes straight to the vault; the credential never expires on
        its own and is never refreshed.

        Raises:
            UnknownProviderError: If the provider is not registered
            ValidationError: If the key is empty, padded, or fails the provider's pattern
            ScopeNotGrantedError: If requested scopes are not offered by the provider
            VaultUnavailableError: If the vault cannot store the key
        """
        descriptor = self.registry.get_api_key(provider)
        try:
            submission = ApiKeySubmission(
                provider=descriptor.name,
                api_key=SecretStr(api_key) if isinstance(api_key, str) else api_key,
                scopes=scopes,
                external_account_id=external_account_id,
            )
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise validation_failed(".".join(str(p) for p in first["loc"]), first["msg"], cause=e)

        raw_key = submission.api_key.get_secret_value()
        if not descriptor.accepts_key(raw_key):
            raise validation_failed("api_key", "does not match the provider's key format")

        requested = submission.scopes or list(descriptor.scopes)
        extra = [s for s in requested if s not in descriptor.scopes]
        if extra:
            raise ScopeNotGrantedError(provider=descriptor.name, scopes=extra)

        handle = self.vault.store(raw_key, description=f"{descriptor.name} api key for {user_id}")
        now = utc_now()
        credential = Credential(
            owner_user_id=user_id,
            provider=descriptor.name,
            auth_type=AuthType.API_KEY.value,
            external_account_id=submission.external_account_id,
            api_key_handle=handle,
            scopes=requested,
            expires_at=None,
            status=CredentialStatus.ACTIVE.value,
            last_validated_at=now,
        )
        self.session.add(credential)
        self.session.flush()

        self.audit.record(
            AuditEventType.CREDENTIAL_CONNECTED,
            AuditOutcome.SUCCESS,
            actor=user_id,
            credential_id=credential.id,
            owner_user_id=user_id,
            details={"provider": descriptor.name, "auth_type": AuthType.API_KEY.value},
            commit=False,
        )
        self.commit()

        self.logger.info(
            "API key credential connected",
            extra={"credential_id": credential.id, "provider": descriptor.name, "user_id": user_id},
        )
        return CredentialRead.model_validate(credential)

    # ==================== OAUTH ====================

    def upsert_oauth_credential(
        self,
        user_id: str,
        provider: str,
        external_account_id: Optional[str],
        access_token_handle: str,
        refresh_token_handle: Optional[str],
        scopes: List[str],
        expires_at: Optional[datetime],
    ) -> Tuple[Credential, List[str], bool]:
        """
        Create the credential for a completed flow, or update the matching one.

        Does not commit; the flow engine owns the transaction.

        Returns:
            (credential, superseded handles to release after commit, created flag)
        """
        now = utc_now()
        credential = self.find_reconnect_target(user_id, provider, external_account_id)
        if credential is None:
            credential = Credential(
                owner_user_id=user_id,
                provider=provider,
                auth_type=AuthType.OAUTH2.value,
                external_account_id=external_account_id,
                access_token_handle=access_token_handle,
                refresh_token_handle=refresh_token_handle,
                scopes=scopes,
                expires_at=expires_at,
                status=CredentialStatus.ACTIVE.value,
                last_validated_at=now,
            )
            self.session.add(credential)
            self.session.flush()
            return credential, [], True

        superseded = []
        if credential.access_token_handle and credential.access_token_handle != access_token_handle:
            superseded.append(credential.access_token_handle)
        credential.access_token_handle = access_token_handle
        if refresh_token_handle is not None:
            if credential.refresh_token_handle and credential.refresh_token_handle != refresh_token_handle:
                superseded.append(credential.refresh_token_handle)
            credential.refresh_token_handle = refresh_token_handle
        credential.scopes = scopes
        credential.expires_at = expires_at
        credential.status = CredentialStatus.ACTIVE.value
        credential.status_reason = None
        credential.last_validated_at = now
        self._reset_refresh_state(credential)
        self.session.flush()
        return credential, superseded, False

    # ==================== REFRESH SUPPORT ====================

    def rotate_tokens(
        self,
        credential: Credential,
        access_token_handle: str,
        refresh_token_handle: Optional[str],
        expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
    ) -> List[str]:
        """
        Point a credential at freshly stored handles. Does not commit.

        Returns:
            Old handles to release once the new ones are committed
        """
        old = [credential.access_token_handle]
        credential.access_token_handle = access_token_handle
        if refresh_token_handle is not None and refresh_token_handle != credential.refresh_token_handle:
            old.append(credential.refresh_token_handle)
            credential.refresh_token_handle = refresh_token_handle
        if scopes:
            credential.scopes = scopes
        credential.expires_at = expires_at
        credential.last_validated_at = utc_now()
        self._reset_refresh_state(credential)
        return [h for h in old if h]

    def mark_status(
        self, credential: Credential, status: CredentialStatus, reason: Optional[str] = None
    ) -> None:
        """Change a credential's status. Does not commit."""
        if credential.status == CredentialStatus.REVOKED.value:
            # Revoked is terminal; a late refresh result must not resurrect it
            return
        credential.status = status.value
        credential.status_reason = reason
        self.logger.info(
            "Credential status changed",
            extra={"credential_id": credential.id, "status": status.value, "reason": reason},
        )

    @staticmethod
    def _reset_refresh_state(credential: Credential) -> None:
        credential.refresh_failure_count = 0
        credential.next_refresh_attempt_at = None

    # ==================== DISCONNECT ====================

    @operation()
    @with_caller
    @handle_database_errors("disconnect")
    def disconnect(
        self,
        credential_id: str,
        user_id: str,
        caller_context: Optional[CallerContext] = None,
    ) -> CredentialRead:
        """
        Soft-delete a credential and deactivate every grant that uses it.

        The status change, the grant deactivation and their audit events commit
        together; vault handles are released afterwards.

        Raises:
            CredentialNotFoundError: If the credential does not exist
            NotOwnerError: If the user does not own it
            CredentialRevokedError: If it was already disconnected
        """
        from .permission_grant_service import PermissionGrantService

        credential = self.get_owned(credential_id, user_id)
        if credential.status == CredentialStatus.REVOKED.value:
            raise CredentialRevokedError(credential_id=credential_id)

        grants = PermissionGrantService(self.session, audit=self.audit, config=self.config)
        revoked_grant_ids = grants.deactivate_for_credential(
            credential, actor=user_id, reason="credential_disconnected"
        )

        credential.status = CredentialStatus.REVOKED.value
        credential.status_reason = "disconnected"
        credential.revoked_at = utc_now()
        handles = [
            credential.access_token_handle,
            credential.refresh_token_handle,
            credential.api_key_handle,
        ]

        self.audit.record(
            AuditEventType.CREDENTIAL_DISCONNECTED,
            AuditOutcome.SUCCESS,
            actor=user_id,
            credential_id=credential.id,
            owner_user_id=credential.owner_user_id,
            details={"provider": credential.provider, "grants_revoked": len(revoked_grant_ids)},
            commit=False,
        )
        self.commit()

        if self.release_handles([h for h in handles if h]):
            credential.access_token_handle = None
            credential.refresh_token_handle = None
            credential.api_key_handle = None
            self.commit()

        self.logger.info(
            "Credential disconnected",
            extra={"credential_id": credential.id, "grants_revoked": len(revoked_grant_ids)},
        )
        return CredentialRead.model_validate(credential)

    def release_handles(self, handles: Iterable[str]) -> bool:
        """
        Best-effort removal of secrets that nothing references any more.

        Returns:
            True when every handle was released
        """
        handles = [h for h in handles if h]
        if not handles:
            return True
        try:
            for handle in handles:
                self.vault.revoke(handle)
            self.commit()
        except VaultUnavailableError:
            self.rollback()
            self.logger.warning("Vault handles left for cleanup", extra={"count": len(handles)})
            return False
        return True
