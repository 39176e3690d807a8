"""
Credential broker: the only code path that hands a decrypted secret to an agent.

Every call ends in exactly one audit event, written and committed before the
call returns or raises. Decrypted values are never cached, stored or logged.
"""

import time
from contextlib import contextmanager
from typing import Generator, NoReturn, Optional, Type

from sqlalchemy.orm import Session

from ..config import AppConfig, get_config
from ..constants import AuditEventType, AuditOutcome, AuthType, CredentialStatus, DenialReason
from ..context.operation_context import operation
from ..context.request_context import CallerContext, with_caller
from ..context.service_decorators import handle_database_errors
from ..db.db_credential_models import Credential
from ..exceptions import (
    BaseError,
    CredentialNeedsReauthorizationError,
    CredentialNotFoundError,
    CredentialRevokedError,
    HandleNotFoundError,
    NotAuthorizedError,
    VaultUnavailableError,
    validation_failed,
)
from ..vault.secret_vault import SecretVault
from .audit_service import AuditService
from .base_service import SessionManagedService
from .permission_grant_service import PermissionGrantService

_REAUTHORIZE_STATUSES = (CredentialStatus.EXPIRED.value, CredentialStatus.ERROR.value)


class CredentialBrokerService(SessionManagedService):
    """Authorizes agent requests for secrets and decrypts them through the vault."""

    def __init__(
        self,
        session: Optional[Session],
        vault: SecretVault,
        grants: Optional[PermissionGrantService] = None,
        audit: Optional[AuditService] = None,
        config: Optional[AppConfig] = None,
    ):
        super().__init__(session=session)
        self.vault = vault
        self.config = config or get_config()
        self.audit = audit or AuditService(self.session, self.config)
        self.grants = grants or PermissionGrantService(
            self.session, audit=self.audit, config=self.config
        )

    def _deny(
        self,
        error_cls: Type[BaseError],
        agent_id: str,
        credential_id: str,
        required_scope: str,
        reason: str,
        credential: Optional[Credential] = None,
        grant_id: Optional[str] = None,
    ) -> NoReturn:
        self.audit.record(
            AuditEventType.DECRYPT_DENIED,
            AuditOutcome.DENIED,
            actor=agent_id,
            agent_id=agent_id,
            credential_id=credential_id,
            owner_user_id=credential.owner_user_id if credential else None,
            grant_id=grant_id,
            scope=required_scope,
            reason=reason,
        )
        raise error_cls(
            f"Secret request denied: {reason}",
            agent_id=agent_id,
            credential_id=credential_id,
            scope=required_scope,
            reason=reason,
        )

    def _secret_handle(self, credential: Credential) -> Optional[str]:
        if credential.auth_type == AuthType.API_KEY.value:
            return credential.api_key_handle
        return credential.access_token_handle

    def _decrypt_within_deadline(self, handle: Optional[str]) -> str:
        if handle is None:
            raise HandleNotFoundError("Credential has no secret handle")
        started = time.monotonic()
        plaintext = self.vault.decrypt(handle)
        elapsed = time.monotonic() - started
        if elapsed > self.config.broker.request_timeout_seconds:
            raise VaultUnavailableError(
                "Vault decrypt exceeded the request deadline",
                elapsed_seconds=round(elapsed, 3),
            )
        return plaintext

    @operation()
    @with_caller
    @handle_database_errors("request_secret")
    def request_secret(
        self,
        agent_id: str,
        credential_id: str,
        required_scope: str,
        caller_context: Optional[CallerContext] = None,
    ) -> str:
        """
        Return the plaintext secret behind a credential for one agent operation.

        The caller must use the value only for the current operation and never
        persist or log it.

        Raises:
            CredentialNotFoundError: If the credential does not exist
            CredentialRevokedError: If the owner disconnected it
            NotAuthorizedError: If the agent holds no usable grant for the scope
            CredentialNeedsReauthorizationError: If the credential is expired or
                in error, or its vault handle no longer resolves
            VaultUnavailableError: If the vault fails or exceeds the deadline
        """
        if not agent_id or not required_scope:
            raise validation_failed("agent_id", "agent_id and required_scope are required")

        # 1. Credential
        credential = self.session.get(Credential, credential_id)
        if credential is None:
            self._deny(
                CredentialNotFoundError,
                agent_id,
                credential_id,
                required_scope,
                "credential_not_found",
            )
        if credential.status == CredentialStatus.REVOKED.value:
            self._deny(
                CredentialRevokedError,
                agent_id,
                credential_id,
                required_scope,
                "credential_revoked",
                credential=credential,
            )

        # 2. Grant
        decision = self.grants.authorize(agent_id, credential_id, required_scope)
        needs_reauthorization = credential.status in _REAUTHORIZE_STATUSES
        if not decision and not (
            decision.reason == DenialReason.CREDENTIAL_NOT_ACTIVE and needs_reauthorization
        ):
            self._deny(
                NotAuthorizedError,
                agent_id,
                credential_id,
                required_scope,
                decision.reason.value,
                credential=credential,
                grant_id=decision.grant_id,
            )

        # 3. Credential health
        if needs_reauthorization:
            self._deny(
                CredentialNeedsReauthorizationError,
                agent_id,
                credential_id,
                required_scope,
                f"credential_{credential.status}",
                credential=credential,
                grant_id=decision.grant_id,
            )

        # 4. Decrypt
        try:
            plaintext = self._decrypt_within_deadline(self._secret_handle(credential))
        except HandleNotFoundError as e:
            self.rollback()
            credential.status = CredentialStatus.ERROR.value
            credential.status_reason = "vault_handle_missing"
            self._record_failure(
                agent_id, credential, required_scope, decision.grant_id, "handle_not_found"
            )
            raise CredentialNeedsReauthorizationError(
                "Credential secret is missing from the vault",
                agent_id=agent_id,
                credential_id=credential_id,
                cause=e,
            )
        except VaultUnavailableError:
            self.rollback()
            self._record_failure(
                agent_id, credential, required_scope, decision.grant_id, "vault_unavailable"
            )
            raise

        # 5. Usage, 6. audit, 7. commit before returning
        self.grants.record_use(decision.grant_id)
        self.audit.record(
            AuditEventType.DECRYPT_SUCCESS,
            AuditOutcome.SUCCESS,
            actor=agent_id,
            agent_id=agent_id,
            credential_id=credential_id,
            owner_user_id=credential.owner_user_id,
            grant_id=decision.grant_id,
            scope=required_scope,
            commit=False,
        )
        self.commit()

        self.logger.info(
            "Secret released to agent",
            extra={"agent_id": agent_id, "credential_id": credential_id, "scope": required_scope},
        )
        return plaintext

    def _record_failure(
        self,
        agent_id: str,
        credential: Credential,
        required_scope: str,
        grant_id: Optional[str],
        reason: str,
    ) -> None:
        self.audit.record(
            AuditEventType.DECRYPT_FAILURE,
            AuditOutcome.FAILURE,
            actor=agent_id,
            agent_id=agent_id,
            credential_id=credential.id,
            owner_user_id=credential.owner_user_id,
            grant_id=grant_id,
            scope=required_scope,
            reason=reason,
        )

    @contextmanager
    def secret_scope(
        self,
        agent_id: str,
        credential_id: str,
        required_scope: str,
        caller_context: Optional[CallerContext] = None,
    ) -> Generator[str, None, None]:
        """
        Yield a secret for the duration of a ``with`` block.

        Usage:
            with broker.secret_scope(agent_id, credential_id, "gmail.readonly") as token:
                client.get(url, headers={"Authorization": f"Bearer {token}"})
        """
        secret = self.request_secret(
            agent_id, credential_id, required_scope, caller_context=caller_context
        )
        try:
            yield secret
        finally:
            del secret
