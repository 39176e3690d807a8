"""
OAuth 2.0 authorization-code flow engine with PKCE (S256).

begin_flow records a single-use state with its code verifier and returns the
provider authorization URL. complete_flow validates the state, exchanges the
code, stores the tokens in the vault and creates or updates the credential.
The state is consumed by a conditional update in the same transaction as the
credential write, so a failed write leaves the flow retryable and two racing
callbacks cannot both succeed.
"""

from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import urlencode

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import AppConfig, get_config
from ..constants import AuditEventType, AuditOutcome, FlowStatus
from ..context.operation_context import operation
from ..context.request_context import CallerContext, with_caller
from ..context.service_decorators import handle_database_errors
from ..db.db_base import as_utc, utc_now
from ..db.db_oauth_models import OAuthFlowState
from ..exceptions import (
    ErrorCode,
    InvalidOrExpiredStateError,
    ProviderTokenError,
    ScopeNotGrantedError,
    TokenExchangeFailedError,
    ValidationError,
    validation_failed,
)
from ..providers.registry import ProviderRegistry
from ..providers.token_client import ProviderTokenClient
from ..schemas.credential_schemas import CredentialRead
from ..schemas.oauth_schemas import FlowStart
from ..schemas.provider_schemas import OAuthProviderDescriptor, TokenResponse
from ..utils.pkce_utils import code_challenge_s256, generate_code_verifier, generate_state_token
from ..vault.secret_vault import SecretVault
from .audit_service import AuditService
from .base_service import SessionManagedService
from .credential_service import CredentialService


class OAuthFlowService(SessionManagedService):
    """Begins and completes OAuth connections."""

    def __init__(
        self,
        session: Optional[Session],
        vault: SecretVault,
        registry: ProviderRegistry,
        token_client: ProviderTokenClient,
        audit: Optional[AuditService] = None,
        config: Optional[AppConfig] = None,
    ):
        super().__init__(session=session)
        self.vault = vault
        self.registry = registry
        self.token_client = token_client
        self.config = config or get_config()
        self.audit = audit or AuditService(self.session, self.config)
        self.credentials = CredentialService(
            self.session, vault, registry=registry, audit=self.audit, config=self.config
        )

    def _provider(self, name: str) -> OAuthProviderDescriptor:
        descriptor = self.registry.get_oauth(name)
        if not descriptor.has_endpoints and descriptor.discovery_url:
            descriptor = self.registry.resolve_discovery(descriptor.name, self.token_client)
        if not descriptor.has_endpoints:
            raise ValidationError(
                f"Provider {descriptor.name} has no authorization or token endpoint",
                field="provider",
                error_code=ErrorCode.CONFIGURATION_ERROR,
            )
        return descriptor

    def _redirect_uri(self, descriptor: OAuthProviderDescriptor) -> str:
        redirect_uri = descriptor.redirect_uri or self.config.oauth.default_redirect_uri
        if not redirect_uri:
            raise ValidationError(
                f"No redirect URI configured for provider {descriptor.name}",
                field="redirect_uri",
                error_code=ErrorCode.CONFIGURATION_ERROR,
            )
        return redirect_uri

    # ==================== BEGIN ====================

    @operation()
    @handle_database_errors("begin_flow")
    def begin_flow(
        self,
        provider: str,
        user_id: str,
        requested_scopes: Optional[List[str]] = None,
        agent_id: Optional[str] = None,
    ) -> FlowStart:
        """
        Start an authorization flow for a user.

        Args:
            provider: Registered OAuth provider name
            user_id: User who will own the resulting credential
            requested_scopes: Short scope names; defaults to the provider's default scopes
            agent_id: Agent the user intends to grant afterwards (informational only)

        Raises:
            UnknownProviderError: If the provider is not registered
            ScopeNotGrantedError: If scopes fall outside the provider's supported scopes
        """
        if not user_id:
            raise validation_failed("user_id", "must be a non-empty string")
        descriptor = self._provider(provider)

        scopes = list(dict.fromkeys(requested_scopes or descriptor.default_scopes))
        if not scopes:
            raise ScopeNotGrantedError("No scopes requested", provider=descriptor.name)
        if descriptor.scopes_supported is not None:
            supported = {descriptor.normalize_scope(s) for s in descriptor.scopes_supported}
            unsupported = [s for s in scopes if descriptor.normalize_scope(s) not in supported]
            if unsupported:
                raise ScopeNotGrantedError(provider=descriptor.name, scopes=unsupported)

        redirect_uri = self._redirect_uri(descriptor)
        code_verifier = generate_code_verifier(self.config.oauth.verifier_bytes)
        state = generate_state_token()
        now = utc_now()
        expires_at = now + timedelta(seconds=self.config.oauth.flow_ttl_seconds)

        self.session.add(
            OAuthFlowState(
                state=state,
                code_verifier=code_verifier,
                provider=descriptor.name,
                user_id=user_id,
                agent_id=agent_id,
                requested_scopes=scopes,
                redirect_uri=redirect_uri,
                status=FlowStatus.AWAITING_CALLBACK.value,
                used=False,
                created_at=now,
                expires_at=expires_at,
            )
        )
        self.commit()

        params = {
            "response_type": "code",
            "client_id": descriptor.client_id,
            "redirect_uri": redirect_uri,
            "scope": descriptor.format_scopes(scopes),
            "state": state,
            "code_challenge": code_challenge_s256(code_verifier),
            "code_challenge_method": "S256",
            **descriptor.extra_authorize_params,
        }
        separator = "&" if "?" in descriptor.authorization_endpoint else "?"
        authorization_url = f"{descriptor.authorization_endpoint}{separator}{urlencode(params)}"

        self.logger.info(
            "OAuth flow started",
            extra={"provider": descriptor.name, "user_id": user_id, "scopes": scopes},
        )
        return FlowStart(authorization_url=authorization_url, state=state, expires_at=expires_at)

    # ==================== COMPLETE ====================

    def _load_pending(self, state: str) -> OAuthFlowState:
        flow = self.session.get(OAuthFlowState, state) if state else None
        if flow is None or flow.used or flow.status != FlowStatus.AWAITING_CALLBACK.value:
            raise InvalidOrExpiredStateError()

        if as_utc(flow.expires_at) <= utc_now():
            flow.status = FlowStatus.EXPIRED.value
            self.commit()
            raise InvalidOrExpiredStateError("OAuth state expired", provider=flow.provider)
        return flow

    def _mark_invalid(self, state: str) -> None:
        self.session.execute(
            update(OAuthFlowState)
            .where(OAuthFlowState.state == state, OAuthFlowState.used.is_(False))
            .values(status=FlowStatus.INVALID.value, used=True, completed_at=utc_now())
        )
        self.commit()

    def _granted_scopes(
        self, descriptor: OAuthProviderDescriptor, token: TokenResponse, requested: List[str]
    ) -> List[str]:
        # RFC 6749 section 5.1: an omitted scope means the requested scope was granted
        if token.scope is None:
            return list(requested)
        return descriptor.parse_scopes(token.scope)

    @operation()
    @with_caller
    @handle_database_errors("complete_flow")
    def complete_flow(
        self,
        code: str,
        state: str,
        caller_context: Optional[CallerContext] = None,
    ) -> CredentialRead:
        """
        Finish an authorization flow from the provider callback.

        Raises:
            InvalidOrExpiredStateError: If the state is unknown, used, or past its TTL
            TokenExchangeFailedError: If the provider rejects the code or cannot be reached
            VaultUnavailableError: If the tokens cannot be stored; the flow stays retryable
        """
        flow = self._load_pending(state)
        if not code:
            raise validation_failed("code", "authorization code is missing")

        descriptor = self._provider(flow.provider)
        try:
            token = self.token_client.exchange_code(
                descriptor, code, flow.code_verifier, flow.redirect_uri
            )
        except ProviderTokenError as e:
            if not e.transient:
                self._mark_invalid(flow.state)
            raise TokenExchangeFailedError(
                descriptor.name,
                provider_error=e.provider_error,
                provider_error_description=e.provider_error_description,
                cause=e,
            )

        scopes = self._granted_scopes(descriptor, token, flow.requested_scopes or [])
        external_account_id = self.token_client.fetch_account_id(descriptor, token.access_token)
        expires_at: Optional[datetime] = None
        if token.expires_in is not None:
            expires_at = utc_now() + timedelta(seconds=token.expires_in)

        try:
            access_handle = self.vault.store(
                token.access_token, description=f"{descriptor.name} access token"
            )
            refresh_handle = None
            if token.refresh_token:
                refresh_handle = self.vault.store(
                    token.refresh_token, description=f"{descriptor.name} refresh token"
                )

            credential, superseded, created = self.credentials.upsert_oauth_credential(
                user_id=flow.user_id,
                provider=descriptor.name,
                external_account_id=external_account_id,
                access_token_handle=access_handle,
                refresh_token_handle=refresh_handle,
                scopes=scopes,
                expires_at=expires_at,
            )

            consumed = self.session.execute(
                update(OAuthFlowState)
                .where(OAuthFlowState.state == flow.state, OAuthFlowState.used.is_(False))
                .values(used=True, status=FlowStatus.EXCHANGED.value, completed_at=utc_now())
            ).rowcount
            if consumed != 1:
                raise InvalidOrExpiredStateError(
                    "OAuth state consumed by a concurrent callback", provider=descriptor.name
                )

            self.audit.record(
                AuditEventType.CREDENTIAL_CONNECTED,
                AuditOutcome.SUCCESS,
                actor=flow.user_id,
                agent_id=flow.agent_id,
                credential_id=credential.id,
                owner_user_id=flow.user_id,
                details={
                    "provider": descriptor.name,
                    "scopes": scopes,
                    "reconnected": not created,
                },
                commit=False,
            )
            self.commit()
        except Exception:
            self.rollback()
            raise

        self.credentials.release_handles(superseded)

        self.logger.info(
            "OAuth flow completed",
            extra={
                "provider": descriptor.name,
                "credential_id": credential.id,
                "user_id": flow.user_id,
                "reconnected": not created,
            },
        )
        return CredentialRead.model_validate(credential)

    # ==================== MAINTENANCE ====================

    @operation()
    @handle_database_errors("purge_stale_flows")
    def purge_stale_flows(self, now: Optional[datetime] = None) -> int:
        """
        Delete flow states that can no longer complete.

        Pending states go once past their TTL plus the grace period; finished
        states go once older than the grace period.

        Returns:
            Number of rows deleted
        """
        now = as_utc(now) or utc_now()
        cutoff = now - timedelta(seconds=self.config.oauth.purge_grace_seconds)
        deleted = (
            self.session.query(OAuthFlowState)
            .filter(
                (OAuthFlowState.expires_at < cutoff)
                | ((OAuthFlowState.used.is_(True)) & (OAuthFlowState.created_at < cutoff))
            )
            .delete(synchronize_session=False)
        )
        self.commit()
        if deleted:
            self.logger.info("Purged stale OAuth flows", extra={"count": deleted})
        return deleted
