"""
Background refresh of OAuth access tokens that are about to expire.

Each credential is refreshed by at most one worker at a time. A worker claims
a credential with a conditional update on its lease columns, re-checks that the
credential still needs a refresh, and releases the lease when done. Claims
expire after ``refresh.claim_ttl_seconds`` so a crashed worker cannot block a
credential forever.

Failure handling:
- invalid or revoked refresh token: status ``error``, never retried
- transient failure (network, 5xx, 429, vault unavailable): retried with
  exponential backoff until ``refresh.max_consecutive_failures``, then ``error``
"""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import AppConfig, get_config
from ..constants import (
    SYSTEM_ACTOR,
    AuditEventType,
    AuditOutcome,
    AuthType,
    CredentialStatus,
    RefreshOutcomeStatus,
)
from ..context.operation_context import operation
from ..db.db_base import as_utc, utc_now
from ..db.db_credential_models import Credential
from ..exceptions import (
    HandleNotFoundError,
    ProviderTokenError,
    UnknownProviderError,
    ValidationError,
    VaultUnavailableError,
)
from ..providers.registry import ProviderRegistry
from ..providers.token_client import ProviderTokenClient
from ..schemas.provider_schemas import OAuthProviderDescriptor, TokenResponse
from ..schemas.refresh_schemas import RefreshCycleResult, RefreshOutcome
from ..utils.logger import get_logger
from ..utils.retry_utils import calculate_exponential_backoff
from ..vault.secret_vault import DatabaseSecretVault, SecretVault
from .audit_service import AuditService
from .credential_service import CredentialService

SessionFactory = Callable[[], Session]
VaultFactory = Callable[[Session], SecretVault]


class TokenRefreshService:
    """
    Finds credentials nearing expiry and refreshes them in a bounded worker pool.

    Every refresh runs in its own session, so the service itself holds no
    database state and can be shared by the pool's threads.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        token_client: ProviderTokenClient,
        session_factory: Optional[SessionFactory] = None,
        vault_factory: Optional[VaultFactory] = None,
        config: Optional[AppConfig] = None,
        worker_id: Optional[str] = None,
    ):
        self.registry = registry
        self.token_client = token_client
        self.config = config or get_config()
        self.session_factory = session_factory or self._default_session_factory
        self.vault_factory = vault_factory or self._default_vault_factory
        self.worker_id = worker_id or f"refresh-{uuid.uuid4().hex[:12]}"
        self.logger = get_logger()
        self._provider_slots: Dict[str, threading.BoundedSemaphore] = {}
        self._slots_lock = threading.Lock()

    @staticmethod
    def _default_session_factory() -> Session:
        from ..db.db_config import get_db_manager

        return get_db_manager().new_session()

    def _default_vault_factory(self, session: Session) -> SecretVault:
        return DatabaseSecretVault(
            session,
            self.config.vault.encryption_key,
            statement_timeout_ms=self.config.vault.statement_timeout_ms,
        )

    @contextmanager
    def _provider_slot(self, provider: str):
        """Cap concurrent token endpoint calls per provider."""
        with self._slots_lock:
            slot = self._provider_slots.get(provider)
            if slot is None:
                slot = threading.BoundedSemaphore(self.config.refresh.per_provider_concurrency)
                self._provider_slots[provider] = slot
        with slot:
            yield

    # ==================== CANDIDATES ====================

    def _is_due(self, credential: Credential, now: datetime) -> bool:
        if credential.status != CredentialStatus.ACTIVE.value:
            return False
        if credential.auth_type != AuthType.OAUTH2.value or not credential.refresh_token_handle:
            return False
        if credential.expires_at is None:
            return False
        window = timedelta(seconds=self.config.refresh.refresh_window_seconds)
        if as_utc(credential.expires_at) - now >= window:
            return False
        next_attempt = as_utc(credential.next_refresh_attempt_at)
        return next_attempt is None or next_attempt <= now

    def find_refresh_candidates(self, now: Optional[datetime] = None) -> List[str]:
        """
        Ids of active OAuth credentials that expire within the refresh window
        and have no retry scheduled in the future.
        """
        now = as_utc(now) or utc_now()
        horizon = now + timedelta(seconds=self.config.refresh.refresh_window_seconds)
        session = self.session_factory()
        try:
            rows = (
                session.query(Credential.id)
                .filter(
                    Credential.status == CredentialStatus.ACTIVE.value,
                    Credential.auth_type == AuthType.OAUTH2.value,
                    Credential.refresh_token_handle.isnot(None),
                    Credential.expires_at.isnot(None),
                    Credential.expires_at < horizon,
                    or_(
                        Credential.next_refresh_attempt_at.is_(None),
                        Credential.next_refresh_attempt_at <= now,
                    ),
                )
                .order_by(Credential.expires_at)
                .limit(self.config.refresh.batch_size)
                .all()
            )
        finally:
            session.close()
        return [row.id for row in rows]

    # ==================== CLAIMS ====================

    def _claim(self, session: Session, credential_id: str) -> bool:
        now = utc_now()
        try:
            claimed = session.execute(
                update(Credential)
                .where(
                    Credential.id == credential_id,
                    or_(
                        Credential.refresh_claimed_by.is_(None),
                        Credential.refresh_claim_expires_at < now,
                    ),
                )
                .values(
                    refresh_claimed_by=self.worker_id,
                    refresh_claim_expires_at=now
                    + timedelta(seconds=self.config.refresh.claim_ttl_seconds),
                )
            ).rowcount
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            self.logger.warning(
                "Could not claim credential for refresh",
                extra={"credential_id": credential_id, "error_type": type(e).__name__},
            )
            return False
        return claimed == 1

    def _holds_claim(self, session: Session, credential_id: str) -> bool:
        """Lock the row for the rest of the transaction if this worker still holds it."""
        held = session.execute(
            update(Credential)
            .where(
                Credential.id == credential_id,
                Credential.refresh_claimed_by == self.worker_id,
            )
            .values(refresh_claimed_by=self.worker_id)
            .execution_options(synchronize_session=False)
        ).rowcount
        return held == 1

    def _release(self, session: Session, credential_id: str) -> None:
        try:
            session.rollback()
            session.execute(
                update(Credential)
                .where(
                    Credential.id == credential_id,
                    Credential.refresh_claimed_by == self.worker_id,
                )
                .values(refresh_claimed_by=None, refresh_claim_expires_at=None)
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            # The lease expires on its own after claim_ttl_seconds
            self.logger.warning(
                "Could not release refresh claim",
                extra={"credential_id": credential_id, "error_type": type(e).__name__},
            )

    # ==================== REFRESH ====================

    @operation()
    def refresh_credential(
        self, credential_id: str, now: Optional[datetime] = None
    ) -> RefreshOutcome:
        """
        Refresh one credential if it is still due and no other worker holds it.

        Returns:
            RefreshOutcome describing whether the credential was refreshed,
            skipped, scheduled for retry, or moved to ``error``
        """
        now = as_utc(now) or utc_now()
        session = self.session_factory()
        try:
            if not self._claim(session, credential_id):
                self.logger.debug(
                    "Credential claimed by another worker", extra={"credential_id": credential_id}
                )
                return RefreshOutcome(
                    credential_id=credential_id,
                    status=RefreshOutcomeStatus.SKIPPED,
                    reason="claimed_elsewhere",
                )
            try:
                return self._refresh_claimed(session, credential_id, now)
            finally:
                self._release(session, credential_id)
        finally:
            session.close()

    def _refresh_claimed(
        self, session: Session, credential_id: str, now: datetime
    ) -> RefreshOutcome:
        vault = self.vault_factory(session)
        audit = AuditService(session, self.config)
        credentials = CredentialService(
            session, vault, registry=self.registry, audit=audit, config=self.config
        )

        credential = session.get(Credential, credential_id, populate_existing=True)
        if credential is None or not self._is_due(credential, now):
            return RefreshOutcome(
                credential_id=credential_id,
                status=RefreshOutcomeStatus.SKIPPED,
                reason="no_longer_due",
            )

        try:
            descriptor = self.registry.get_oauth(credential.provider)
        except (UnknownProviderError, ValidationError):
            return self._record_failure(
                session, credentials, audit, credential, "provider_not_registered", True, now
            )

        try:
            refresh_token = vault.decrypt(credential.refresh_token_handle)
        except HandleNotFoundError:
            return self._record_failure(
                session, credentials, audit, credential, "refresh_token_missing", True, now
            )
        except VaultUnavailableError:
            session.rollback()
            return self._record_failure(
                session, credentials, audit, credential, "vault_unavailable", False, now
            )

        try:
            with self._provider_slot(descriptor.name):
                token = self.token_client.refresh(descriptor, refresh_token)
        except ProviderTokenError as e:
            if e.is_invalid_grant:
                return self._record_failure(
                    session, credentials, audit, credential, "invalid_grant", True, now
                )
            return self._record_failure(
                session,
                credentials,
                audit,
                credential,
                e.provider_error or "provider_unavailable",
                False,
                now,
            )

        session.refresh(credential)
        if credential.status != CredentialStatus.ACTIVE.value:
            # Disconnected or failed while the provider call was in flight
            return RefreshOutcome(
                credential_id=credential_id,
                status=RefreshOutcomeStatus.SKIPPED,
                reason="credential_changed",
            )

        return self._apply_tokens(session, credentials, audit, credential, descriptor, token, now)

    def _apply_tokens(
        self,
        session: Session,
        credentials: CredentialService,
        audit: AuditService,
        credential: Credential,
        descriptor: OAuthProviderDescriptor,
        token: TokenResponse,
        now: datetime,
    ) -> RefreshOutcome:
        expires_at = None
        if token.expires_in is not None:
            expires_at = utc_now() + timedelta(seconds=token.expires_in)
        scopes = descriptor.parse_scopes(token.scope) if token.scope else None

        try:
            access_handle = credentials.vault.store(
                token.access_token, description=f"{descriptor.name} access token"
            )
            refresh_handle = None
            if token.refresh_token:
                refresh_handle = credentials.vault.store(
                    token.refresh_token, description=f"{descriptor.name} refresh token"
                )
            if not self._holds_claim(session, credential.id):
                session.rollback()
                self.logger.warning(
                    "Refresh claim lost before rotation, discarding tokens",
                    extra={"credential_id": credential.id, "provider": descriptor.name},
                )
                return RefreshOutcome(
                    credential_id=credential.id,
                    status=RefreshOutcomeStatus.SKIPPED,
                    reason="claim_lost",
                )
            old_handles = credentials.rotate_tokens(
                credential, access_handle, refresh_handle, expires_at, scopes
            )
            audit.record(
                AuditEventType.REFRESH_SUCCESS,
                AuditOutcome.SUCCESS,
                actor=SYSTEM_ACTOR,
                credential_id=credential.id,
                owner_user_id=credential.owner_user_id,
                details={
                    "provider": descriptor.name,
                    "expires_at": expires_at,
                    "refresh_rotated": refresh_handle is not None,
                },
                commit=False,
            )
            session.commit()
        except VaultUnavailableError:
            session.rollback()
            return self._record_failure(
                session, credentials, audit, credential, "vault_unavailable", False, now
            )

        credentials.release_handles(old_handles)
        self.logger.info(
            "Credential refreshed",
            extra={
                "credential_id": credential.id,
                "provider": descriptor.name,
                "refresh_rotated": refresh_handle is not None,
            },
        )
        return RefreshOutcome(credential_id=credential.id, status=RefreshOutcomeStatus.REFRESHED)

    def _record_failure(
        self,
        session: Session,
        credentials: CredentialService,
        audit: AuditService,
        credential: Credential,
        reason: str,
        fatal: bool,
        now: datetime,
    ) -> RefreshOutcome:
        cfg = self.config.refresh
        credential.refresh_failure_count = (credential.refresh_failure_count or 0) + 1
        failures = credential.refresh_failure_count
        if not fatal and failures >= cfg.max_consecutive_failures:
            fatal = True
            reason = f"max_failures_exceeded:{reason}"

        next_attempt_at = None
        if fatal:
            credentials.mark_status(credential, CredentialStatus.ERROR, reason)
            credential.next_refresh_attempt_at = None
            status, outcome = RefreshOutcomeStatus.FAILED, AuditOutcome.FAILURE
        else:
            delay = calculate_exponential_backoff(
                failures - 1, base_delay=cfg.retry_backoff_base, max_delay=cfg.retry_backoff_max
            )
            next_attempt_at = now + timedelta(seconds=delay)
            credential.next_refresh_attempt_at = next_attempt_at
            status, outcome = RefreshOutcomeStatus.RETRY_SCHEDULED, AuditOutcome.RETRY_SCHEDULED

        audit.record(
            AuditEventType.REFRESH_FAILURE,
            outcome,
            actor=SYSTEM_ACTOR,
            credential_id=credential.id,
            owner_user_id=credential.owner_user_id,
            reason=reason,
            details={
                "provider": credential.provider,
                "failure_count": failures,
                "next_attempt_at": next_attempt_at,
            },
            commit=False,
        )
        session.commit()

        self.logger.warning(
            "Credential refresh failed",
            extra={
                "credential_id": credential.id,
                "reason": reason,
                "failure_count": failures,
                "next_attempt_at": next_attempt_at,
            },
        )
        return RefreshOutcome(
            credential_id=credential.id,
            status=status,
            reason=reason,
            next_attempt_at=next_attempt_at,
        )

    # ==================== CYCLES ====================

    def _refresh_safely(self, credential_id: str, now: datetime) -> RefreshOutcome:
        try:
            return self.refresh_credential(credential_id, now=now)
        except Exception as e:
            self.logger.exception(
                "Unexpected error refreshing credential",
                extra={"credential_id": credential_id, "error_type": type(e).__name__},
            )
            return RefreshOutcome(
                credential_id=credential_id,
                status=RefreshOutcomeStatus.FAILED,
                reason="unexpected_error",
            )

    @operation()
    def run_cycle(self, now: Optional[datetime] = None) -> RefreshCycleResult:
        """Refresh every current candidate in the bounded worker pool."""
        now = as_utc(now) or utc_now()
        result = RefreshCycleResult(started_at=utc_now())

        candidate_ids = self.find_refresh_candidates(now)
        result.candidates = len(candidate_ids)
        if candidate_ids:
            with ThreadPoolExecutor(
                max_workers=self.config.refresh.max_workers, thread_name_prefix="token-refresh"
            ) as pool:
                futures = [pool.submit(self._refresh_safely, cid, now) for cid in candidate_ids]
                for future in as_completed(futures):
                    result.outcomes.append(future.result())

        result.finished_at = utc_now()
        self.logger.info(
            "Refresh cycle finished",
            extra={
                "candidates": result.candidates,
                "refreshed": result.refreshed,
                "skipped": result.skipped,
                "retry_scheduled": result.retry_scheduled,
                "failed": result.failed,
            },
        )
        return result

    def run_forever(self, stop_event: threading.Event) -> None:
        """Run refresh cycles every ``refresh.interval_seconds`` until stop_event is set."""
        self.logger.info(
            "Token refresh worker started",
            extra={
                "worker_id": self.worker_id,
                "interval_seconds": self.config.refresh.interval_seconds,
            },
        )
        while not stop_event.is_set():
            try:
                self.run_cycle()
            except SQLAlchemyError as e:
                self.logger.exception(
                    "Refresh cycle aborted", extra={"error_type": type(e).__name__}
                )
            stop_event.wait(self.config.refresh.interval_seconds)
        self.logger.info("Token refresh worker stopped", extra={"worker_id": self.worker_id})
