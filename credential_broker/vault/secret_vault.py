"""
Secret vault: the only place secret values are ever stored.

Callers hand a plaintext to ``store`` and get back an opaque handle of the
form ``vault:<uuid>``. Handles are what the rest of the broker persists.
Decrypted values are never cached.

``DatabaseSecretVault`` keeps ciphertext in the ``vault_secrets`` table of the
broker database. On PostgreSQL encryption happens inside the database with
pgcrypto; on other dialects (SQLite in development and tests) it happens in
process with Fernet. Both use the configured vault key.
"""

import uuid
from abc import ABC, abstractmethod
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..constants import VAULT_HANDLE_PREFIX
from ..db.db_vault_models import VaultSecret
from ..exceptions import (
    ErrorCode,
    HandleNotFoundError,
    ValidationError,
    VaultUnavailableError,
    validation_failed,
)
from ..utils.logger import get_logger


def make_handle(secret_id: str) -> str:
    return f"{VAULT_HANDLE_PREFIX}{secret_id}"


def parse_handle(handle: str) -> str:
    """Return the secret id inside a handle, or raise HandleNotFoundError."""
    if not isinstance(handle, str) or not handle.startswith(VAULT_HANDLE_PREFIX):
        raise HandleNotFoundError("Malformed vault handle")
    secret_id = handle[len(VAULT_HANDLE_PREFIX):]
    try:
        uuid.UUID(secret_id)
    except ValueError:
        raise HandleNotFoundError("Malformed vault handle")
    return secret_id


def is_vault_handle(value: Optional[str]) -> bool:
    if value is None:
        return False
    try:
        parse_handle(value)
    except HandleNotFoundError:
        return False
    return True


class SecretVault(ABC):
    """Contract every vault backend implements."""

    @abstractmethod
    def store(self, plaintext: str, description: Optional[str] = None) -> str:
        """
        Encrypt and persist a secret.

        Returns:
            Opaque handle

        Raises:
            VaultUnavailableError: If the vault cannot be reached
        """

    @abstractmethod
    def decrypt(self, handle: str) -> str:
        """
        Resolve a handle to its plaintext.

        Raises:
            HandleNotFoundError: If the handle does not resolve
            VaultUnavailableError: If the vault cannot be reached or times out
        """

    @abstractmethod
    def revoke(self, handle: str) -> None:
        """Destroy a secret. Idempotent; unknown handles are ignored."""


class DatabaseSecretVault(SecretVault):
    """
    Vault backed by the broker's own database.

    The vault shares the caller's session, so secrets written during a unit of
    work commit or roll back together with the rows that reference them.
    """

    def __init__(
        self,
        session: Session,
        encryption_key: str,
        statement_timeout_ms: Optional[int] = None,
    ):
        if not encryption_key:
            raise ValidationError(
                "Vault encryption key is not configured",
                field="vault.encryption_key",
                error_code=ErrorCode.CONFIGURATION_ERROR,
            )
        self.session = session
        self.statement_timeout_ms = statement_timeout_ms
        self.logger = get_logger()
        self._encryption_key = encryption_key
        self._fernet: Optional[Fernet] = None
        if not self._uses_pgcrypto:
            try:
                self._fernet = Fernet(encryption_key.encode("ascii"))
            except (ValueError, TypeError) as e:
                raise ValidationError(
                    "Vault encryption key must be a Fernet key outside PostgreSQL",
                    field="vault.encryption_key",
                    error_code=ErrorCode.CONFIGURATION_ERROR,
                    cause=e,
                )

    @property
    def _uses_pgcrypto(self) -> bool:
        return self.session.bind.dialect.name == "postgresql"

    def _apply_timeout(self) -> None:
        if self._uses_pgcrypto and self.statement_timeout_ms:
            self.session.execute(
                text(f"SET LOCAL statement_timeout = {int(self.statement_timeout_ms)}")
            )

    def _encrypt(self, plaintext: str) -> bytes:
        if self._uses_pgcrypto:
            return self.session.execute(
                text("SELECT pgp_sym_encrypt(:data, :key)"),
                {"data": plaintext, "key": self._encryption_key},
            ).scalar()
        return self._fernet.encrypt(plaintext.encode("utf-8"))

    def _decrypt(self, ciphertext: bytes) -> str:
        if self._uses_pgcrypto:
            return self.session.execute(
                text("SELECT pgp_sym_decrypt(:data, :key)"),
                {"data": ciphertext, "key": self._encryption_key},
            ).scalar()
        try:
            return self._fernet.decrypt(ciphertext).decode("utf-8")
        except InvalidToken as e:
            raise VaultUnavailableError(
                "Vault ciphertext could not be decrypted with the configured key", cause=e
            )

    def store(self, plaintext: str, description: Optional[str] = None) -> str:
        if not isinstance(plaintext, str) or not plaintext:
            raise validation_failed("plaintext", "secret must be a non-empty string")

        secret_id = str(uuid.uuid4())
        try:
            self._apply_timeout()
            self.session.add(
                VaultSecret(
                    id=secret_id,
                    ciphertext=self._encrypt(plaintext),
                    description=description,
                )
            )
            self.session.flush()
        except SQLAlchemyError as e:
            raise VaultUnavailableError("Failed to store secret", cause=e)

        self.logger.debug("Secret stored", extra={"secret_id": secret_id})
        return make_handle(secret_id)

    def decrypt(self, handle: str) -> str:
        secret_id = parse_handle(handle)
        try:
            self._apply_timeout()
            secret = self.session.get(VaultSecret, secret_id, populate_existing=True)
            if secret is None:
                raise HandleNotFoundError(secret_id=secret_id)
            return self._decrypt(secret.ciphertext)
        except SQLAlchemyError as e:
            raise VaultUnavailableError("Failed to decrypt secret", cause=e, secret_id=secret_id)

    def revoke(self, handle: str) -> None:
        try:
            secret_id = parse_handle(handle)
        except HandleNotFoundError:
            return
        try:
            deleted = (
                self.session.query(VaultSecret)
                .filter(VaultSecret.id == secret_id)
                .delete(synchronize_session="evaluate")
            )
            self.session.flush()
        except SQLAlchemyError as e:
            raise VaultUnavailableError("Failed to revoke secret", cause=e, secret_id=secret_id)

        if deleted:
            self.logger.debug("Secret revoked", extra={"secret_id": secret_id})
