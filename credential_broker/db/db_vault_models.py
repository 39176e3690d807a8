"""
Vault secret model backing the database vault.

Only ciphertext is stored.
"""

from sqlalchemy import Column, String

from .db_base import EncryptedBinary, UTCDateTime, utc_now
from .db_config import Base


class VaultSecret(Base):
    """Encrypted secret addressed by a vault handle."""

    __tablename__ = "vault_secrets"

    id = Column(String(36), primary_key=True)
    ciphertext = Column(EncryptedBinary, nullable=False)
    description = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
