"""Secret vault backends."""

from .secret_vault import DatabaseSecretVault, SecretVault, is_vault_handle, make_handle, parse_handle

__all__ = ["DatabaseSecretVault", "SecretVault", "is_vault_handle", "make_handle", "parse_handle"]
