"""
PKCE (RFC 7636) and state token helpers.
"""

import base64
import hashlib
import secrets

from ..constants import Limits
from ..exceptions import validation_failed


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier(num_bytes: int = 64) -> str:
    """
    Generate a high-entropy PKCE code verifier.

    Args:
        num_bytes: Random bytes to draw; 32 bytes yields the 43 character minimum

    Returns:
        base64url string without padding
    """
    if not Limits.MIN_PKCE_VERIFIER_BYTES <= num_bytes <= Limits.MAX_PKCE_VERIFIER_BYTES:
        raise validation_failed(
            "verifier_bytes",
            f"must be between {Limits.MIN_PKCE_VERIFIER_BYTES} and {Limits.MAX_PKCE_VERIFIER_BYTES}",
        )
    return _b64url(secrets.token_bytes(num_bytes))


def code_challenge_s256(code_verifier: str) -> str:
    """S256 code challenge: base64url(sha256(verifier)) without padding."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_state_token() -> str:
    """Random, unguessable OAuth state token."""
    return secrets.token_urlsafe(Limits.STATE_TOKEN_BYTES)
