"""Utility modules for the credential broker."""

from .logger import configure_logging, get_logger
from .pkce_utils import code_challenge_s256, generate_code_verifier, generate_state_token
from .retry_utils import calculate_exponential_backoff

__all__ = [
    "calculate_exponential_backoff",
    "code_challenge_s256",
    "configure_logging",
    "generate_code_verifier",
    "generate_state_token",
    "get_logger",
]
