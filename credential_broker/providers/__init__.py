"""Provider descriptors and the HTTP client for their token endpoints."""

from .registry import ProviderRegistry
from .token_client import ProviderTokenClient

__all__ = ["ProviderRegistry", "ProviderTokenClient"]
