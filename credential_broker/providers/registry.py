"""
Registry of the providers the broker can connect to.

Descriptors are immutable once registered; the registry is built once at
start-up and shared read-only by the services.
"""

import threading
from typing import Dict, Iterable, List, Optional

from ..config import AppConfig
from ..exceptions import ErrorCode, UnknownProviderError, ValidationError
from ..schemas.provider_schemas import (
    ApiKeyProviderDescriptor,
    OAuthProviderDescriptor,
    ProviderDescriptor,
    provider_descriptor_adapter,
)
from ..utils.logger import get_logger
from .token_client import ProviderTokenClient


class ProviderRegistry:
    """Lookup of provider descriptors by name."""

    def __init__(self, descriptors: Optional[Iterable[ProviderDescriptor]] = None):
        self._providers: Dict[str, ProviderDescriptor] = {}
        self._lock = threading.Lock()
        self.logger = get_logger()
        for descriptor in descriptors or []:
            self.register(descriptor)

    @classmethod
    def from_config(cls, config: AppConfig) -> "ProviderRegistry":
        return cls(config.providers)

    def register(self, descriptor: ProviderDescriptor) -> ProviderDescriptor:
        """
        Add or replace a provider descriptor.

        Plain dictionaries are validated into the matching descriptor type.
        """
        if isinstance(descriptor, dict):
            descriptor = provider_descriptor_adapter.validate_python(descriptor)
        with self._lock:
            self._providers[descriptor.name] = descriptor
        self.logger.info(
            "Provider registered", extra={"provider": descriptor.name, "kind": descriptor.kind}
        )
        return descriptor

    def get(self, name: str) -> ProviderDescriptor:
        descriptor = self._providers.get((name or "").strip().lower())
        if descriptor is None:
            raise UnknownProviderError(name)
        return descriptor

    def get_oauth(self, name: str) -> OAuthProviderDescriptor:
        descriptor = self.get(name)
        if not isinstance(descriptor, OAuthProviderDescriptor):
            raise ValidationError(
                f"Provider {descriptor.name} does not use OAuth",
                field="provider",
                error_code=ErrorCode.INVALID_FORMAT,
            )
        return descriptor

    def get_api_key(self, name: str) -> ApiKeyProviderDescriptor:
        descriptor = self.get(name)
        if not isinstance(descriptor, ApiKeyProviderDescriptor):
            raise ValidationError(
                f"Provider {descriptor.name} does not accept API keys",
                field="provider",
                error_code=ErrorCode.INVALID_FORMAT,
            )
        return descriptor

    def names(self) -> List[str]:
        return sorted(self._providers)

    def __contains__(self, name: str) -> bool:
        return (name or "").strip().lower() in self._providers

    def resolve_discovery(
        self, name: str, token_client: ProviderTokenClient
    ) -> OAuthProviderDescriptor:
        """
        Fill endpoints a descriptor leaves blank from its discovery document.

        Explicitly configured values always win over discovered ones.
        """
        descriptor = self.get_oauth(name)
        if not descriptor.discovery_url:
            return descriptor

        document = token_client.fetch_discovery(descriptor.discovery_url)
        updates = {
            field: getattr(document, field)
            for field in (
                "authorization_endpoint",
                "token_endpoint",
                "userinfo_endpoint",
                "scopes_supported",
            )
            if getattr(descriptor, field) is None and getattr(document, field) is not None
        }
        if not updates:
            return descriptor

        resolved = descriptor.model_copy(update=updates)
        with self._lock:
            self._providers[resolved.name] = resolved
        self.logger.info(
            "Provider endpoints discovered",
            extra={"provider": resolved.name, "fields": sorted(updates)},
        )
        return resolved
