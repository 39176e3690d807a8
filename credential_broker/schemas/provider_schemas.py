"""
Pydantic schemas for provider descriptors.

A provider descriptor tells the broker how to connect to an external service.
Descriptors are a tagged union discriminated by ``kind``: OAuth 2.0 providers
carry endpoints and client configuration, API-key providers carry the scopes
a pasted key may be granted for.
"""

import re
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, TypeAdapter, field_validator

from ..constants import AuthType, TokenEndpointAuthMethod

_PROVIDER_NAME_PATTERN = re.compile(r"^[a-z0-9_.-]+$")


class BaseProviderDescriptor(BaseModel):
    """Fields shared by every provider kind."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        frozen=True,
        extra="forbid",
    )

    name: str = Field(..., min_length=1, max_length=100, description="Registry key, e.g. 'gmail'")
    display_name: Optional[str] = Field(None, description="Human readable name")

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v):
        """Provider names are stored lowercase."""
        if isinstance(v, str):
            v = v.strip().lower()
            if not _PROVIDER_NAME_PATTERN.match(v):
                raise ValueError(
                    "Provider name can only contain letters, numbers, underscore, hyphen, and dot"
                )
        return v


class OAuthProviderDescriptor(BaseProviderDescriptor):
    """OAuth 2.0 authorization-code provider with PKCE."""

    kind: Literal["oauth2"] = AuthType.OAUTH2.value
    authorization_endpoint: Optional[str] = Field(None, description="Authorization URL")
    token_endpoint: Optional[str] = Field(None, description="Token URL")
    userinfo_endpoint: Optional[str] = Field(
        None, description="Endpoint returning the connected account profile"
    )
    account_id_field: str = Field(
        default="email", description="Field of the userinfo response used as external account id"
    )
    discovery_url: Optional[str] = Field(
        None, description="OpenID discovery document used to fill missing endpoints"
    )
    client_id: str = Field(..., min_length=1)
    client_secret: Optional[SecretStr] = Field(None, description="Confidential client secret")
    redirect_uri: Optional[str] = Field(
        None, description="Callback URL; falls back to oauth.default_redirect_uri"
    )
    token_endpoint_auth_method: TokenEndpointAuthMethod = TokenEndpointAuthMethod.CLIENT_SECRET_POST
    default_scopes: List[str] = Field(default_factory=list)
    scopes_supported: Optional[List[str]] = Field(
        None, description="When set, requested scopes must be a subset"
    )
    scope_separator: str = Field(default=" ", description="Separator in the scope parameter")
    scope_prefix: Optional[str] = Field(
        None, description="Prefix expanded onto short scope names, e.g. Google scope URLs"
    )
    extra_authorize_params: Dict[str, str] = Field(
        default_factory=dict, description="Extra query parameters, e.g. access_type=offline"
    )

    @property
    def has_endpoints(self) -> bool:
        return bool(self.authorization_endpoint and self.token_endpoint)

    def expand_scope(self, scope: str) -> str:
        """Turn a short scope name into the form the provider expects."""
        if self.scope_prefix and "://" not in scope:
            return f"{self.scope_prefix}{scope}"
        return scope

    def normalize_scope(self, scope: str) -> str:
        """Turn a provider scope back into the short name stored on credentials."""
        if self.scope_prefix and scope.startswith(self.scope_prefix):
            return scope[len(self.scope_prefix):]
        return scope

    def format_scopes(self, scopes: List[str]) -> str:
        return self.scope_separator.join(self.expand_scope(s) for s in scopes)

    def parse_scopes(self, raw: Optional[str]) -> List[str]:
        """Parse a scope string returned by the provider into short names."""
        if not raw:
            return []
        parts = re.split(r"[\s,]+", raw.strip())
        scopes: List[str] = []
        for part in parts:
            if part:
                scope = self.normalize_scope(part)
                if scope not in scopes:
                    scopes.append(scope)
        return scopes


class ApiKeyProviderDescriptor(BaseProviderDescriptor):
    """Provider whose credential is a user-supplied API key."""

    kind: Literal["api_key"] = AuthType.API_KEY.value
    scopes: List[str] = Field(..., min_length=1, description="Scopes an API key can be granted for")
    key_pattern: Optional[str] = Field(None, description="Regex the key must fully match")

    @field_validator("key_pattern")
    @classmethod
    def validate_key_pattern(cls, v):
        if v is not None:
            re.compile(v)
        return v

    def accepts_key(self, api_key: str) -> bool:
        if self.key_pattern is None:
            return True
        return re.fullmatch(self.key_pattern, api_key) is not None


ProviderDescriptor = Annotated[
    Union[OAuthProviderDescriptor, ApiKeyProviderDescriptor],
    Field(discriminator="kind"),
]

provider_descriptor_adapter = TypeAdapter(ProviderDescriptor)
provider_list_adapter = TypeAdapter(List[ProviderDescriptor])


class DiscoveryDocument(BaseModel):
    """Subset of an OpenID Connect discovery document."""

    model_config = ConfigDict(extra="ignore")

    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    userinfo_endpoint: Optional[str] = None
    scopes_supported: Optional[List[str]] = None


class TokenResponse(BaseModel):
    """Successful response from a provider token endpoint."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1, repr=False)
    token_type: str = Field(default="Bearer")
    refresh_token: Optional[str] = Field(None, repr=False)
    expires_in: Optional[int] = Field(None, ge=0)
    scope: Optional[str] = None
