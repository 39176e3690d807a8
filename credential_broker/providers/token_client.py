"""
HTTP client for provider token, userinfo and discovery endpoints.

Response bodies carry tokens, so they are never logged; only the provider's
``error`` and ``error_description`` fields are surfaced.
"""

from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from ..constants import TokenEndpointAuthMethod
from ..exceptions import ErrorCode, ExternalServiceError, ProviderTokenError
from ..schemas.provider_schemas import DiscoveryDocument, OAuthProviderDescriptor, TokenResponse
from ..utils.logger import get_logger

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class ProviderTokenClient:
    """Talks RFC 6749 / RFC 7636 to provider token endpoints."""

    def __init__(self, http: Optional[requests.Session] = None, timeout: float = 10.0):
        self.http = http or requests.Session()
        self.timeout = timeout
        self.logger = get_logger()

    def exchange_code(
        self,
        provider: OAuthProviderDescriptor,
        code: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> TokenResponse:
        """Exchange an authorization code plus PKCE verifier for tokens."""
        return self._token_request(
            provider,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
        )

    def refresh(self, provider: OAuthProviderDescriptor, refresh_token: str) -> TokenResponse:
        """Trade a refresh token for a new access token."""
        return self._token_request(
            provider,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
        )

    def fetch_account_id(
        self, provider: OAuthProviderDescriptor, access_token: str
    ) -> Optional[str]:
        """
        Look up the connected account's identifier at the userinfo endpoint.

        Returns None when the provider has no userinfo endpoint or the lookup
        fails; the account id is informative, not required.
        """
        if not provider.userinfo_endpoint:
            return None
        try:
            response = self.http.get(
                provider.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            value = response.json().get(provider.account_id_field)
        except (requests.RequestException, ValueError, AttributeError) as e:
            self.logger.warning(
                "Userinfo lookup failed",
                extra={"provider": provider.name, "error_type": type(e).__name__},
            )
            return None
        return str(value) if value is not None else None

    def fetch_discovery(self, discovery_url: str) -> DiscoveryDocument:
        """Fetch and validate an OpenID discovery document."""
        try:
            response = self.http.get(
                discovery_url, headers={"Accept": "application/json"}, timeout=self.timeout
            )
            response.raise_for_status()
            return DiscoveryDocument.model_validate(response.json())
        except (requests.RequestException, ValueError, PydanticValidationError) as e:
            raise ExternalServiceError(
                "Failed to fetch discovery document",
                service_name=discovery_url,
                error_code=ErrorCode.INTEGRATION_ERROR,
                cause=e,
            )

    def _token_request(
        self, provider: OAuthProviderDescriptor, data: Dict[str, Any]
    ) -> TokenResponse:
        if not provider.token_endpoint:
            raise ProviderTokenError(provider.name, provider_error="token_endpoint_not_configured")

        auth = None
        payload = dict(data)
        secret = provider.client_secret.get_secret_value() if provider.client_secret else None
        method = provider.token_endpoint_auth_method
        if method == TokenEndpointAuthMethod.CLIENT_SECRET_BASIC and secret:
            auth = (provider.client_id, secret)
        else:
            payload["client_id"] = provider.client_id
            if method == TokenEndpointAuthMethod.CLIENT_SECRET_POST and secret:
                payload["client_secret"] = secret

        try:
            response = self.http.post(
                provider.token_endpoint,
                data=payload,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderTokenError(
                provider.name,
                provider_error=type(e).__name__,
                transient=True,
                cause=e,
            )

        body = self._json_body(response)
        error = body.get("error")
        if response.status_code >= 400 or error or body.get("ok") is False:
            raise ProviderTokenError(
                provider.name,
                provider_error=str(error or f"http_{response.status_code}"),
                provider_error_description=body.get("error_description"),
                http_status=response.status_code,
                transient=response.status_code in TRANSIENT_STATUS_CODES,
            )

        try:
            token = TokenResponse.model_validate(body)
        except PydanticValidationError:
            raise ProviderTokenError(
                provider.name,
                provider_error="invalid_token_response",
                http_status=response.status_code,
            )

        self.logger.info(
            "Token endpoint call succeeded",
            extra={
                "provider": provider.name,
                "grant_type": data["grant_type"],
                "expires_in": token.expires_in,
                "refresh_rotated": token.refresh_token is not None,
            },
        )
        return token

    @staticmethod
    def _json_body(response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
