"""
Provider Adapters - Per-provider OAuth and error-shape strategies.

TokenBroker and IntegrationGateway are provider-agnostic; everything that
differs between providers (token endpoint, request shape, expiry defaults,
error payloads, quotas) lives in one adapter per provider.

Error classification uses structured fields (OAuth ``error`` codes, HubSpot
``status``/``category``, Graph ``error.code``, Fortnox ``ErrorInformation.code``)
first. Text matching on human-readable messages is a last resort and is kept
in one place: ``mentions_permission``.
"""

import base64
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from costledger.config import Settings
from costledger.exceptions import (
    EndpointUnavailableError,
    IntegrationError,
    IntegrationPermissionError,
    ProviderError,
    RateLimitedError,
    UnknownProviderError,
)
from costledger.services.rate_limiter import RateLimitPolicy

# OAuth2 error codes that mean the grant itself is dead (RFC 6749 section 5.2)
TERMINAL_OAUTH_ERRORS = frozenset({"invalid_grant", "invalid_client", "unauthorized_client"})

# Last-resort vocabulary for scope errors reported only as text (Fortnox answers in Swedish)
PERMISSION_VOCABULARY = ("permission", "scope", "behörighet", "saknas", "missing")

DEFAULT_RETRY_AFTER_SECONDS = 60


class RefreshFailureKind(str, Enum):
    """How a failed token endpoint call should be handled."""

    TERMINAL = "terminal"
    RETRYABLE = "retryable"


@dataclass(frozen=True)
class TokenRequest:
    """Form-encoded POST to a provider token endpoint."""

    url: str
    data: dict[str, str]
    headers: dict[str, str] = field(default_factory=dict)


def mentions_permission(text: str) -> bool:
    """Fallback classifier for providers that only report scope errors as text."""
    lowered = text.lower()
    return any(word in lowered for word in PERMISSION_VOCABULARY)


def response_payload(response: httpx.Response) -> dict[str, Any]:
    """Parse a JSON object body, or return {} for anything else."""
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def parse_retry_after(response: httpx.Response) -> int:
    """Seconds from a Retry-After header, defaulting when absent or unparseable."""
    value = response.headers.get("Retry-After")
    if value is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0, int(float(value)))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


class ProviderAdapter:
    """
    Strategy object for one OAuth provider.

    Subclasses set the class attributes and override the hooks whose
    defaults don't match the provider.
    """

    name: str = ""
    token_url: str = ""
    api_base_url: str = ""
    default_expires_in: int = 3600
    required_settings: tuple[str, ...] = ("client_id", "client_secret")

    def __init__(self, rate_limit: RateLimitPolicy) -> None:
        self.rate_limit = rate_limit

    # ========================================================================
    # Token endpoint
    # ========================================================================

    def token_endpoint(self, settings: dict[str, Any]) -> str:
        """Token endpoint URL for this credential."""
        return self.token_url

    def missing_settings(self, settings: dict[str, Any]) -> list[str]:
        """Names of required client settings that are absent."""
        return [name for name in self.required_settings if not settings.get(name)]

    def build_refresh_request(
        self, settings: dict[str, Any], refresh_token: str, scope: str | None
    ) -> TokenRequest:
        """refresh_token grant with client credentials in the form body."""
        return TokenRequest(
            url=self.token_endpoint(settings),
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings["client_id"],
                "client_secret": settings["client_secret"],
            },
        )

    def build_authorization_request(
        self, settings: dict[str, Any], code: str, redirect_uri: str
    ) -> TokenRequest:
        """authorization_code grant with client credentials in the form body."""
        return TokenRequest(
            url=self.token_endpoint(settings),
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": settings["client_id"],
                "client_secret": settings["client_secret"],
            },
        )

    def parse_expiry(self, payload: dict[str, Any], now: float) -> int:
        """Absolute expiry (epoch seconds) for a token endpoint response."""
        expires_in = payload.get("expires_in") or self.default_expires_in
        return int(now) + int(expires_in)

    def classify_refresh_error(
        self, status_code: int, payload: dict[str, Any]
    ) -> RefreshFailureKind:
        """Terminal when the grant or client is rejected; everything else is retryable."""
        if payload.get("error") in TERMINAL_OAUTH_ERRORS:
            return RefreshFailureKind.TERMINAL
        if status_code == 401:
            return RefreshFailureKind.TERMINAL
        return RefreshFailureKind.RETRYABLE

    # ========================================================================
    # Resource calls
    # ========================================================================

    def resource_url(self, settings: dict[str, Any], resource_path: str) -> str:
        """Absolute URL for a resource path."""
        if resource_path.startswith(("http://", "https://")):
            return resource_path
        return f"{self.api_base_url.rstrip('/')}/{resource_path.lstrip('/')}"

    def error_message(self, payload: dict[str, Any], response: httpx.Response) -> str:
        """Human-readable error text from a failed resource call."""
        message = payload.get("message") or payload.get("error_description")
        if isinstance(message, str) and message:
            return message
        return response.text or response.reason_phrase

    def is_scope_error(self, status_code: int, payload: dict[str, Any]) -> bool | None:
        """
        Structured scope-error check.

        Returns None when the payload carries no structured hint, so the caller
        falls back to text matching.
        """
        return None

    def classify_resource_error(
        self,
        response: httpx.Response,
        resource_path: str,
        required_scope: str,
        scope_name: str,
    ) -> IntegrationError:
        """Map a non-2xx resource response onto the integration error taxonomy."""
        status_code = response.status_code
        payload = response_payload(response)
        message = self.error_message(payload, response)

        if status_code in (401, 403):
            return IntegrationPermissionError(required_scope, scope_name, message)

        if status_code == 400:
            scope_error = self.is_scope_error(status_code, payload)
            if scope_error is None:
                scope_error = mentions_permission(message)
            if scope_error:
                return IntegrationPermissionError(required_scope, scope_name, message)
            return EndpointUnavailableError(resource_path, message)

        if status_code == 429:
            return RateLimitedError(parse_retry_after(response), provider=self.name)

        return ProviderError(status_code, response.reason_phrase)


class FortnoxAdapter(ProviderAdapter):
    """Fortnox accounting. Client credentials go in a Basic auth header."""

    name = "fortnox"
    token_url = "https://apps.fortnox.se/oauth-v1/token"
    api_base_url = "https://api.fortnox.se/3"
    default_expires_in = 3600

    # ErrorInformation.code for "no permission for scope"
    SCOPE_ERROR_CODES = frozenset({2000663})

    def _basic_auth(self, settings: dict[str, Any]) -> dict[str, str]:
        raw = f"{settings['client_id']}:{settings['client_secret']}".encode()
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}

    def build_refresh_request(
        self, settings: dict[str, Any], refresh_token: str, scope: str | None
    ) -> TokenRequest:
        return TokenRequest(
            url=self.token_url,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            headers=self._basic_auth(settings),
        )

    def build_authorization_request(
        self, settings: dict[str, Any], code: str, redirect_uri: str
    ) -> TokenRequest:
        return TokenRequest(
            url=self.token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            headers=self._basic_auth(settings),
        )

    def _error_information(self, payload: dict[str, Any]) -> dict[str, Any]:
        info = payload.get("ErrorInformation") or payload.get("errorInformation") or {}
        return info if isinstance(info, dict) else {}

    def error_message(self, payload: dict[str, Any], response: httpx.Response) -> str:
        info = self._error_information(payload)
        message = info.get("message") or info.get("Message")
        if isinstance(message, str) and message:
            return message
        return super().error_message(payload, response)

    def is_scope_error(self, status_code: int, payload: dict[str, Any]) -> bool | None:
        info = self._error_information(payload)
        code = info.get("code") or info.get("Code")
        if code is None:
            return None
        try:
            return int(code) in self.SCOPE_ERROR_CODES
        except (TypeError, ValueError):
            return None


class HubSpotAdapter(ProviderAdapter):
    """HubSpot CRM. Access tokens live 30 minutes."""

    name = "hubspot"
    token_url = "https://api.hubapi.com/oauth/v1/token"
    api_base_url = "https://api.hubapi.com"
    default_expires_in = 1800

    TERMINAL_STATUSES = frozenset({"BAD_REFRESH_TOKEN", "BAD_CLIENT_ID", "BAD_AUTH_CODE"})

    def classify_refresh_error(
        self, status_code: int, payload: dict[str, Any]
    ) -> RefreshFailureKind:
        if payload.get("status") in self.TERMINAL_STATUSES:
            return RefreshFailureKind.TERMINAL
        return super().classify_refresh_error(status_code, payload)

    def is_scope_error(self, status_code: int, payload: dict[str, Any]) -> bool | None:
        category = payload.get("category")
        if category is None:
            return None
        return category == "MISSING_SCOPES"


class Microsoft365Adapter(ProviderAdapter):
    """Microsoft 365 via Microsoft Graph. The token endpoint is per tenant."""

    name = "microsoft365"
    token_url = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
    api_base_url = "https://graph.microsoft.com/v1.0"
    default_expires_in = 3600
    required_settings = ("client_id", "client_secret", "tenant_id")

    DEFAULT_SCOPE = "https://graph.microsoft.com/.default offline_access"
    SCOPE_ERROR_CODES = frozenset(
        {"Authorization_RequestDenied", "ErrorAccessDenied", "Forbidden", "AccessDenied"}
    )

    def token_endpoint(self, settings: dict[str, Any]) -> str:
        return self.token_url.format(tenant_id=settings["tenant_id"])

    def build_refresh_request(
        self, settings: dict[str, Any], refresh_token: str, scope: str | None
    ) -> TokenRequest:
        request = super().build_refresh_request(settings, refresh_token, scope)
        request.data["scope"] = scope or self.DEFAULT_SCOPE
        return request

    def build_authorization_request(
        self, settings: dict[str, Any], code: str, redirect_uri: str
    ) -> TokenRequest:
        request = super().build_authorization_request(settings, code, redirect_uri)
        request.data["scope"] = self.DEFAULT_SCOPE
        return request

    def _graph_error(self, payload: dict[str, Any]) -> dict[str, Any]:
        error = payload.get("error")
        return error if isinstance(error, dict) else {}

    def error_message(self, payload: dict[str, Any], response: httpx.Response) -> str:
        message = self._graph_error(payload).get("message")
        if isinstance(message, str) and message:
            return message
        return super().error_message(payload, response)

    def is_scope_error(self, status_code: int, payload: dict[str, Any]) -> bool | None:
        code = self._graph_error(payload).get("code")
        if code is None:
            return None
        return code in self.SCOPE_ERROR_CODES


def build_adapters(settings: Settings) -> dict[str, ProviderAdapter]:
    """Provider registry with quotas taken from configuration."""
    adapters: list[ProviderAdapter] = [
        FortnoxAdapter(RateLimitPolicy(settings.fortnox_rate_limit, settings.fortnox_rate_window_ms)),
        HubSpotAdapter(RateLimitPolicy(settings.hubspot_rate_limit, settings.hubspot_rate_window_ms)),
        Microsoft365Adapter(
            RateLimitPolicy(settings.microsoft365_rate_limit, settings.microsoft365_rate_window_ms)
        ),
    ]
    return {adapter.name: adapter for adapter in adapters}


def get_adapter(adapters: dict[str, ProviderAdapter], provider: str) -> ProviderAdapter:
    """Look up an adapter, raising UnknownProviderError when none is registered."""
    adapter = adapters.get(provider)
    if adapter is None:
        raise UnknownProviderError(provider)
    return adapter
