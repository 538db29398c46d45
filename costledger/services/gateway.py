"""
Integration Gateway - Rate-limited, authenticated resource calls to providers.

Stateless per call: rate limit, get a valid token, GET the resource, and
normalize any failure onto the integration error taxonomy.
"""

import asyncio
from typing import Any, TypeVar

import httpx
from structlog import get_logger

from costledger.exceptions import (
    EndpointUnavailableError,
    ProviderError,
    RateLimitedError,
)
from costledger.models.domain import CredentialRecord
from costledger.observability.metrics import metrics
from costledger.observability.tracing import integration_span
from costledger.services.providers import ProviderAdapter, get_adapter
from costledger.services.rate_limiter import RateLimiter
from costledger.services.token_broker import TokenBroker

logger = get_logger(__name__)

T = TypeVar("T")


class IntegrationGateway:
    """Fetches provider resources on behalf of one credential per call."""

    def __init__(
        self,
        broker: TokenBroker,
        rate_limiter: RateLimiter,
        adapters: dict[str, ProviderAdapter],
        http_client: httpx.AsyncClient,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._broker = broker
        self._rate_limiter = rate_limiter
        self._adapters = adapters
        self._http = http_client
        self._timeout_seconds = timeout_seconds

    async def fetch(
        self,
        credential: CredentialRecord,
        resource_path: str,
        required_scope: str,
        scope_name: str | None = None,
    ) -> Any:
        """
        GET a provider resource and return the parsed JSON payload.

        Raises:
            RateLimitedError: Local budget or provider quota exhausted
            TerminalAuthError / RetryableAuthError: From the token broker
            IntegrationPermissionError: Consent scope too narrow
            EndpointUnavailableError: Endpoint can't serve this account (soft)
            ProviderError: Any other upstream failure
        """
        adapter = get_adapter(self._adapters, credential.provider)
        scope_name = scope_name or required_scope

        key = f"{credential.provider}:{credential.credential_id}"
        decision = self._rate_limiter.allow(
            key, adapter.rate_limit.limit, adapter.rate_limit.window_ms
        )
        if not decision.allowed:
            metrics.rate_limit_rejections_total.labels(provider=credential.provider).inc()
            logger.warning(
                "provider_rate_limited_locally",
                provider=credential.provider,
                credential_id=str(credential.credential_id),
                retry_after_seconds=decision.reset_in_seconds,
            )
            raise RateLimitedError(decision.reset_in_seconds, provider=credential.provider)

        access_token = await self._broker.get_valid_access_token(credential)
        url = adapter.resource_url(credential.settings, resource_path)

        with integration_span("provider_fetch", credential.provider, credential.credential_id) as span:
            span.set_attribute("integration.resource_path", resource_path)
            try:
                response = await asyncio.wait_for(
                    self._http.get(
                        url,
                        headers={
                            "Authorization": f"Bearer {access_token}",
                            "Accept": "application/json",
                        },
                    ),
                    timeout=self._timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                metrics.record_gateway_request(credential.provider, "timeout")
                raise ProviderError(504, "Provider request timed out") from exc
            except httpx.HTTPError as exc:
                metrics.record_gateway_request(credential.provider, "transport_error")
                raise ProviderError(
                    502, f"Provider unreachable: {exc.__class__.__name__}"
                ) from exc
            span.set_attribute("http.status_code", response.status_code)

        if response.is_success:
            metrics.record_gateway_request(credential.provider, "success")
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                logger.warning(
                    "provider_response_not_json",
                    provider=credential.provider,
                    resource_path=resource_path,
                    content_type=response.headers.get("Content-Type"),
                )
                raise ProviderError(response.status_code, "invalid JSON body") from exc

        error = adapter.classify_resource_error(response, resource_path, required_scope, scope_name)
        metrics.record_gateway_request(credential.provider, error.__class__.__name__)
        logger.warning(
            "provider_request_failed",
            provider=credential.provider,
            credential_id=str(credential.credential_id),
            resource_path=resource_path,
            status_code=response.status_code,
            error_type=error.__class__.__name__,
        )
        raise error

    async def fetch_optional(
        self,
        credential: CredentialRecord,
        resource_path: str,
        required_scope: str,
        scope_name: str | None = None,
        default: T | None = None,
    ) -> Any | T | None:
        """Like fetch, but an unavailable endpoint degrades to default."""
        try:
            return await self.fetch(credential, resource_path, required_scope, scope_name)
        except EndpointUnavailableError as exc:
            logger.info(
                "provider_endpoint_unavailable",
                provider=credential.provider,
                resource_path=resource_path,
                message=exc.message,
            )
            return default
