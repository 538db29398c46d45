"""
Tests for IntegrationGateway.

Covers local rate limiting and normalization of provider error responses.
"""

import httpx
import pytest

from costledger.config import settings
from costledger.exceptions import (
    EndpointUnavailableError,
    IntegrationPermissionError,
    ProviderError,
    RateLimitedError,
)
from costledger.services.gateway import IntegrationGateway
from costledger.services.providers import build_adapters
from costledger.services.rate_limiter import RateLimiter
from costledger.services.token_broker import TokenBroker


class FakeClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def make_gateway(credential_store, codec, now):
    """Gateway whose provider and token endpoints share one stub."""

    def _make(stub, rate_limiter: RateLimiter | None = None) -> IntegrationGateway:
        adapters = build_adapters(settings)
        http_client = stub.client()
        broker = TokenBroker(
            store=credential_store,
            codec=codec,
            adapters=adapters,
            http_client=http_client,
            clock=lambda: now,
        )
        return IntegrationGateway(
            broker=broker,
            rate_limiter=rate_limiter if rate_limiter is not None else RateLimiter(),
            adapters=adapters,
            http_client=http_client,
        )

    return _make


class TestFetch:
    """Successful resource calls."""

    async def test_returns_parsed_payload_with_bearer_token(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(lambda request: httpx.Response(200, json={"Invoices": [{"DocumentNumber": "1"}]}))
        credential = await make_credential("fortnox")

        payload = await make_gateway(stub).fetch(credential, "/invoices", "invoice", "Invoices")

        assert payload == {"Invoices": [{"DocumentNumber": "1"}]}
        request = stub.requests[0]
        assert str(request.url) == "https://api.fortnox.se/3/invoices"
        assert request.headers["Authorization"] == "Bearer access-old"

    async def test_graph_paths_use_graph_base(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(lambda request: httpx.Response(200, json={"value": []}))
        credential = await make_credential("microsoft365")

        await make_gateway(stub).fetch(credential, "subscribedSkus", "Organization.Read.All")

        assert str(stub.requests[0].url) == "https://graph.microsoft.com/v1.0/subscribedSkus"

    async def test_empty_body_returns_none(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(lambda request: httpx.Response(204))
        credential = await make_credential("hubspot")

        assert await make_gateway(stub).fetch(credential, "/crm/v3/owners", "crm.objects.owners.read") is None

    async def test_non_json_success_body_is_provider_error(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(
            lambda request: httpx.Response(
                200, text="<html>maintenance</html>", headers={"Content-Type": "text/html"}
            )
        )
        credential = await make_credential("fortnox")

        with pytest.raises(ProviderError) as exc_info:
            await make_gateway(stub).fetch(credential, "/invoices", "invoice")

        assert exc_info.value.status == 200
        assert exc_info.value.status_text == "invalid JSON body"


class TestErrorClassification:
    """Non-2xx responses map onto the integration error taxonomy."""

    async def test_forbidden_is_permission_error(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(lambda request: httpx.Response(403, json={"message": "Forbidden"}))
        credential = await make_credential("hubspot")

        with pytest.raises(IntegrationPermissionError) as exc_info:
            await make_gateway(stub).fetch(credential, "/crm/v3/objects/deals", "crm.objects.deals.read", "Deals")

        assert exc_info.value.required_scope == "crm.objects.deals.read"
        assert exc_info.value.scope_name == "Deals"

    async def test_hubspot_missing_scopes_category(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(
            lambda request: httpx.Response(
                400, json={"status": "error", "category": "MISSING_SCOPES", "message": "needs scopes"}
            )
        )
        credential = await make_credential("hubspot")

        with pytest.raises(IntegrationPermissionError):
            await make_gateway(stub).fetch(credential, "/settings/v3/users", "settings.users.read")

    async def test_hubspot_validation_error_is_unavailable(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(
            lambda request: httpx.Response(
                400,
                json={"status": "error", "category": "VALIDATION_ERROR", "message": "missing property"},
            )
        )
        credential = await make_credential("hubspot")

        # Structured category wins over the word "missing" in the message
        with pytest.raises(EndpointUnavailableError):
            await make_gateway(stub).fetch(credential, "/crm/v3/objects/deals", "crm.objects.deals.read")

    async def test_fortnox_scope_error_code(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(
            lambda request: httpx.Response(
                400,
                json={"ErrorInformation": {"error": 1, "message": "Ogiltig begäran", "code": 2000663}},
            )
        )
        credential = await make_credential("fortnox")

        with pytest.raises(IntegrationPermissionError):
            await make_gateway(stub).fetch(credential, "/supplierinvoices", "supplierinvoice")

    async def test_fortnox_text_only_scope_error_falls_back_to_vocabulary(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(lambda request: httpx.Response(400, text="Behörighet saknas för scope"))
        credential = await make_credential("fortnox")

        with pytest.raises(IntegrationPermissionError):
            await make_gateway(stub).fetch(credential, "/salarytransactions", "salary")

    async def test_plain_bad_request_is_unavailable(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(
            lambda request: httpx.Response(
                400, json={"ErrorInformation": {"message": "Ogiltig parameter", "code": 2000588}}
            )
        )
        credential = await make_credential("fortnox")

        with pytest.raises(EndpointUnavailableError) as exc_info:
            await make_gateway(stub).fetch(credential, "/articles", "article")

        assert exc_info.value.path == "/articles"

    async def test_graph_authorization_denied(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(
            lambda request: httpx.Response(
                400, json={"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges"}}
            )
        )
        credential = await make_credential("microsoft365")

        with pytest.raises(IntegrationPermissionError):
            await make_gateway(stub).fetch(credential, "users", "User.Read.All")

    async def test_upstream_429_reports_retry_after(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(lambda request: httpx.Response(429, headers={"Retry-After": "7"}))
        credential = await make_credential("hubspot")

        with pytest.raises(RateLimitedError) as exc_info:
            await make_gateway(stub).fetch(credential, "/crm/v3/owners", "crm.objects.owners.read")

        assert exc_info.value.retry_after_seconds == 7

    async def test_server_error_is_provider_error(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(lambda request: httpx.Response(502))
        credential = await make_credential("fortnox")

        with pytest.raises(ProviderError) as exc_info:
            await make_gateway(stub).fetch(credential, "/invoices", "invoice")

        assert exc_info.value.status == 502

    async def test_fetch_optional_degrades_to_default(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(lambda request: httpx.Response(400, json={"message": "Not available for this plan"}))
        credential = await make_credential("hubspot")

        result = await make_gateway(stub).fetch_optional(
            credential, "/crm/v3/objects/quotes", "crm.objects.quotes.read", default=[]
        )

        assert result == []


class TestLocalRateLimit:
    """Calls beyond the provider budget never leave the process."""

    async def test_fortnox_budget_per_credential(
        self, make_credential, make_gateway, provider_stub
    ) -> None:
        stub = provider_stub(lambda request: httpx.Response(200, json={}))
        clock = FakeClock()
        gateway = make_gateway(stub, RateLimiter(clock=clock))
        credential = await make_credential("fortnox")
        other = await make_credential("fortnox")

        for _ in range(settings.fortnox_rate_limit):
            await gateway.fetch(credential, "/invoices", "invoice")

        with pytest.raises(RateLimitedError) as exc_info:
            await gateway.fetch(credential, "/invoices", "invoice")

        assert exc_info.value.retry_after_seconds == 5
        assert len(stub.requests) == settings.fortnox_rate_limit

        # Another credential has its own window
        await gateway.fetch(other, "/invoices", "invoice")

        clock.value += 5
        await gateway.fetch(credential, "/invoices", "invoice")
        assert len(stub.requests) == settings.fortnox_rate_limit + 2
