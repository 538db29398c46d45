"""
Tests for domain models and provider adapters.
"""

from uuid import uuid4

import httpx
import pytest

from costledger.config import settings
from costledger.exceptions import UnknownProviderError
from costledger.models.api import ActionType
from costledger.models.domain import ConsumeResult, OAuthTokenSet, normalize_expires_at
from costledger.services.providers import (
    RefreshFailureKind,
    build_adapters,
    get_adapter,
    mentions_permission,
    parse_retry_after,
)


class TestNormalizeExpiresAt:
    """Stored expiries arrive as epoch numbers or ISO strings."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (1_760_000_000, 1_760_000_000),
            (1_760_000_000.9, 1_760_000_000),
            ("1760000000", 1_760_000_000),
            ("2025-10-09T08:53:20Z", 1_760_000_000),
            ("2025-10-09T08:53:20+00:00", 1_760_000_000),
            ("2025-10-09T08:53:20", 1_760_000_000),
            (None, None),
            ("", None),
        ],
    )
    def test_normalization(self, value, expected) -> None:
        assert normalize_expires_at(value) == expected

    def test_garbage_rejected(self) -> None:
        with pytest.raises(ValueError):
            normalize_expires_at("next tuesday")


class TestOAuthTokenSet:
    """Token set lifecycle helpers."""

    def test_is_expiring_uses_skew(self) -> None:
        tokens = OAuthTokenSet(access_token="a", expires_at=1000)

        assert not tokens.is_expiring(now=699, skew_seconds=300)
        assert tokens.is_expiring(now=700, skew_seconds=300)

    def test_merge_keeps_refresh_token_and_scope(self) -> None:
        tokens = OAuthTokenSet(access_token="a", refresh_token="r", expires_at=1, scope="invoice")

        merged = tokens.merged({"access_token": "b", "expires_in": 3600}, expires_at=4600)

        assert merged.access_token == "b"
        assert merged.refresh_token == "r"
        assert merged.scope == "invoice"
        assert merged.expires_at == 4600

    def test_apply_to_preserves_other_oauth_data(self) -> None:
        settings_blob = {"region": "eu", "oauth_data": {"connected_by": "u1", "tokens": {"extra": 1}}}

        result = OAuthTokenSet(access_token="a", expires_at=5).apply_to(settings_blob)

        assert result["oauth_data"]["connected_by"] == "u1"
        assert result["oauth_data"]["tokens"]["extra"] == 1
        assert result["oauth_data"]["tokens"]["access_token"] == "a"
        assert "access_token" not in settings_blob["oauth_data"]["tokens"]

    def test_from_settings_without_tokens(self) -> None:
        assert OAuthTokenSet.from_settings({"region": "eu"}) is None


class TestConsumeResult:
    def test_negative_balance_rejected(self) -> None:
        with pytest.raises(ValueError):
            ConsumeResult(uuid4(), uuid4(), 1, ActionType.SINGLE_SOURCE_ANALYSIS, 0, -1)


class TestProviderAdapters:
    """Adapter capabilities outside of HTTP round trips."""

    def test_registry_uses_configured_quotas(self) -> None:
        adapters = build_adapters(settings)

        assert set(adapters) == {"fortnox", "hubspot", "microsoft365"}
        assert adapters["fortnox"].rate_limit.limit == settings.fortnox_rate_limit
        assert adapters["microsoft365"].rate_limit.window_ms == settings.microsoft365_rate_window_ms

    def test_unknown_provider(self) -> None:
        with pytest.raises(UnknownProviderError):
            get_adapter(build_adapters(settings), "salesforce")

    def test_microsoft_requires_tenant(self) -> None:
        adapter = build_adapters(settings)["microsoft365"]
        assert adapter.missing_settings({"client_id": "c", "client_secret": "s"}) == ["tenant_id"]

    @pytest.mark.parametrize(
        ("provider", "status_code", "payload", "expected"),
        [
            ("fortnox", 400, {"error": "invalid_grant"}, RefreshFailureKind.TERMINAL),
            ("fortnox", 401, {}, RefreshFailureKind.TERMINAL),
            ("fortnox", 500, {}, RefreshFailureKind.RETRYABLE),
            ("hubspot", 400, {"status": "BAD_REFRESH_TOKEN"}, RefreshFailureKind.TERMINAL),
            ("hubspot", 429, {"status": "RATE_LIMIT"}, RefreshFailureKind.RETRYABLE),
            ("microsoft365", 400, {"error": "invalid_client"}, RefreshFailureKind.TERMINAL),
            ("microsoft365", 400, {"error": "temporarily_unavailable"}, RefreshFailureKind.RETRYABLE),
        ],
    )
    def test_refresh_error_classification(self, provider, status_code, payload, expected) -> None:
        adapter = build_adapters(settings)[provider]
        assert adapter.classify_refresh_error(status_code, payload) is expected

    def test_parse_expiry_defaults(self) -> None:
        adapters = build_adapters(settings)

        assert adapters["hubspot"].parse_expiry({}, now=100) == 1900
        assert adapters["fortnox"].parse_expiry({"expires_in": 60}, now=100) == 160

    def test_permission_vocabulary(self) -> None:
        assert mentions_permission("Missing scope: crm.objects.deals.read")
        assert mentions_permission("Behörighet saknas")
        assert not mentions_permission("Invalid date format")

    def test_retry_after_default(self) -> None:
        assert parse_retry_after(httpx.Response(429)) == 60
        assert parse_retry_after(httpx.Response(429, headers={"Retry-After": "soon"})) == 60
