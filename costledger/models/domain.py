"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
The one exception is the integration settings blob, which is provider-shaped JSON
and stays a mapping until the token set is lifted out of it.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from costledger.models.api import ActionType, CredentialStatus

# ============================================================================
# Credit Ledger
# ============================================================================


@dataclass(frozen=True)
class ConsumeMetadata:
    """Context attached to a consume - replaces the metadata dict."""

    description: str | None = None
    analysis_id: UUID | None = None
    integration_sources: tuple[str, ...] = ()
    idempotency_key: str | None = None


@dataclass(frozen=True)
class BalanceCheck:
    """Result of a balance check."""

    has_enough: bool
    available: int
    required: int


@dataclass(frozen=True)
class ConsumeResult:
    """Result of a successful consume."""

    transaction_id: UUID
    owner_id: UUID
    amount: int
    action_type: ActionType
    balance_before: int
    balance_after: int
    replayed: bool = False

    def __post_init__(self) -> None:
        """Validate consume invariants."""
        if self.balance_after < 0:
            raise ValueError(f"Balance after consume cannot be negative: {self.balance_after}")


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund."""

    entry_id: UUID
    owner_id: UUID
    amount: int
    balance_before: int
    balance_after: int
    already_refunded: bool = False


@dataclass(frozen=True)
class RenewalResult:
    """Result of a billing renewal reset."""

    entry_id: UUID
    previous_balance: int
    new_balance: int


@dataclass(frozen=True)
class AdjustmentResult:
    """Result of an admin adjustment."""

    entry_id: UUID
    applied_delta: int
    balance_before: int
    balance_after: int


@dataclass(frozen=True)
class AccountData:
    """Immutable credit account snapshot."""

    owner_id: UUID
    total_credits: int
    used_credits: int
    plan_tier: str
    created_at: datetime
    updated_at: datetime

    @property
    def available_credits(self) -> int:
        """Credits left to spend."""
        return max(0, self.total_credits - self.used_credits)


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    entry_id: UUID
    owner_id: UUID
    delta: int
    action_type: ActionType
    description: str
    balance_before: int
    balance_after: int
    analysis_id: UUID | None
    refund_of_id: UUID | None
    actor_id: str | None
    created_at: datetime


# ============================================================================
# Integration Credentials
# ============================================================================


def normalize_expires_at(value: Any) -> int | None:
    """
    Normalize a stored expiry to epoch seconds.

    Accepts epoch seconds (int/float/numeric string) and ISO-8601 strings.
    Naive ISO timestamps are read as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid expires_at: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(float(text))
        except ValueError:
            pass
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return int(parsed.timestamp())
    raise ValueError(f"Invalid expires_at: {value!r}")


@dataclass(frozen=True)
class OAuthTokenSet:
    """OAuth token set stored under settings["oauth_data"]["tokens"]."""

    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None
    expires_in: int | None = None
    scope: str | None = None
    token_type: str = "Bearer"

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "OAuthTokenSet | None":
        """Lift the token set out of decrypted integration settings."""
        oauth_data = settings.get("oauth_data") or {}
        tokens = oauth_data.get("tokens") or {}
        access_token = tokens.get("access_token")
        if not access_token:
            return None
        return cls(
            access_token=access_token,
            refresh_token=tokens.get("refresh_token") or None,
            expires_at=normalize_expires_at(tokens.get("expires_at")),
            expires_in=tokens.get("expires_in"),
            scope=tokens.get("scope"),
            token_type=tokens.get("token_type") or "Bearer",
        )

    def is_expiring(self, now: float, skew_seconds: int) -> bool:
        """True once now has entered the skew window before expiry."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at - skew_seconds

    def merged(self, payload: dict[str, Any], expires_at: int) -> "OAuthTokenSet":
        """
        Merge a token endpoint response into this set.

        Providers that don't rotate the refresh token omit it; the old one is kept.
        """
        return OAuthTokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or self.refresh_token,
            expires_at=expires_at,
            expires_in=payload.get("expires_in"),
            scope=payload.get("scope") or self.scope,
            token_type=payload.get("token_type") or self.token_type,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage inside the settings blob."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "expires_in": self.expires_in,
            "scope": self.scope,
            "token_type": self.token_type,
        }

    def apply_to(self, settings: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of settings carrying this token set."""
        oauth_data = dict(settings.get("oauth_data") or {})
        oauth_data["tokens"] = {**(oauth_data.get("tokens") or {}), **self.to_dict()}
        return {**settings, "oauth_data": oauth_data}


@dataclass(frozen=True)
class CredentialRecord:
    """
    Integration credential as read from storage.

    settings holds the at-rest form: sensitive fields are ciphertext.
    """

    credential_id: UUID
    owner_id: UUID
    provider: str
    environment: str
    status: CredentialStatus
    settings: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None


# ============================================================================
# Rate Limiting
# ============================================================================


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one RateLimiter.allow call."""

    allowed: bool
    remaining: int
    reset_in_seconds: int
