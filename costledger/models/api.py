"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ActionType(str, Enum):
    """Credit ledger action enumeration."""

    SINGLE_SOURCE_ANALYSIS = "single_source_analysis"
    DUAL_SOURCE_ANALYSIS = "dual_source_analysis"
    TRIPLE_SOURCE_ANALYSIS = "triple_source_analysis"
    ADVANCED_DEEP_DIVE = "advanced_deep_dive"
    RENEWAL_RESET = "renewal_reset"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    REFUND = "refund"


class CredentialStatus(str, Enum):
    """Integration credential status enumeration."""

    PENDING = "pending"
    CONNECTED = "connected"
    WARNING = "warning"
    EXPIRED = "expired"


# ============================================================================
# Credit Account Models
# ============================================================================


class AccountResponse(BaseModel):
    """GET /v1/credits/{owner_id} response."""

    owner_id: UUID
    total_credits: int
    used_credits: int
    available_credits: int
    plan_tier: str
    updated_at: datetime


class BalanceCheckRequest(BaseModel):
    """POST /v1/credits/{owner_id}/check request body."""

    required_credits: int = Field(..., ge=0, description="Credits the caller intends to spend")


class BalanceCheckResponse(BaseModel):
    """POST /v1/credits/{owner_id}/check response."""

    has_enough: bool
    available: int
    required: int


# ============================================================================
# Ledger History Models
# ============================================================================


class LedgerEntryItem(BaseModel):
    """Single ledger entry in history listing."""

    entry_id: UUID
    delta: int
    action_type: ActionType
    description: str
    balance_before: int
    balance_after: int
    analysis_id: UUID | None = None
    refund_of_id: UUID | None = None
    created_at: datetime


class LedgerHistoryResponse(BaseModel):
    """GET /v1/credits/{owner_id}/history response."""

    entries: list[LedgerEntryItem]
    total_count: int
    limit: int
    offset: int


# ============================================================================
# Admin Models
# ============================================================================


class AdminAdjustRequest(BaseModel):
    """
    POST /v1/admin/credits/{owner_id}/adjust request body.

    Signed like ledger entries: negative grants credits, positive deducts them.
    """

    delta: int = Field(..., description="Negative grants credits, positive deducts")
    reason: str = Field(..., min_length=1, max_length=500)
    actor_id: str = Field(..., min_length=1, max_length=255)

    @field_validator("delta")
    @classmethod
    def validate_delta_nonzero(cls, v: int) -> int:
        """Reject no-op adjustments."""
        if v == 0:
            raise ValueError("delta cannot be zero")
        return v


class AdminAdjustResponse(BaseModel):
    """POST /v1/admin/credits/{owner_id}/adjust response."""

    entry_id: UUID
    applied_delta: int
    balance_before: int
    balance_after: int


# ============================================================================
# Health Check
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: datetime
