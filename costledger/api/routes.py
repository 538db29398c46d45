"""
API Routes - FastAPI endpoints for ledger read access and admin adjustment.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from costledger.api.dependencies import require_admin_key, require_api_key
from costledger.db.session import get_read_db, get_write_db
from costledger.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    WriteVerificationError,
)
from costledger.models.api import (
    AccountResponse,
    AdminAdjustRequest,
    AdminAdjustResponse,
    BalanceCheckRequest,
    BalanceCheckResponse,
    HealthResponse,
    LedgerEntryItem,
    LedgerHistoryResponse,
)
from costledger.services.ledger import CreditLedger

logger = get_logger(__name__)

router = APIRouter()


@router.get(
    "/v1/credits/{owner_id}",
    response_model=AccountResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_credits(
    owner_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> AccountResponse:
    """Current credit balance for an owner. Read-only - uses replica."""
    ledger = CreditLedger(db)

    try:
        account = await ledger.get_account(owner_id)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    return AccountResponse(
        owner_id=account.owner_id,
        total_credits=account.total_credits,
        used_credits=account.used_credits,
        available_credits=account.available_credits,
        plan_tier=account.plan_tier,
        updated_at=account.updated_at,
    )


@router.post(
    "/v1/credits/{owner_id}/check",
    response_model=BalanceCheckResponse,
    dependencies=[Depends(require_api_key)],
)
async def check_credits(
    owner_id: UUID,
    request: BalanceCheckRequest,
    db: AsyncSession = Depends(get_read_db),
) -> BalanceCheckResponse:
    """
    Check whether an owner can cover required credits.

    A missing account reports zero available rather than 404.
    """
    ledger = CreditLedger(db)
    check = await ledger.check_balance(owner_id, request.required_credits)
    return BalanceCheckResponse(
        has_enough=check.has_enough,
        available=check.available,
        required=check.required,
    )


@router.get(
    "/v1/credits/{owner_id}/history",
    response_model=LedgerHistoryResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_credit_history(
    owner_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
) -> LedgerHistoryResponse:
    """Ledger entries for an owner, newest first."""
    ledger = CreditLedger(db)
    entries, total_count = await ledger.get_history(owner_id, limit=limit, offset=offset)

    return LedgerHistoryResponse(
        entries=[
            LedgerEntryItem(
                entry_id=entry.entry_id,
                delta=entry.delta,
                action_type=entry.action_type,
                description=entry.description,
                balance_before=entry.balance_before,
                balance_after=entry.balance_after,
                analysis_id=entry.analysis_id,
                refund_of_id=entry.refund_of_id,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
        total_count=total_count,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/v1/admin/credits/{owner_id}/adjust",
    response_model=AdminAdjustResponse,
    dependencies=[Depends(require_admin_key)],
)
async def adjust_credits(
    owner_id: UUID,
    request: AdminAdjustRequest,
    db: AsyncSession = Depends(get_write_db),
) -> AdminAdjustResponse:
    """
    Apply an admin credit adjustment.

    Negative delta grants credits; positive delta deducts, capped at the
    available balance. Write operation - requires primary database.
    """
    ledger = CreditLedger(db)

    try:
        result = await ledger.admin_adjust(
            owner_id, request.delta, request.reason, request.actor_id
        )
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        logger.error("admin_adjust_failed", owner_id=str(owner_id), error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc

    return AdminAdjustResponse(
        entry_id=result.entry_id,
        applied_delta=result.applied_delta,
        balance_before=result.balance_before,
        balance_after=result.balance_after,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
