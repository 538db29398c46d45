"""
Metered Analysis - check, consume, do the work, refund on failure.

Usage:
    async with charge_for_analysis(ledger, owner_id, source_count=2) as charge:
        result = await run_analysis(...)

If the body raises, the consumed credits are refunded against the consume's
transaction id before the exception propagates. A refund that itself fails is
logged for manual reconciliation and never masks the original error.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from structlog import get_logger

from costledger.config import settings
from costledger.exceptions import InsufficientCreditsError
from costledger.models.domain import ConsumeMetadata, ConsumeResult
from costledger.observability.metrics import metrics
from costledger.services.ledger import CreditLedger, action_type_for, calculate_cost

logger = get_logger(__name__)


@asynccontextmanager
async def charge_for_analysis(
    ledger: CreditLedger,
    owner_id: UUID,
    source_count: int,
    advanced: bool = False,
    description: str | None = None,
    analysis_id: UUID | None = None,
    integration_sources: tuple[str, ...] = (),
    timeout_seconds: float | None = None,
) -> AsyncIterator[ConsumeResult]:
    """
    Charge for one analysis around the protected work.

    Raises:
        InsufficientCreditsError: Balance doesn't cover the cost (nothing charged)
    """
    timeout = timeout_seconds or settings.ledger_write_timeout_seconds
    cost = calculate_cost(source_count, advanced)
    action_type = action_type_for(source_count)

    check = await asyncio.wait_for(ledger.check_balance(owner_id, cost), timeout=timeout)
    if not check.has_enough:
        raise InsufficientCreditsError(check.available, cost)

    charge = await asyncio.wait_for(
        ledger.consume(
            owner_id,
            cost,
            action_type,
            ConsumeMetadata(
                description=description,
                analysis_id=analysis_id,
                integration_sources=integration_sources,
            ),
        ),
        timeout=timeout,
    )

    try:
        yield charge
    except (Exception, asyncio.CancelledError) as exc:
        try:
            await asyncio.wait_for(
                ledger.refund(
                    owner_id,
                    cost,
                    reason=f"Refund: analysis failed ({exc.__class__.__name__})",
                    transaction_id=charge.transaction_id,
                ),
                timeout=timeout,
            )
        except Exception as refund_exc:
            metrics.refund_failures_total.inc()
            logger.error(
                "refund_failed_manual_reconciliation",
                owner_id=str(owner_id),
                transaction_id=str(charge.transaction_id),
                amount=cost,
                original_error=exc.__class__.__name__,
                refund_error=str(refund_exc),
            )
        raise
