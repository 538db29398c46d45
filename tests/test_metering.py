"""
Tests for charge_for_analysis.

check -> consume -> work -> refund on failure.
"""

from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from costledger.exceptions import InsufficientCreditsError, ProviderError
from costledger.models.api import ActionType
from costledger.models.domain import BalanceCheck, ConsumeResult
from costledger.services.ledger import CreditLedger
from costledger.services.metering import charge_for_analysis


class TestChargeForAnalysis:
    """Tests against the SQLite ledger."""

    async def test_successful_work_keeps_charge(self, session_factory, make_account) -> None:
        owner_id = await make_account(total=10)

        async with session_factory() as session:
            ledger = CreditLedger(session)
            async with charge_for_analysis(ledger, owner_id, source_count=2, advanced=True) as charge:
                assert charge.amount == 3
                assert charge.action_type is ActionType.DUAL_SOURCE_ANALYSIS
            account = await ledger.get_account(owner_id)

        assert account.used_credits == 3

    async def test_failed_work_is_refunded(self, session_factory, make_account) -> None:
        owner_id = await make_account(total=10, used=2)

        async with session_factory() as session:
            ledger = CreditLedger(session)
            with pytest.raises(ProviderError):
                async with charge_for_analysis(ledger, owner_id, source_count=3):
                    raise ProviderError(502, "Bad Gateway")
            account = await ledger.get_account(owner_id)
            entries, total = await ledger.get_history(owner_id)

        assert account.used_credits == 2
        assert total == 2
        refund = next(e for e in entries if e.action_type is ActionType.REFUND)
        assert refund.delta == -3
        assert refund.refund_of_id is not None

    async def test_insufficient_balance_charges_nothing(self, session_factory, make_account) -> None:
        owner_id = await make_account(total=2, used=1)

        async with session_factory() as session:
            ledger = CreditLedger(session)
            with pytest.raises(InsufficientCreditsError):
                async with charge_for_analysis(ledger, owner_id, source_count=2):
                    pytest.fail("protected work must not run")
            _, total = await ledger.get_history(owner_id)

        assert total == 0


class TestRefundFailure:
    """A failing refund never masks the original error."""

    async def test_refund_failure_logged_for_reconciliation(self) -> None:
        owner_id = uuid4()
        ledger = MagicMock(spec=CreditLedger)
        ledger.check_balance = AsyncMock(return_value=BalanceCheck(True, 5, 1))
        ledger.consume = AsyncMock(
            return_value=ConsumeResult(
                transaction_id=uuid4(),
                owner_id=owner_id,
                amount=1,
                action_type=ActionType.SINGLE_SOURCE_ANALYSIS,
                balance_before=5,
                balance_after=4,
            )
        )
        ledger.refund = AsyncMock(side_effect=RuntimeError("database unavailable"))

        with patch("costledger.services.metering.metrics") as mock_metrics:
            with pytest.raises(ProviderError):
                async with charge_for_analysis(ledger, owner_id, source_count=1):
                    raise ProviderError(500, "Internal Server Error")

        ledger.refund.assert_awaited_once()
        assert ledger.refund.await_args.kwargs["transaction_id"] == ledger.consume.return_value.transaction_id
        mock_metrics.refund_failures_total.inc.assert_called_once()
