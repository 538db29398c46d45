"""
Credit Ledger - Prepaid usage accounting with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Concurrency rules:
- consume is a single conditional UPDATE (used + amount <= total), never a
  read-then-write in application code.
- refund, renewal reset and admin adjustment lock the account row
  (SELECT FOR UPDATE) for the duration of the transaction.
- Every mutation appends exactly one ledger entry in the same transaction.
"""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from costledger.db.models import CreditAccount, CreditLedgerEntry, utc_now
from costledger.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    InsufficientCreditsError,
    RefundMismatchError,
    WriteVerificationError,
)
from costledger.models.api import ActionType
from costledger.models.domain import (
    AccountData,
    AdjustmentResult,
    BalanceCheck,
    ConsumeMetadata,
    ConsumeResult,
    LedgerEntryData,
    RefundResult,
    RenewalResult,
)
from costledger.observability.metrics import metrics

logger = get_logger(__name__)

ADVANCED_DEEP_DIVE_SURCHARGE = 1


def calculate_cost(source_count: int, advanced: bool = False) -> int:
    """
    Credits charged for an analysis.

    base(<=1)=1, base(2)=2, base(>=3)=3, plus one credit for an advanced deep dive.
    """
    if source_count < 0:
        raise ValueError(f"source_count cannot be negative: {source_count}")
    if source_count <= 1:
        base = 1
    elif source_count == 2:
        base = 2
    else:
        base = 3
    return base + (ADVANCED_DEEP_DIVE_SURCHARGE if advanced else 0)


def action_type_for(source_count: int) -> ActionType:
    """Audit label for an analysis. Not used for pricing."""
    if source_count <= 1:
        return ActionType.SINGLE_SOURCE_ANALYSIS
    if source_count == 2:
        return ActionType.DUAL_SOURCE_ANALYSIS
    return ActionType.TRIPLE_SOURCE_ANALYSIS


def _available(total: int, used: int) -> int:
    return max(0, total - used)


class CreditLedger:
    """
    Credit ledger bound to one database session.

    All write operations follow the pattern:
    1. Mutate the account (atomic conditional update or locked row)
    2. Append a ledger entry and flush
    3. Read back and verify
    4. Commit
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger with database session."""
        self.session = session

    async def check_balance(self, owner_id: UUID, required: int) -> BalanceCheck:
        """
        Check whether an account can cover required credits.

        A missing account is a zero balance, not an error.
        """
        account = await self._find_account(owner_id)
        available = _available(account.total_credits, account.used_credits) if account else 0
        return BalanceCheck(
            has_enough=available >= required,
            available=available,
            required=required,
        )

    async def consume(
        self,
        owner_id: UUID,
        amount: int,
        action_type: ActionType,
        metadata: ConsumeMetadata | None = None,
    ) -> ConsumeResult:
        """
        Atomically consume credits.

        Raises:
            InsufficientCreditsError: used + amount would exceed total (nothing written)
            DataIntegrityError: idempotency key belongs to another owner
        """
        if amount <= 0:
            raise ValueError(f"Consume amount must be positive: {amount}")
        metadata = metadata or ConsumeMetadata()

        if metadata.idempotency_key:
            existing = await self._find_entry_by_idempotency(metadata.idempotency_key)
            if existing is not None:
                return self._replayed_consume(existing, owner_id)

        stmt = (
            update(CreditAccount)
            .where(
                CreditAccount.owner_id == owner_id,
                CreditAccount.used_credits + amount <= CreditAccount.total_credits,
            )
            .values(
                used_credits=CreditAccount.used_credits + amount,
                updated_at=utc_now(),
            )
            .returning(CreditAccount.total_credits, CreditAccount.used_credits)
            .execution_options(synchronize_session=False)
        )
        row = (await self.session.execute(stmt)).one_or_none()

        if row is None:
            await self.session.rollback()
            check = await self.check_balance(owner_id, amount)
            metrics.record_ledger_operation("consume", success=False)
            logger.warning(
                "insufficient_credits",
                owner_id=str(owner_id),
                available=check.available,
                required=amount,
                action_type=action_type.value,
            )
            raise InsufficientCreditsError(check.available, amount)

        total_credits, used_after = row
        balance_after = _available(total_credits, used_after)
        balance_before = balance_after + amount

        entry = CreditLedgerEntry(
            owner_id=owner_id,
            delta=amount,
            action_type=action_type.value,
            description=metadata.description or action_type.value.replace("_", " "),
            balance_before=balance_before,
            balance_after=balance_after,
            analysis_id=metadata.analysis_id,
            integration_sources=list(metadata.integration_sources) or None,
            idempotency_key=metadata.idempotency_key,
        )
        self.session.add(entry)

        try:
            await self.session.flush()
        except IntegrityError:
            # Concurrent consume with the same idempotency key won the race
            await self.session.rollback()
            if not metadata.idempotency_key:
                raise
            existing = await self._find_entry_by_idempotency(metadata.idempotency_key)
            if existing is None:
                raise WriteVerificationError("Consume failed due to idempotency race")
            return self._replayed_consume(existing, owner_id)

        verified_entry = await self.session.get(CreditLedgerEntry, entry.id)
        if verified_entry is None:
            raise WriteVerificationError(f"Ledger entry {entry.id} not found after insert")

        await self.session.commit()

        metrics.record_ledger_operation("consume", success=True, amount=amount)
        logger.info(
            "credits_consumed",
            owner_id=str(owner_id),
            amount=amount,
            action_type=action_type.value,
            balance_before=balance_before,
            balance_after=balance_after,
            transaction_id=str(verified_entry.id),
        )

        return ConsumeResult(
            transaction_id=verified_entry.id,
            owner_id=owner_id,
            amount=amount,
            action_type=action_type,
            balance_before=balance_before,
            balance_after=balance_after,
        )

    async def refund(
        self,
        owner_id: UUID,
        amount: int,
        reason: str,
        transaction_id: UUID | None = None,
    ) -> RefundResult:
        """
        Give back credits after a paid action failed.

        used_credits is floored at 0. When transaction_id (the consume's entry id)
        is given the refund is idempotent: a retry returns the first refund.

        Raises:
            AccountNotFoundError: Account doesn't exist
            RefundMismatchError: transaction_id is not a refundable consume of this owner
        """
        if amount <= 0:
            raise ValueError(f"Refund amount must be positive: {amount}")

        account = await self._lock_account_for_update(owner_id)
        if account is None:
            metrics.record_ledger_operation("refund", success=False)
            raise AccountNotFoundError(owner_id)

        if transaction_id is not None:
            prior = await self._find_refund_of(transaction_id)
            if prior is not None:
                # Read the entry before rollback expires it
                result = self._prior_refund(prior)
                await self.session.rollback()
                logger.info(
                    "refund_already_applied",
                    owner_id=str(owner_id),
                    transaction_id=str(transaction_id),
                    refund_entry_id=str(result.entry_id),
                )
                return result
            try:
                await self._validate_refund_target(owner_id, amount, transaction_id)
            except RefundMismatchError:
                await self.session.rollback()
                raise
        else:
            logger.warning("refund_without_transaction_id", owner_id=str(owner_id), amount=amount)

        used_before = account.used_credits
        balance_before = _available(account.total_credits, used_before)
        used_after = max(0, used_before - amount)
        applied = used_before - used_after
        if applied < amount:
            logger.warning(
                "refund_floored_at_zero",
                owner_id=str(owner_id),
                requested=amount,
                applied=applied,
            )

        account.used_credits = used_after
        balance_after = _available(account.total_credits, used_after)

        entry = CreditLedgerEntry(
            owner_id=owner_id,
            delta=-applied,
            action_type=ActionType.REFUND.value,
            description=reason,
            balance_before=balance_before,
            balance_after=balance_after,
            refund_of_id=transaction_id,
        )
        self.session.add(entry)

        try:
            await self.session.flush()
        except IntegrityError:
            # Another refund for the same transaction committed first
            await self.session.rollback()
            if transaction_id is None:
                raise
            prior = await self._find_refund_of(transaction_id)
            if prior is None:
                raise WriteVerificationError("Refund failed due to idempotency race")
            return self._prior_refund(prior)

        await self._verify_account(owner_id, used_after)
        await self.session.commit()

        metrics.record_ledger_operation("refund", success=True, amount=applied)
        logger.info(
            "credits_refunded",
            owner_id=str(owner_id),
            amount=applied,
            reason=reason,
            transaction_id=str(transaction_id) if transaction_id else None,
            balance_before=balance_before,
            balance_after=balance_after,
        )

        return RefundResult(
            entry_id=entry.id,
            owner_id=owner_id,
            amount=applied,
            balance_before=balance_before,
            balance_after=balance_after,
        )

    async def reset_for_renewal(
        self, owner_id: UUID, new_total: int, plan_tier: str | None = None
    ) -> RenewalResult:
        """
        Reset an account for a new billing period: total=new_total, used=0.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        if new_total < 0:
            raise ValueError(f"new_total cannot be negative: {new_total}")

        account = await self._lock_account_for_update(owner_id)
        if account is None:
            metrics.record_ledger_operation("renewal_reset", success=False)
            raise AccountNotFoundError(owner_id)

        used_before = account.used_credits
        previous_balance = _available(account.total_credits, used_before)

        account.total_credits = new_total
        account.used_credits = 0
        if plan_tier is not None:
            account.plan_tier = plan_tier

        entry = CreditLedgerEntry(
            owner_id=owner_id,
            delta=-used_before,
            action_type=ActionType.RENEWAL_RESET.value,
            description=f"Renewal reset: {new_total} credits allocated",
            balance_before=previous_balance,
            balance_after=new_total,
        )
        self.session.add(entry)
        await self.session.flush()

        await self._verify_account(owner_id, 0)
        await self.session.commit()

        metrics.record_ledger_operation("renewal_reset", success=True)
        logger.info(
            "credits_reset_for_renewal",
            owner_id=str(owner_id),
            previous_balance=previous_balance,
            new_total=new_total,
        )

        return RenewalResult(
            entry_id=entry.id, previous_balance=previous_balance, new_balance=new_total
        )

    async def admin_adjust(
        self, owner_id: UUID, delta: int, reason: str, actor_id: str
    ) -> AdjustmentResult:
        """
        Apply a signed admin adjustment.

        Negative delta grants credits (total grows by |delta|). Positive delta
        deducts credits, capped at what is available so the balance never goes
        negative.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        if delta == 0:
            raise ValueError("Adjustment delta cannot be zero")

        account = await self._lock_account_for_update(owner_id)
        if account is None:
            metrics.record_ledger_operation("admin_adjustment", success=False)
            raise AccountNotFoundError(owner_id)

        balance_before = _available(account.total_credits, account.used_credits)

        if delta < 0:
            account.total_credits = account.total_credits - delta
            applied = delta
        else:
            applied = min(delta, balance_before)
            account.used_credits = account.used_credits + applied

        balance_after = _available(account.total_credits, account.used_credits)

        entry = CreditLedgerEntry(
            owner_id=owner_id,
            delta=applied,
            action_type=ActionType.ADMIN_ADJUSTMENT.value,
            description=f"Admin adjustment by {actor_id}: {reason}",
            balance_before=balance_before,
            balance_after=balance_after,
            actor_id=actor_id,
        )
        self.session.add(entry)
        await self.session.flush()

        await self._verify_account(owner_id, account.used_credits)
        await self.session.commit()

        metrics.record_ledger_operation("admin_adjustment", success=True)
        logger.info(
            "credits_admin_adjusted",
            owner_id=str(owner_id),
            actor_id=actor_id,
            requested_delta=delta,
            applied_delta=applied,
            balance_before=balance_before,
            balance_after=balance_after,
        )

        return AdjustmentResult(
            entry_id=entry.id,
            applied_delta=applied,
            balance_before=balance_before,
            balance_after=balance_after,
        )

    async def open_account(
        self, owner_id: UUID, total_credits: int, plan_tier: str = "free"
    ) -> AccountData:
        """
        Get existing account or create one at subscription activation.

        Returns the existing account untouched if found.
        """
        account = await self._find_account(owner_id)
        if account is not None:
            return self._account_to_domain(account)

        new_account = CreditAccount(
            owner_id=owner_id,
            total_credits=total_credits,
            used_credits=0,
            plan_tier=plan_tier,
        )
        self.session.add(new_account)

        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - account created by another request
            await self.session.rollback()
            account = await self._find_account(owner_id)
            if account is None:
                raise WriteVerificationError("Account creation failed due to race condition")
            return self._account_to_domain(account)

        await self.session.commit()
        logger.info(
            "credit_account_opened",
            owner_id=str(owner_id),
            total_credits=total_credits,
            plan_tier=plan_tier,
        )
        return self._account_to_domain(new_account)

    async def get_account(self, owner_id: UUID) -> AccountData:
        """
        Get account by owner.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._find_account(owner_id)
        if account is None:
            raise AccountNotFoundError(owner_id)
        return self._account_to_domain(account)

    async def get_history(
        self, owner_id: UUID, limit: int = 20, offset: int = 0
    ) -> tuple[list[LedgerEntryData], int]:
        """Ledger entries for an owner, newest first, with the total count."""
        count_stmt = (
            select(func.count())
            .select_from(CreditLedgerEntry)
            .where(CreditLedgerEntry.owner_id == owner_id)
        )
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.owner_id == owner_id)
            .order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id)
            .limit(limit)
            .offset(offset)
        )
        entries = (await self.session.execute(stmt)).scalars().all()
        return [self._entry_to_domain(e) for e in entries], total

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_account(self, owner_id: UUID) -> CreditAccount | None:
        """Find account by owner."""
        # consume updates rows in SQL, so identity-map copies may be stale
        stmt = (
            select(CreditAccount)
            .where(CreditAccount.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_account_for_update(self, owner_id: UUID) -> CreditAccount | None:
        """Lock account row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(CreditAccount)
            .where(CreditAccount.owner_id == owner_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_entry_by_idempotency(self, idempotency_key: str) -> CreditLedgerEntry | None:
        """Find consume entry by idempotency key."""
        stmt = select(CreditLedgerEntry).where(
            CreditLedgerEntry.idempotency_key == idempotency_key
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_refund_of(self, transaction_id: UUID) -> CreditLedgerEntry | None:
        """Find the refund entry linked to a consume, if any."""
        stmt = select(CreditLedgerEntry).where(CreditLedgerEntry.refund_of_id == transaction_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _validate_refund_target(
        self, owner_id: UUID, amount: int, transaction_id: UUID
    ) -> None:
        """A keyed refund must point at a consume of the same owner and not exceed it."""
        original = await self.session.get(CreditLedgerEntry, transaction_id)
        if original is None:
            raise RefundMismatchError(transaction_id, "transaction not found")
        if original.owner_id != owner_id:
            raise RefundMismatchError(transaction_id, "transaction belongs to another owner")
        if original.delta <= 0 or original.action_type in (
            ActionType.REFUND.value,
            ActionType.RENEWAL_RESET.value,
            ActionType.ADMIN_ADJUSTMENT.value,
        ):
            raise RefundMismatchError(transaction_id, "transaction is not a consume")
        if amount > original.delta:
            raise RefundMismatchError(
                transaction_id, f"refund {amount} exceeds consumed {original.delta}"
            )

    async def _verify_account(self, owner_id: UUID, expected_used: int) -> None:
        """Read back the account after a mutation."""
        verified = await self.session.get(CreditAccount, owner_id)
        if verified is None:
            raise WriteVerificationError(f"Account {owner_id} disappeared after update")
        if verified.used_credits != expected_used:
            raise DataIntegrityError(
                f"Used credits mismatch: expected {expected_used}, got {verified.used_credits}"
            )

    def _replayed_consume(self, entry: CreditLedgerEntry, owner_id: UUID) -> ConsumeResult:
        """Result for a consume replayed with an already-used idempotency key."""
        if entry.owner_id != owner_id:
            raise DataIntegrityError(
                f"Idempotency key reused across owners: {entry.idempotency_key}"
            )
        logger.info(
            "consume_replayed",
            owner_id=str(owner_id),
            transaction_id=str(entry.id),
        )
        return ConsumeResult(
            transaction_id=entry.id,
            owner_id=entry.owner_id,
            amount=entry.delta,
            action_type=ActionType(entry.action_type),
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            replayed=True,
        )

    def _prior_refund(self, entry: CreditLedgerEntry) -> RefundResult:
        return RefundResult(
            entry_id=entry.id,
            owner_id=entry.owner_id,
            amount=-entry.delta,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            already_refunded=True,
        )

    def _account_to_domain(self, account: CreditAccount) -> AccountData:
        """Convert ORM account to domain model."""
        return AccountData(
            owner_id=account.owner_id,
            total_credits=account.total_credits,
            used_credits=account.used_credits,
            plan_tier=account.plan_tier,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )

    def _entry_to_domain(self, entry: CreditLedgerEntry) -> LedgerEntryData:
        """Convert ORM ledger entry to domain model."""
        return LedgerEntryData(
            entry_id=entry.id,
            owner_id=entry.owner_id,
            delta=entry.delta,
            action_type=ActionType(entry.action_type),
            description=entry.description,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            analysis_id=entry.analysis_id,
            refund_of_id=entry.refund_of_id,
            actor_id=entry.actor_id,
            created_at=entry.created_at,
        )
