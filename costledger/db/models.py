"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
The only JSON columns are the provider-shaped credential settings blob and
the list of integration sources on a ledger entry.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class CreditAccount(Base):
    """
    ORM model for credit_accounts table.

    One row per owner. used_credits only changes through CreditLedger.
    Rows are never deleted.
    """

    __tablename__ = "credit_accounts"

    owner_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)

    total_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    used_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    plan_tier: Mapped[str] = mapped_column(String(50), nullable=False, default="free")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("total_credits >= 0", name="ck_total_credits_non_negative"),
        CheckConstraint("used_credits >= 0", name="ck_used_credits_non_negative"),
        CheckConstraint("used_credits <= total_credits", name="ck_no_overdraft"),
        Index("idx_credit_accounts_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditAccount(owner_id={self.owner_id}, total={self.total_credits}, "
            f"used={self.used_credits})>"
        )


class CreditLedgerEntry(Base):
    """
    ORM model for credit_ledger table.

    Append-only audit log. Positive delta = consumed, negative = refund/reset/grant.
    """

    __tablename__ = "credit_ledger"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    owner_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("credit_accounts.owner_id", ondelete="RESTRICT"),
        nullable=False,
    )

    delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)

    # Balance snapshots (available credits, denormalized for auditing)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Links
    analysis_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    integration_sources: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_of_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("credit_ledger.id", ondelete="RESTRICT"),
        nullable=True,
        unique=True,
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        Index("idx_credit_ledger_owner_created", "owner_id", "created_at"),
        Index(
            "idx_credit_ledger_analysis_id",
            "analysis_id",
            postgresql_where=(analysis_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditLedgerEntry(id={self.id}, owner_id={self.owner_id}, "
            f"delta={self.delta}, action={self.action_type})>"
        )


class IntegrationCredential(Base):
    """
    ORM model for integration_credentials table.

    encrypted_settings holds client credentials and the OAuth token set with
    sensitive fields encrypted; everything else stays queryable.
    """

    __tablename__ = "integration_credentials"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    owner_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="production")

    encrypted_settings: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'connected', 'warning', 'expired')",
            name="ck_integration_credential_status",
        ),
        Index("idx_integration_credentials_owner_provider", "owner_id", "provider"),
        Index("idx_integration_credentials_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<IntegrationCredential(id={self.id}, provider={self.provider}, "
            f"status={self.status})>"
        )
