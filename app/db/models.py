"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import LedgerEntryType, Tier


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Account(Base):
    """
    ORM model for accounts table.

    One row per end user. Balance and usage counters are only ever changed
    through the credit and subscription services.
    """

    __tablename__ = "accounts"

    # Primary Key - opaque id from the external auth provider
    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Credits
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Usage (units, fixed ratio to credits)
    lifetime_consumed_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    monthly_consumed_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    monthly_period_anchor: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Subscription
    tier: Mapped[Tier] = mapped_column(
        SQLEnum(
            Tier,
            name="account_tier",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=Tier.FREE,
    )
    subscription_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_balance_non_negative"),
        CheckConstraint("lifetime_consumed_units >= 0", name="ck_lifetime_units_non_negative"),
        CheckConstraint("monthly_consumed_units >= 0", name="ck_monthly_units_non_negative"),
        Index("idx_accounts_subscription_expiry", "subscription_active", "subscription_expires_at"),
        Index("idx_accounts_monthly_anchor", "monthly_period_anchor"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Account(id={self.id}, tier={self.tier}, balance={self.balance})>"


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Immutable audit trail of every balance mutation. Written in the same
    transaction as the mutation it records.
    """

    __tablename__ = "ledger_entries"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Foreign Key to Account
    account_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    entry_type: Mapped[LedgerEntryType] = mapped_column(
        SQLEnum(
            LedgerEntryType,
            name="ledger_entry_type",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    # Signed change and resulting balance
    credits_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    description: Mapped[str] = mapped_column(String, nullable=False)

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        Index("idx_ledger_entries_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, account_id={self.account_id}, "
            f"type={self.entry_type}, delta={self.credits_delta})>"
        )


class BackendSelectionRecord(Base):
    """
    ORM model for backend_selections table.

    The external tabular-data project bound to an account's workspace.
    privileged_key bypasses the provider's row-level security and must never
    be returned to a caller.
    """

    __tablename__ = "backend_selections"

    account_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )

    provider_project_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    project_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    public_endpoint: Mapped[str] = mapped_column(String(1024), nullable=False)
    public_key: Mapped[str] = mapped_column(Text, nullable=False)
    privileged_key: Mapped[str] = mapped_column(Text, nullable=False)

    selected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging. Keys are left out."""
        return (
            f"<BackendSelectionRecord(account_id={self.account_id}, "
            f"project={self.provider_project_ref})>"
        )
