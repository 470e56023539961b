"""
Ledger Store - Row access shared by the credit and subscription services.

Every read goes to the database (populate_existing) so a long-lived session
never serves a stale balance from its identity map.
"""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Account, LedgerEntry
from app.exceptions import AccountNotFoundError, DataIntegrityError, StorageError
from app.models.api import LedgerEntryType, Tier
from app.models.domain import AccountSnapshot


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (some drivers drop tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def account_to_domain(account: Account) -> AccountSnapshot:
    """
    Convert ORM account to domain model.

    A negative balance or counter means an earlier write broke the ledger
    invariants; it is reported, never corrected here.

    Raises:
        DataIntegrityError: stored state violates an invariant
    """
    if account.balance < 0:
        raise DataIntegrityError(f"Account {account.id} has negative balance {account.balance}")
    if account.lifetime_consumed_units < 0 or account.monthly_consumed_units < 0:
        raise DataIntegrityError(f"Account {account.id} has negative usage counters")

    return AccountSnapshot(
        account_id=account.id,
        tier=Tier(account.tier),
        balance=account.balance,
        lifetime_consumed_units=account.lifetime_consumed_units,
        monthly_consumed_units=account.monthly_consumed_units,
        monthly_period_anchor=as_utc(account.monthly_period_anchor),  # type: ignore[arg-type]
        subscription_active=account.subscription_active,
        subscription_expires_at=as_utc(account.subscription_expires_at),
        created_at=as_utc(account.created_at),  # type: ignore[arg-type]
        updated_at=as_utc(account.updated_at),  # type: ignore[arg-type]
    )


class LedgerStore:
    """Thin data access over the accounts and ledger_entries tables."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_account(self, account_id: str) -> Account | None:
        """Find account by id, always re-reading the row."""
        stmt = (
            select(Account)
            .where(Account.id == account_id)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read account {account_id}: {type(e).__name__}") from e
        return result.scalar_one_or_none()

    async def get_account(self, account_id: str) -> Account:
        """
        Get account by id.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self.find_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def lock_account_for_update(self, account_id: str) -> Account:
        """
        Lock account row for update (SELECT FOR UPDATE).

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        stmt = (
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to lock account {account_id}: {type(e).__name__}") from e
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def add_entry(
        self,
        account_id: str,
        entry_type: LedgerEntryType,
        credits_delta: int,
        balance_after: int,
        description: str,
    ) -> LedgerEntry:
        """Stage an audit entry in the current transaction."""
        entry = LedgerEntry(
            account_id=account_id,
            entry_type=entry_type,
            credits_delta=credits_delta,
            balance_after=balance_after,
            description=description,
        )
        self.session.add(entry)
        return entry

    async def commit(self, operation: str) -> None:
        """
        Flush and commit, rolling back on any failure.

        Raises:
            StorageError: the write could not be confirmed
        """
        try:
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.rollback()
            raise StorageError(f"{operation} not committed: {type(e).__name__}") from e

    async def rollback(self) -> None:
        """Roll back the current transaction."""
        try:
            await self.session.rollback()
        except SQLAlchemyError as e:
            raise StorageError(f"Rollback failed: {type(e).__name__}") from e
