"""
Credit Service - Check, consume and report credits.

NO DICTIONARIES - All operations use strongly typed domain models.

Consume is a single conditional UPDATE ... WHERE balance >= 1 RETURNING,
so the database row, not this process, serializes concurrent callers.
"""

import math
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Account
from app.exceptions import (
    AccountNotFoundError,
    InsufficientCreditsError,
    InvalidArgumentError,
    StorageError,
)
from app.models.api import LedgerEntryType, Tier
from app.models.domain import (
    AccountSnapshot,
    AccountStatusView,
    BalanceCheck,
    ConsumeResult,
    CreditPolicy,
)
from app.observability.metrics import metrics
from app.services.ledger_store import LedgerStore, account_to_domain, utc_now

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return utc_now()


def build_status_view(
    account: AccountSnapshot, policy: CreditPolicy, now: datetime
) -> AccountStatusView:
    """Pure projection of stored account state."""
    expires_at = account.subscription_expires_at
    has_expired = bool(account.subscription_active and expires_at is not None and expires_at < now)

    days_until_expiry: int | None = None
    if expires_at is not None:
        days_until_expiry = math.ceil((expires_at - now).total_seconds() / 86400)

    return AccountStatusView(
        account_id=account.account_id,
        tier=account.tier,
        balance=account.balance,
        max_credits=policy.credits_for_tier(account.tier),
        units_per_credit=policy.units_per_credit,
        available_units=account.balance * policy.units_per_credit,
        lifetime_consumed_units=account.lifetime_consumed_units,
        monthly_consumed_units=account.monthly_consumed_units,
        monthly_period_anchor=account.monthly_period_anchor,
        subscription_active=account.subscription_active,
        subscription_expires_at=expires_at,
        has_expired=has_expired,
        days_until_expiry=days_until_expiry,
        is_active=account.subscription_active and not has_expired,
    )


class CreditService:
    """
    Credit accounting over the ledger store.

    Stateless apart from the session: every call re-reads the account.
    """

    def __init__(self, session: AsyncSession, policy: CreditPolicy | None = None) -> None:
        """Initialize credit service with database session and credit policy."""
        self.session = session
        self.policy = policy or CreditPolicy()
        self.store = LedgerStore(session)

    async def check_balance(self, account_id: str) -> BalanceCheck:
        """
        Read-only check whether the account may start an expensive action.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = account_to_domain(await self.store.get_account(account_id))
        allowed = account.balance > 0

        metrics.record_credit_check(allowed)

        if allowed:
            message = (
                f"You have {account.balance} credits remaining "
                f"({account.balance * self.policy.units_per_credit} tokens)"
            )
        else:
            message = InsufficientCreditsError.DEFAULT_MESSAGE

        return BalanceCheck(
            allowed=allowed,
            balance=account.balance,
            max_units=self.policy.units_per_credit if allowed else 0,
            message=message,
        )

    async def consume(self, account_id: str) -> ConsumeResult:
        """
        Atomically take one credit and record its units.

        Fails closed: unless the decrement is committed the caller must treat
        the action as unauthorized.

        Raises:
            AccountNotFoundError: Account doesn't exist
            InsufficientCreditsError: Balance is zero (no mutation performed)
            StorageError: Decrement could not be confirmed
        """
        units = self.policy.units_per_credit
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.balance >= 1)
            .values(
                balance=Account.balance - 1,
                lifetime_consumed_units=Account.lifetime_consumed_units + units,
                monthly_consumed_units=Account.monthly_consumed_units + units,
            )
            .returning(
                Account.balance,
                Account.lifetime_consumed_units,
                Account.monthly_consumed_units,
            )
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            row = result.one_or_none()
            if row is None:
                await self.session.rollback()
            else:
                balance, lifetime, monthly = row
                self.store.add_entry(
                    account_id,
                    LedgerEntryType.CONSUME,
                    credits_delta=-1,
                    balance_after=balance,
                    description=f"Consumed 1 credit ({units} units)",
                )
                await self.session.flush()
                await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            metrics.record_consume("storage_error")
            logger.error(
                "credit_consume_not_confirmed",
                account_id=account_id,
                error_type=type(e).__name__,
            )
            raise StorageError(f"Consume not confirmed for account {account_id}") from e

        if row is None:
            account = await self.store.find_account(account_id)
            if account is None:
                metrics.record_consume("not_found")
                raise AccountNotFoundError(account_id)
            metrics.record_consume("insufficient")
            logger.info("credit_consume_rejected", account_id=account_id, balance=account.balance)
            raise InsufficientCreditsError(balance=account.balance)

        metrics.record_consume("success", units)
        logger.info(
            "credit_consumed",
            account_id=account_id,
            balance=balance,
            lifetime_consumed_units=lifetime,
            monthly_consumed_units=monthly,
        )

        return ConsumeResult(
            balance=balance,
            lifetime_consumed=lifetime,
            monthly_consumed=monthly,
            units_consumed=units,
            message=f"Request processed. {balance} credits remaining.",
        )

    async def status_projection(self, account_id: str) -> AccountStatusView:
        """
        Full credit and subscription status. Never mutates; expiry is only
        applied by SubscriptionService.check_expiry.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = account_to_domain(await self.store.get_account(account_id))
        return build_status_view(account, self.policy, _utc_now())

    async def get_account(self, account_id: str) -> AccountSnapshot:
        """
        Get account snapshot.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        return account_to_domain(await self.store.get_account(account_id))

    async def initialize_account(self, account_id: str, tier: Tier = Tier.FREE) -> AccountSnapshot:
        """
        Create the account with the tier's starting balance, or return the
        existing one unchanged.
        """
        if not account_id or len(account_id) > 255:
            raise InvalidArgumentError("account_id must be 1-255 characters")

        existing = await self.store.find_account(account_id)
        if existing is not None:
            return account_to_domain(existing)

        now = _utc_now()
        balance = self.policy.credits_for_tier(tier)
        new_account = Account(
            id=account_id,
            balance=balance,
            lifetime_consumed_units=0,
            monthly_consumed_units=0,
            monthly_period_anchor=now,
            tier=tier,
            subscription_active=tier != Tier.FREE,
            subscription_expires_at=None,
            created_at=now,
            updated_at=now,
        )
        self.session.add(new_account)

        try:
            await self.session.flush()
            self.store.add_entry(
                account_id,
                LedgerEntryType.INITIALIZE,
                credits_delta=balance,
                balance_after=balance,
                description=f"Initialized on {tier.value} tier",
            )
            await self.session.flush()
            await self.session.commit()
        except IntegrityError:
            # Race condition - account created by another request
            await self.session.rollback()
            account = await self.store.find_account(account_id)
            if account is None:
                raise StorageError("Account creation failed due to race condition")
            return account_to_domain(account)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError(f"Account creation failed: {type(e).__name__}") from e

        metrics.accounts_created_total.labels(tier=tier.value).inc()
        logger.info("account_initialized", account_id=account_id, tier=tier.value, balance=balance)

        return account_to_domain(new_account)

    async def reset_monthly_window(self, account_id: str) -> AccountSnapshot:
        """
        Zero the monthly counter and restart the window. Balance and lifetime
        usage are untouched.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self.store.lock_account_for_update(account_id)
        account.monthly_consumed_units = 0
        account.monthly_period_anchor = _utc_now()
        self.store.add_entry(
            account_id,
            LedgerEntryType.MONTHLY_RESET,
            credits_delta=0,
            balance_after=account.balance,
            description="Monthly usage window reset",
        )
        await self.store.commit("monthly reset")

        logger.info("monthly_window_reset", account_id=account_id)
        return account_to_domain(account)

    async def reset_due_monthly_windows(self, now: datetime | None = None) -> list[str]:
        """
        Reset every account whose window started at least monthly_period_days
        ago. Entry point for the external scheduler.
        """
        now = now or _utc_now()
        cutoff = now - timedelta(days=self.policy.monthly_period_days)
        stmt = (
            update(Account)
            .where(Account.monthly_period_anchor <= cutoff)
            .values(monthly_consumed_units=0, monthly_period_anchor=now)
            .returning(Account.id, Account.balance)
            .execution_options(synchronize_session=False)
        )
        try:
            rows = (await self.session.execute(stmt)).all()
        except SQLAlchemyError as e:
            await self.store.rollback()
            raise StorageError(f"Monthly reset batch failed: {type(e).__name__}") from e

        for account_id, balance in rows:
            self.store.add_entry(
                account_id,
                LedgerEntryType.MONTHLY_RESET,
                credits_delta=0,
                balance_after=balance,
                description="Monthly usage window reset (scheduled)",
            )
        await self.store.commit("monthly reset batch")

        reset_ids = [account_id for account_id, _ in rows]
        logger.info("monthly_windows_reset", count=len(reset_ids))
        return reset_ids
