"""
Subscription Service - Tier and balance lifecycle.

State machine:
    free --upgrade--> pro (active, timed) --renew--> pro (extended)
    pro --expiry reached and checked--> free
    pro --downgrade--> free

Expiry is lazy: nothing here runs on a timer. An external scheduler calls
check_expiry / expire_due_subscriptions.

Every mutation follows the write verification pattern:
1. Lock the row
2. Mutate and stage a ledger entry
3. Flush and read back
4. Commit
"""

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Account
from app.exceptions import DataIntegrityError, InvalidArgumentError, StorageError
from app.models.api import (
    MAX_BALANCE,
    MAX_BONUS_CREDITS,
    MAX_SUBSCRIPTION_DAYS,
    LedgerEntryType,
    Tier,
)
from app.models.domain import AccountSnapshot, CreditPolicy
from app.observability.metrics import metrics
from app.services.ledger_store import LedgerStore, account_to_domain, as_utc, utc_now

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return utc_now()


def _require_positive_int(value: object, name: str, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= maximum:
        raise InvalidArgumentError(f"{name} must be an integer from 1 to {maximum}, got {value!r}")
    return value


class SubscriptionService:
    """Upgrade, downgrade, renew, bonus grants and lazy expiry."""

    def __init__(self, session: AsyncSession, policy: CreditPolicy | None = None) -> None:
        """Initialize subscription service with database session and credit policy."""
        self.session = session
        self.policy = policy or CreditPolicy()
        self.store = LedgerStore(session)

    async def upgrade(self, account_id: str, duration_days: int | None = None) -> AccountSnapshot:
        """
        Move the account to pro.

        The balance is reset to the pro allotment, not added to: unused free
        credits are forfeited.

        Raises:
            AccountNotFoundError: Account doesn't exist
            InvalidArgumentError: duration_days is not a positive integer
        """
        days = _require_positive_int(
            duration_days if duration_days is not None else self.policy.default_subscription_days,
            "duration_days",
            MAX_SUBSCRIPTION_DAYS,
        )
        account = await self.store.lock_account_for_update(account_id)

        balance_before = account.balance
        expires_at = _utc_now() + timedelta(days=days)
        account.tier = Tier.PRO
        account.subscription_active = True
        account.balance = self.policy.pro_tier_credits
        account.subscription_expires_at = expires_at

        self.store.add_entry(
            account_id,
            LedgerEntryType.UPGRADE,
            credits_delta=account.balance - balance_before,
            balance_after=account.balance,
            description=f"Upgraded to pro for {days} days",
        )
        await self._verify_and_commit(account, "upgrade")

        metrics.record_subscription_operation("upgrade", Tier.PRO.value)
        logger.info(
            "subscription_upgraded",
            account_id=account_id,
            expires_at=expires_at.isoformat(),
            balance_before=balance_before,
        )
        return account_to_domain(account)

    async def downgrade(self, account_id: str) -> AccountSnapshot:
        """
        Move the account back to free with the free allotment.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self.store.lock_account_for_update(account_id)
        self._apply_downgrade(account, LedgerEntryType.DOWNGRADE, "Downgraded to free tier")
        await self._verify_and_commit(account, "downgrade")

        metrics.record_subscription_operation("downgrade", Tier.FREE.value)
        logger.info("subscription_downgraded", account_id=account_id)
        return account_to_domain(account)

    async def renew(self, account_id: str, duration_days: int | None = None) -> AccountSnapshot:
        """
        Push the expiry to now + duration_days. Balance is not touched.

        Raises:
            AccountNotFoundError: Account doesn't exist
            InvalidArgumentError: duration_days is not a positive integer
        """
        days = _require_positive_int(
            duration_days if duration_days is not None else self.policy.default_subscription_days,
            "duration_days",
            MAX_SUBSCRIPTION_DAYS,
        )
        account = await self.store.lock_account_for_update(account_id)

        expires_at = _utc_now() + timedelta(days=days)
        account.subscription_expires_at = expires_at
        self.store.add_entry(
            account_id,
            LedgerEntryType.RENEW,
            credits_delta=0,
            balance_after=account.balance,
            description=f"Subscription renewed for {days} days",
        )
        await self._verify_and_commit(account, "renew")

        metrics.record_subscription_operation("renew", Tier(account.tier).value)
        logger.info("subscription_renewed", account_id=account_id, expires_at=expires_at.isoformat())
        return account_to_domain(account)

    async def grant_bonus(self, account_id: str, amount: int) -> AccountSnapshot:
        """
        Add credits on top of the current balance, regardless of tier.

        Raises:
            AccountNotFoundError: Account doesn't exist
            InvalidArgumentError: amount out of range, or the balance would overflow
        """
        amount = _require_positive_int(amount, "amount", MAX_BONUS_CREDITS)
        account = await self.store.lock_account_for_update(account_id)
        if account.balance + amount > MAX_BALANCE:
            await self.store.rollback()
            raise InvalidArgumentError(
                f"Bonus of {amount} would take the balance past {MAX_BALANCE}"
            )

        account.balance = account.balance + amount
        self.store.add_entry(
            account_id,
            LedgerEntryType.GRANT,
            credits_delta=amount,
            balance_after=account.balance,
            description=f"Bonus grant of {amount} credits",
        )
        await self._verify_and_commit(account, "grant_bonus")

        metrics.record_subscription_operation("grant_bonus", Tier(account.tier).value)
        logger.info(
            "bonus_credits_granted", account_id=account_id, amount=amount, balance=account.balance
        )
        return account_to_domain(account)

    async def check_expiry(self, account_id: str) -> bool:
        """
        Downgrade the account if its subscription has lapsed.

        Returns True when a downgrade happened, False otherwise (no mutation).

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self.store.lock_account_for_update(account_id)
        expires_at = as_utc(account.subscription_expires_at)

        if not account.subscription_active or expires_at is None or expires_at >= _utc_now():
            # Release the row lock without writing
            await self.store.rollback()
            return False

        self._apply_downgrade(
            account, LedgerEntryType.EXPIRE, f"Subscription expired at {expires_at.isoformat()}"
        )
        await self._verify_and_commit(account, "expire")

        metrics.record_subscription_operation("expire", Tier.FREE.value)
        logger.info("subscription_expired", account_id=account_id, expired_at=expires_at.isoformat())
        return True

    async def expire_due_subscriptions(self, now: datetime | None = None) -> list[str]:
        """
        Run check_expiry for every active subscription past its expiry.
        Entry point for the external scheduler.
        """
        now = now or _utc_now()
        stmt = select(Account.id).where(
            Account.subscription_active.is_(True),
            Account.subscription_expires_at.is_not(None),
            Account.subscription_expires_at < now,
        )
        try:
            candidates = list((await self.session.execute(stmt)).scalars().all())
            await self.session.rollback()
        except SQLAlchemyError as e:
            raise StorageError(f"Expiry scan failed: {type(e).__name__}") from e

        expired: list[str] = []
        for account_id in candidates:
            if await self.check_expiry(account_id):
                expired.append(account_id)

        logger.info("subscriptions_expired", scanned=len(candidates), expired=len(expired))
        return expired

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _apply_downgrade(
        self, account: Account, entry_type: LedgerEntryType, description: str
    ) -> None:
        balance_before = account.balance
        account.tier = Tier.FREE
        account.subscription_active = False
        account.balance = self.policy.free_tier_credits
        account.subscription_expires_at = None
        self.store.add_entry(
            account.id,
            entry_type,
            credits_delta=account.balance - balance_before,
            balance_after=account.balance,
            description=description,
        )

    async def _verify_and_commit(self, account: Account, operation: str) -> None:
        """
        Flush, read the row back, compare, commit.

        Raises:
            DataIntegrityError: Stored values differ from what was written
            StorageError: Write could not be confirmed
        """
        expected_balance = account.balance
        expected_tier = Tier(account.tier)
        expected_active = account.subscription_active

        try:
            await self.session.flush()
            await self.session.refresh(account)
        except SQLAlchemyError as e:
            await self.store.rollback()
            raise StorageError(f"{operation} not confirmed: {type(e).__name__}") from e

        if (
            account.balance != expected_balance
            or Tier(account.tier) != expected_tier
            or account.subscription_active != expected_active
        ):
            await self.store.rollback()
            raise DataIntegrityError(
                f"{operation} mismatch for {account.id}: expected balance {expected_balance}, "
                f"got {account.balance}"
            )

        await self.store.commit(operation)
