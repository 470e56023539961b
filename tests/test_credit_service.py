"""
Tests for CreditService.

Runs against a real SQLite database so the conditional decrement and the
ledger entries are exercised end to end.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import Account, LedgerEntry
from app.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    InsufficientCreditsError,
    InvalidArgumentError,
    StorageError,
)
from app.models.api import LedgerEntryType, Tier
from app.models.domain import CreditPolicy
from app.services.credits import CreditService, build_status_view
from app.services.ledger_store import account_to_domain


async def _entries(session: AsyncSession, account_id: str) -> list[LedgerEntry]:
    result = await session.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.created_at)
    )
    return list(result.scalars().all())


class TestInitializeAccount:
    """Tests for initialize_account."""

    async def test_free_account_gets_free_allotment(self, credit_service: CreditService):
        """New free account starts with the free allotment and zero usage."""
        account = await credit_service.initialize_account("user_1")

        assert account.tier == Tier.FREE
        assert account.balance == 5
        assert account.lifetime_consumed_units == 0
        assert account.monthly_consumed_units == 0
        assert account.subscription_active is False
        assert account.subscription_expires_at is None

    async def test_pro_account_is_active_without_expiry(self, credit_service: CreditService):
        """Accounts created directly on pro are active with no expiry set."""
        account = await credit_service.initialize_account("user_pro", Tier.PRO)

        assert account.balance == 100
        assert account.subscription_active is True
        assert account.subscription_expires_at is None

    async def test_enterprise_allotment(self, credit_service: CreditService):
        """Enterprise accounts get the enterprise allotment."""
        account = await credit_service.initialize_account("user_ent", Tier.ENTERPRISE)
        assert account.balance == 1000

    async def test_idempotent(self, credit_service: CreditService, session: AsyncSession):
        """Second call returns the existing account unchanged."""
        await credit_service.initialize_account("user_1")
        await credit_service.consume("user_1")

        again = await credit_service.initialize_account("user_1", Tier.PRO)

        assert again.tier == Tier.FREE
        assert again.balance == 4
        count = await session.scalar(select(func.count()).select_from(Account))
        assert count == 1

    async def test_records_initialize_entry(
        self, credit_service: CreditService, session: AsyncSession
    ):
        """Creation is recorded in the ledger."""
        await credit_service.initialize_account("user_1")

        entries = await _entries(session, "user_1")
        assert [e.entry_type for e in entries] == [LedgerEntryType.INITIALIZE]
        assert entries[0].credits_delta == 5
        assert entries[0].balance_after == 5

    async def test_rejects_empty_id(self, credit_service: CreditService):
        """Empty account id is rejected."""
        with pytest.raises(InvalidArgumentError):
            await credit_service.initialize_account("")


class TestCheckBalance:
    """Tests for check_balance."""

    async def test_allowed_with_credits(self, credit_service: CreditService):
        """Positive balance allows the action and reports tokens."""
        await credit_service.initialize_account("user_1")

        result = await credit_service.check_balance("user_1")

        assert result.allowed is True
        assert result.balance == 5
        assert result.max_units == 2000
        assert result.message == "You have 5 credits remaining (10000 tokens)"

    async def test_not_allowed_at_zero(self, session: AsyncSession):
        """Zero balance denies with the upgrade message."""
        service = CreditService(session, CreditPolicy(free_tier_credits=0))
        await service.initialize_account("user_0")

        result = await service.check_balance("user_0")

        assert result.allowed is False
        assert result.balance == 0
        assert result.max_units == 0
        assert result.message == InsufficientCreditsError.DEFAULT_MESSAGE

    async def test_does_not_mutate(self, credit_service: CreditService):
        """Checking is read-only."""
        await credit_service.initialize_account("user_1")

        await credit_service.check_balance("user_1")
        await credit_service.check_balance("user_1")

        account = await credit_service.get_account("user_1")
        assert account.balance == 5
        assert account.lifetime_consumed_units == 0

    async def test_unknown_account(self, credit_service: CreditService):
        """Unknown account raises AccountNotFoundError."""
        with pytest.raises(AccountNotFoundError):
            await credit_service.check_balance("nobody")


class TestConsume:
    """Tests for consume."""

    async def test_happy_path(self, credit_service: CreditService, session: AsyncSession):
        """Check then consume: balance drops by one and usage grows by one credit of units."""
        await credit_service.initialize_account("user_1")

        check = await credit_service.check_balance("user_1")
        assert check.allowed is True

        result = await credit_service.consume("user_1")

        assert result.balance == 4
        assert result.lifetime_consumed == 2000
        assert result.monthly_consumed == 2000
        assert result.units_consumed == 2000
        assert result.message == "Request processed. 4 credits remaining."

        entries = await _entries(session, "user_1")
        assert [e.entry_type for e in entries] == [
            LedgerEntryType.INITIALIZE,
            LedgerEntryType.CONSUME,
        ]
        assert entries[-1].credits_delta == -1
        assert entries[-1].balance_after == 4

    async def test_exhaustion(self, credit_service: CreditService):
        """After the allotment is used, the next consume fails without mutation."""
        await credit_service.initialize_account("user_1")
        for _ in range(5):
            await credit_service.consume("user_1")

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await credit_service.consume("user_1")

        assert exc_info.value.balance == 0
        account = await credit_service.get_account("user_1")
        assert account.balance == 0
        assert account.lifetime_consumed_units == 5 * 2000

        check = await credit_service.check_balance("user_1")
        assert check.allowed is False

    async def test_usage_tracks_consumed_credits(self, credit_service: CreditService):
        """Lifetime units always equal consumed credits times units per credit."""
        await credit_service.initialize_account("user_1")

        for expected in range(1, 4):
            result = await credit_service.consume("user_1")
            assert result.lifetime_consumed == expected * 2000
            assert result.balance == 5 - expected

    async def test_unknown_account(self, credit_service: CreditService):
        """Consume on an unknown account raises AccountNotFoundError."""
        with pytest.raises(AccountNotFoundError):
            await credit_service.consume("nobody")

    async def test_no_double_spend(
        self, session_factory: async_sessionmaker[AsyncSession]
    ):
        """Concurrent consumes never take more credits than the balance held."""
        policy = CreditPolicy(free_tier_credits=2)
        async with session_factory() as seed:
            await CreditService(seed, policy).initialize_account("user_race")

        async def consume_once() -> object:
            async with session_factory() as db:
                try:
                    return await CreditService(db, policy).consume("user_race")
                except InsufficientCreditsError as exc:
                    return exc

        results = await asyncio.gather(*(consume_once() for _ in range(6)))

        successes = [r for r in results if not isinstance(r, InsufficientCreditsError)]
        failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
        assert len(successes) == 2
        assert len(failures) == 4
        assert sorted(r.balance for r in successes) == [0, 1]

        async with session_factory() as check:
            account = await CreditService(check, policy).get_account("user_race")
        assert account.balance == 0
        assert account.lifetime_consumed_units == 2 * policy.units_per_credit

    async def test_sees_writes_from_other_sessions(
        self, session_factory: async_sessionmaker[AsyncSession], policy: CreditPolicy
    ):
        """Balances are re-read, never served from a session cache."""
        async with session_factory() as reader_session, session_factory() as writer_session:
            reader = CreditService(reader_session, policy)
            writer = CreditService(writer_session, policy)

            await writer.initialize_account("user_1")
            assert (await reader.get_account("user_1")).balance == 5
            await reader_session.rollback()

            await writer.consume("user_1")
            assert (await reader.get_account("user_1")).balance == 4
            await reader_session.rollback()


class TestStatusProjection:
    """Tests for status_projection and build_status_view."""

    async def test_free_account(self, credit_service: CreditService):
        """Free account status reports allotment and available tokens."""
        await credit_service.initialize_account("user_1")
        await credit_service.consume("user_1")

        view = await credit_service.status_projection("user_1")

        assert view.tier == Tier.FREE
        assert view.balance == 4
        assert view.max_credits == 5
        assert view.available_units == 4 * 2000
        assert view.has_expired is False
        assert view.days_until_expiry is None
        assert view.is_active is False

    def test_expired_subscription_is_reported_not_applied(self, policy: CreditPolicy, make_snapshot):
        """Lapsed subscription shows has_expired while the tier is still pro."""
        now = datetime.now(UTC)
        account = make_snapshot(
            tier=Tier.PRO,
            balance=40,
            subscription_active=True,
            subscription_expires_at=now - timedelta(days=2),
        )

        view = build_status_view(account, policy, now)

        assert view.tier == Tier.PRO
        assert view.has_expired is True
        assert view.is_active is False
        assert view.days_until_expiry == -2

    def test_days_until_expiry_rounds_up(self, policy: CreditPolicy, make_snapshot):
        """Partial days count as a whole day."""
        now = datetime.now(UTC)
        account = make_snapshot(
            tier=Tier.PRO,
            subscription_active=True,
            subscription_expires_at=now + timedelta(days=9, hours=3),
        )

        view = build_status_view(account, policy, now)

        assert view.days_until_expiry == 10
        assert view.is_active is True
        assert view.max_credits == 100


class TestMonthlyWindow:
    """Tests for monthly usage window resets."""

    async def test_reset_keeps_balance_and_lifetime(self, credit_service: CreditService):
        """Only the monthly counter is zeroed."""
        await credit_service.initialize_account("user_1")
        await credit_service.consume("user_1")

        account = await credit_service.reset_monthly_window("user_1")

        assert account.monthly_consumed_units == 0
        assert account.lifetime_consumed_units == 2000
        assert account.balance == 4

    async def test_reset_due_windows_only(
        self, credit_service: CreditService, session: AsyncSession
    ):
        """Batch reset touches only windows older than the period."""
        await credit_service.initialize_account("old")
        await credit_service.initialize_account("recent")
        await credit_service.consume("old")
        await credit_service.consume("recent")

        await session.execute(
            update(Account)
            .where(Account.id == "old")
            .values(monthly_period_anchor=datetime.now(UTC) - timedelta(days=31))
        )
        await session.commit()

        reset = await credit_service.reset_due_monthly_windows()

        assert reset == ["old"]
        assert (await credit_service.get_account("old")).monthly_consumed_units == 0
        assert (await credit_service.get_account("recent")).monthly_consumed_units == 2000

    async def test_unknown_account(self, credit_service: CreditService):
        """Reset on an unknown account raises AccountNotFoundError."""
        with pytest.raises(AccountNotFoundError):
            await credit_service.reset_monthly_window("nobody")


class TestAccountToDomain:
    """Tests for stored-state integrity checks."""

    def test_negative_balance_is_reported(self):
        """A negative stored balance surfaces as DataIntegrityError."""
        now = datetime.now(UTC)
        account = Account(
            id="broken",
            balance=-1,
            lifetime_consumed_units=0,
            monthly_consumed_units=0,
            monthly_period_anchor=now,
            tier=Tier.FREE,
            subscription_active=False,
            subscription_expires_at=None,
            created_at=now,
            updated_at=now,
        )

        with pytest.raises(DataIntegrityError):
            account_to_domain(account)

    def test_naive_timestamps_become_utc(self):
        """Timestamps without tzinfo are read as UTC."""
        naive = datetime(2026, 1, 1, 12, 0, 0)
        account = Account(
            id="user_1",
            balance=1,
            lifetime_consumed_units=0,
            monthly_consumed_units=0,
            monthly_period_anchor=naive,
            tier=Tier.FREE,
            subscription_active=False,
            subscription_expires_at=None,
            created_at=naive,
            updated_at=naive,
        )

        snapshot = account_to_domain(account)

        assert snapshot.monthly_period_anchor.tzinfo is UTC


class TestConsumeFailsClosed:
    """A consume that cannot be confirmed is refused and leaves no trace."""

    async def _assert_untouched(
        self, session_factory: async_sessionmaker[AsyncSession], policy: CreditPolicy
    ) -> None:
        async with session_factory() as check:
            account = await CreditService(check, policy).get_account("user_1")
            entries = await _entries(check, "user_1")
        assert account.balance == 5
        assert account.lifetime_consumed_units == 0
        assert account.monthly_consumed_units == 0
        assert [e.entry_type for e in entries] == [LedgerEntryType.INITIALIZE]

    async def test_commit_failure(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        policy: CreditPolicy,
    ):
        """Commit failure rolls back the decrement and raises StorageError."""
        service = CreditService(session, policy)
        await service.initialize_account("user_1")

        failing_commit = AsyncMock(
            side_effect=OperationalError("COMMIT", {}, Exception("disk I/O error"))
        )
        rollback_spy = AsyncMock(wraps=session.rollback)
        with (
            patch.object(session, "commit", failing_commit),
            patch.object(session, "rollback", rollback_spy),
        ):
            with pytest.raises(StorageError):
                await service.consume("user_1")

        failing_commit.assert_awaited_once()
        rollback_spy.assert_awaited()
        await self._assert_untouched(session_factory, policy)

    async def test_execute_failure(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        policy: CreditPolicy,
    ):
        """A failed conditional update raises StorageError without mutating."""
        service = CreditService(session, policy)
        await service.initialize_account("user_1")

        failing_execute = AsyncMock(
            side_effect=OperationalError("UPDATE accounts", {}, Exception("database is locked"))
        )
        rollback_spy = AsyncMock(wraps=session.rollback)
        with (
            patch.object(session, "execute", failing_execute),
            patch.object(session, "rollback", rollback_spy),
        ):
            with pytest.raises(StorageError):
                await service.consume("user_1")

        rollback_spy.assert_awaited()
        await self._assert_untouched(session_factory, policy)

    async def test_mock_session_commit_failure(self, db_session, policy: CreditPolicy):
        """Rollback runs before StorageError reaches the caller."""
        row = MagicMock()
        row.one_or_none = MagicMock(return_value=(4, 2000, 2000))
        db_session.execute = AsyncMock(return_value=row)
        db_session.commit = AsyncMock(side_effect=SQLAlchemyError("connection reset"))

        with pytest.raises(StorageError):
            await CreditService(db_session, policy).consume("user_1")

        db_session.rollback.assert_awaited_once()
