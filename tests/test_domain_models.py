"""
Tests for domain models, configuration and the logging processors.
"""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
import structlog
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from app.config import ConfigurationError, Settings
from app.models.api import (
    MAX_BONUS_CREDITS,
    MAX_SUBSCRIPTION_DAYS,
    GrantBonusRequest,
    SubscriptionDurationRequest,
    Tier,
)
from app.models.domain import AccountSnapshot, CreditPolicy, QueryResult
from app.observability.logging import drop_secrets, log_context
from app.observability.tracing import add_span_attributes


class TestCreditPolicy:
    """Tests for CreditPolicy."""

    def test_defaults(self):
        """Default policy values."""
        policy = CreditPolicy()
        assert policy.units_per_credit == 2000
        assert policy.credits_for_tier(Tier.FREE) == 5
        assert policy.credits_for_tier(Tier.PRO) == 100
        assert policy.credits_for_tier(Tier.ENTERPRISE) == 1000

    def test_from_settings(self):
        """Policy mirrors settings."""
        settings = Settings(
            database_url="postgresql+asyncpg://u:p@localhost/db",
            free_tier_credits=3,
            pro_tier_credits=50,
        )
        policy = CreditPolicy.from_settings(settings)
        assert policy.free_tier_credits == 3
        assert policy.pro_tier_credits == 50

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"units_per_credit": 0},
            {"free_tier_credits": -1},
            {"default_subscription_days": 0},
            {"monthly_period_days": -5},
        ],
    )
    def test_invalid_policy(self, kwargs):
        """Invalid constants are rejected at construction."""
        with pytest.raises(ValueError):
            CreditPolicy(**kwargs)

    @given(
        free=st.integers(min_value=0, max_value=10_000),
        pro=st.integers(min_value=0, max_value=10_000),
        enterprise=st.integers(min_value=0, max_value=10_000),
    )
    def test_credits_for_tier_matches_configuration(self, free, pro, enterprise):
        """Every tier maps to its configured allotment."""
        policy = CreditPolicy(
            free_tier_credits=free, pro_tier_credits=pro, enterprise_tier_credits=enterprise
        )
        assert policy.credits_for_tier(Tier.FREE) == free
        assert policy.credits_for_tier(Tier.PRO) == pro
        assert policy.credits_for_tier(Tier.ENTERPRISE) == enterprise


class TestAccountSnapshot:
    """Tests for AccountSnapshot invariants."""

    def _snapshot(self, **overrides) -> AccountSnapshot:
        now = datetime.now(UTC)
        values = {
            "account_id": "user_1",
            "tier": Tier.FREE,
            "balance": 5,
            "lifetime_consumed_units": 0,
            "monthly_consumed_units": 0,
            "monthly_period_anchor": now,
            "subscription_active": False,
            "subscription_expires_at": None,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        return AccountSnapshot(**values)

    def test_valid(self):
        """Non-negative values are accepted."""
        assert self._snapshot().balance == 5

    def test_negative_balance(self):
        """Negative balance is rejected."""
        with pytest.raises(ValueError):
            self._snapshot(balance=-1)

    def test_negative_usage(self):
        """Negative usage counters are rejected."""
        with pytest.raises(ValueError):
            self._snapshot(monthly_consumed_units=-1)

    def test_frozen(self):
        """Snapshots are immutable."""
        snapshot = self._snapshot()
        with pytest.raises(AttributeError):
            snapshot.balance = 10  # type: ignore[misc]


class TestQueryResult:
    """Tests for QueryResult."""

    def test_row_count(self):
        """row_count follows the rows."""
        assert QueryResult("select", "todos", [{"id": 1}, {"id": 2}]).row_count == 2
        assert QueryResult("delete", "todos", []).row_count == 0


class TestAdminRequests:
    """Tests for admin request bodies."""

    def test_duration_defaults_to_policy(self):
        """An empty body leaves the duration for the service to fill in."""
        assert SubscriptionDurationRequest().duration_days is None
        assert SubscriptionDurationRequest.model_validate({}).duration_days is None

    @pytest.mark.parametrize("days", [0, -1, MAX_SUBSCRIPTION_DAYS + 1])
    def test_duration_range(self, days):
        """Duration must be positive and within the cap."""
        with pytest.raises(ValidationError):
            SubscriptionDurationRequest(duration_days=days)

    @pytest.mark.parametrize("amount", [0, -5, MAX_BONUS_CREDITS + 1, 2**63])
    def test_bonus_range(self, amount):
        """Bonus amount must be positive and within the cap."""
        with pytest.raises(ValidationError):
            GrantBonusRequest(amount=amount)

    def test_bonus_cap_accepted(self):
        """The cap itself is allowed."""
        assert GrantBonusRequest(amount=MAX_BONUS_CREDITS).amount == MAX_BONUS_CREDITS


class TestSettings:
    """Tests for fail-fast configuration."""

    def test_requires_postgres(self):
        """A non-PostgreSQL URL stops startup."""
        with pytest.raises(ConfigurationError):
            Settings(database_url="mysql://u:p@localhost/db")

    def test_requires_project_ref_placeholder(self):
        """The provider template must contain the project ref placeholder."""
        with pytest.raises(ConfigurationError):
            Settings(
                database_url="postgresql://u:p@localhost/db",
                provider_rest_url_template="https://example.com/rest/v1",
            )


class TestDropSecrets:
    """Tests for the credential-masking log processor."""

    def test_masks_credential_keys(self):
        """Credential-bearing keys are masked, others kept."""
        event = {
            "event": "backend_selected",
            "privileged_key": "sk-secret",
            "apikey": "sk-secret",
            "Authorization": "Bearer sk-secret",
            "account_id": "user_1",
        }

        result = drop_secrets(None, "info", event)

        assert result["privileged_key"] == "[redacted]"
        assert result["apikey"] == "[redacted]"
        assert result["Authorization"] == "[redacted]"
        assert result["account_id"] == "user_1"


class TestLogContext:
    """Tests for log_context binding."""

    def test_binds_and_unbinds(self):
        """Context is visible inside the block only; None values are skipped."""
        with log_context(request_id="req-1", account_id=None):
            bound = structlog.contextvars.get_contextvars()
            assert bound["request_id"] == "req-1"
            assert "account_id" not in bound

        assert "request_id" not in structlog.contextvars.get_contextvars()


class TestSpanAttributes:
    """Tests for add_span_attributes."""

    def test_skips_none_and_secrets(self):
        """None values and credential names never reach the span."""
        span = MagicMock()

        add_span_attributes(
            span, operation="select", limit=10, privileged_key="sk", table=None, order=["a"]
        )

        span.set_attribute.assert_any_call("operation", "select")
        span.set_attribute.assert_any_call("limit", 10)
        span.set_attribute.assert_any_call("order", "['a']")
        assert span.set_attribute.call_count == 3
