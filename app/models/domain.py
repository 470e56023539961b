"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Rows returned by the external backend are the one exception: they are opaque
records owned by the user's schema.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.models.api import Tier

if TYPE_CHECKING:
    from app.config import Settings


@dataclass(frozen=True)
class CreditPolicy:
    """Immutable credit policy injected into the ledger services."""

    units_per_credit: int = 2000
    free_tier_credits: int = 5
    pro_tier_credits: int = 100
    enterprise_tier_credits: int = 1000
    default_subscription_days: int = 30
    monthly_period_days: int = 30

    def __post_init__(self) -> None:
        """Validate policy constants."""
        if self.units_per_credit <= 0:
            raise ValueError(f"units_per_credit must be positive: {self.units_per_credit}")
        for name in ("free_tier_credits", "pro_tier_credits", "enterprise_tier_credits"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if self.default_subscription_days <= 0:
            raise ValueError("default_subscription_days must be positive")
        if self.monthly_period_days <= 0:
            raise ValueError("monthly_period_days must be positive")

    def credits_for_tier(self, tier: Tier) -> int:
        """Starting (and maximum) allowance for a tier."""
        if tier == Tier.PRO:
            return self.pro_tier_credits
        if tier == Tier.ENTERPRISE:
            return self.enterprise_tier_credits
        return self.free_tier_credits

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CreditPolicy":
        """Build the policy from application settings."""
        return cls(
            units_per_credit=settings.units_per_credit,
            free_tier_credits=settings.free_tier_credits,
            pro_tier_credits=settings.pro_tier_credits,
            enterprise_tier_credits=settings.enterprise_tier_credits,
            default_subscription_days=settings.default_subscription_days,
            monthly_period_days=settings.monthly_period_days,
        )


@dataclass(frozen=True)
class AccountSnapshot:
    """Immutable account state read from the ledger store."""

    account_id: str
    tier: Tier
    balance: int
    lifetime_consumed_units: int
    monthly_consumed_units: int
    monthly_period_anchor: datetime
    subscription_active: bool
    subscription_expires_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def __post_init__(self) -> None:
        """Validate ledger invariants."""
        if self.balance < 0:
            raise ValueError(f"Balance cannot be negative: {self.balance}")
        if self.lifetime_consumed_units < 0 or self.monthly_consumed_units < 0:
            raise ValueError("Usage counters cannot be negative")


@dataclass(frozen=True)
class BalanceCheck:
    """Result of a read-only credit check."""

    allowed: bool
    balance: int
    max_units: int
    message: str


@dataclass(frozen=True)
class ConsumeResult:
    """Counters after a successful consume."""

    balance: int
    lifetime_consumed: int
    monthly_consumed: int
    units_consumed: int
    message: str


@dataclass(frozen=True)
class AccountStatusView:
    """Derived read-only view of an account's credits and subscription."""

    account_id: str
    tier: Tier
    balance: int
    max_credits: int
    units_per_credit: int
    available_units: int
    lifetime_consumed_units: int
    monthly_consumed_units: int
    monthly_period_anchor: datetime
    subscription_active: bool
    subscription_expires_at: datetime | None
    has_expired: bool
    days_until_expiry: int | None
    is_active: bool


@dataclass(frozen=True)
class PublicBackendSelection:
    """Backend selection as it may be shown outside the server boundary."""

    account_id: str
    provider_project_ref: str
    project_name: str | None
    public_endpoint: str
    public_key: str
    selected_at: datetime | None


@dataclass(frozen=True)
class BackendSelection:
    """Backend selection including the privileged key. Server-side only."""

    account_id: str
    provider_project_ref: str
    project_name: str | None
    public_endpoint: str
    public_key: str
    privileged_key: str = field(repr=False)
    selected_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate selection fields."""
        if not self.provider_project_ref:
            raise ValueError("provider_project_ref cannot be empty")
        if not self.public_endpoint:
            raise ValueError("public_endpoint cannot be empty")
        if not self.privileged_key:
            raise ValueError("privileged_key cannot be empty")

    def to_public(self) -> PublicBackendSelection:
        """Drop the privileged key."""
        return PublicBackendSelection(
            account_id=self.account_id,
            provider_project_ref=self.provider_project_ref,
            project_name=self.project_name,
            public_endpoint=self.public_endpoint,
            public_key=self.public_key,
            selected_at=self.selected_at,
        )


@dataclass(frozen=True)
class QueryResult:
    """Normalized result of one proxied query."""

    operation: str
    table: str
    rows: list[dict[str, Any]]

    @property
    def row_count(self) -> int:
        return len(self.rows)
