"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class Tier(str, Enum):
    """Allowance tier enumeration."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class LedgerEntryType(str, Enum):
    """Ledger entry type enumeration."""

    INITIALIZE = "initialize"
    CONSUME = "consume"
    GRANT = "grant"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    RENEW = "renew"
    EXPIRE = "expire"
    MONTHLY_RESET = "monthly_reset"


# ============================================================================
# Credit Models
# ============================================================================


class InitializeAccountRequest(BaseModel):
    """POST /v1/accounts request body."""

    tier: Tier = Tier.FREE


class AccountResponse(BaseModel):
    """Account snapshot response."""

    account_id: str
    tier: Tier
    balance: int
    lifetime_consumed_units: int
    monthly_consumed_units: int
    monthly_period_anchor: str
    subscription_active: bool
    subscription_expires_at: str | None = None


class BalanceResponse(BaseModel):
    """GET /v1/credits/balance response."""

    allowed: bool
    balance: int
    max_units: int
    message: str


class ConsumeResponse(BaseModel):
    """POST /v1/credits/consume response."""

    balance: int
    lifetime_consumed: int
    monthly_consumed: int
    units_consumed: int
    message: str


class AccountStatusResponse(BaseModel):
    """GET /v1/credits/status response."""

    account_id: str
    tier: Tier
    balance: int
    max_credits: int
    units_per_credit: int
    available_units: int
    lifetime_consumed_units: int
    monthly_consumed_units: int
    monthly_period_anchor: str
    subscription_active: bool
    subscription_expires_at: str | None = None
    has_expired: bool
    days_until_expiry: int | None = None
    is_active: bool


# ============================================================================
# Subscription Models
# ============================================================================


# Upper bounds for admin inputs; balance is a 32-bit INTEGER column
MAX_BALANCE = 2**31 - 1
MAX_BONUS_CREDITS = 1_000_000
MAX_SUBSCRIPTION_DAYS = 3660


class SubscriptionDurationRequest(BaseModel):
    """Body for upgrade and renew. Omit duration_days for the policy default."""

    duration_days: int | None = Field(None, gt=0, le=MAX_SUBSCRIPTION_DAYS)


class GrantBonusRequest(BaseModel):
    """POST /v1/admin/accounts/{account_id}/bonus request body."""

    amount: int = Field(..., gt=0, le=MAX_BONUS_CREDITS)


class ExpiryCheckResponse(BaseModel):
    """POST /v1/admin/accounts/{account_id}/check-expiry response."""

    account_id: str
    expired: bool


# ============================================================================
# Backend Selection Models
# ============================================================================


class SelectBackendRequest(BaseModel):
    """PUT /v1/backend/selection request body."""

    provider_project_ref: str = Field(..., min_length=1, max_length=255)
    project_name: str | None = Field(None, max_length=255)
    public_endpoint: str | None = Field(None, max_length=1024)
    public_key: str = Field(..., min_length=1)
    privileged_key: str = Field(..., min_length=1)

    @field_validator("public_endpoint")
    @classmethod
    def validate_public_endpoint(cls, v: str | None) -> str | None:
        """Only HTTPS endpoints are accepted, except for local development."""
        if v is None:
            return v
        if not v.startswith(("https://", "http://localhost", "http://127.0.0.1")):
            raise ValueError("public_endpoint must be an https:// URL")
        return v.rstrip("/")


class BackendSelectionResponse(BaseModel):
    """Public view of the selected backend. Never carries the privileged key."""

    provider_project_ref: str
    project_name: str | None = None
    public_endpoint: str
    public_key: str
    selected_at: str | None = None


# ============================================================================
# Query Proxy Models
# ============================================================================


class QueryResponse(BaseModel):
    """POST /v1/db/query response."""

    success: Literal[True] = True
    operation: str
    table: str
    data: list[dict[str, Any]]
    row_count: int


class QueryErrorResponse(BaseModel):
    """Error body for rejected or failed proxied queries."""

    error: str
    code: str
    field: str | None = None
    provider_status: int | None = None
    retryable: bool = False


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
    version: str
