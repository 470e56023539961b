"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

The service sits behind a trusted gateway: the gateway authenticates the end
user and forwards the account id in X-Account-Id, and proves itself with the
shared service key in X-API-Key.
"""

import secrets

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_db
from app.models.domain import CreditPolicy
from app.services.backend_selection import BackendSelectionService
from app.services.credits import CreditService
from app.services.query_executor import QueryExecutor
from app.services.query_validator import QueryValidator
from app.services.subscriptions import SubscriptionService

logger = get_logger(__name__)

MAX_ACCOUNT_ID_LENGTH = 255

# Shared across requests so the connection pool is reused; closed on shutdown.
_query_executor: QueryExecutor | None = None


# ============================================================================
# Service Key Authentication (gateway-to-service)
# ============================================================================


async def require_service_key(
    x_api_key: str = Header(..., description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the shared service key from X-API-Key.

    Raises:
        HTTPException 401 if the key doesn't match
    """
    # An unset key rejects everything rather than accepting an empty header
    if not settings.service_api_key or not secrets.compare_digest(
        x_api_key.encode(), settings.service_api_key.encode()
    ):
        logger.warning("service_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


async def get_account_id(
    x_account_id: str = Header(..., description="Account id asserted by the gateway"),
    _: None = Depends(require_service_key),
) -> str:
    """
    Caller's account id from X-Account-Id.

    Raises:
        HTTPException 400 if the header is blank or too long
    """
    account_id = x_account_id.strip()
    if not account_id or len(account_id) > MAX_ACCOUNT_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"X-Account-Id must be 1-{MAX_ACCOUNT_ID_LENGTH} characters",
        )
    return account_id


# ============================================================================
# Service Factories
# ============================================================================


def get_credit_policy() -> CreditPolicy:
    """Credit policy built from settings."""
    return CreditPolicy.from_settings(settings)


def get_credit_service(
    db: AsyncSession = Depends(get_db),
    policy: CreditPolicy = Depends(get_credit_policy),
) -> CreditService:
    return CreditService(db, policy)


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    policy: CreditPolicy = Depends(get_credit_policy),
) -> SubscriptionService:
    return SubscriptionService(db, policy)


def get_backend_selection_service(
    db: AsyncSession = Depends(get_db),
) -> BackendSelectionService:
    return BackendSelectionService(db)


def get_query_validator() -> QueryValidator:
    return QueryValidator(max_limit=settings.max_query_limit)


def get_query_executor() -> QueryExecutor:
    """Process-wide executor holding the outbound HTTP connection pool."""
    global _query_executor
    if _query_executor is None:
        _query_executor = QueryExecutor(timeout=settings.proxy_timeout_seconds)
    return _query_executor


async def close_query_executor() -> None:
    """Close the shared executor (for graceful shutdown)."""
    global _query_executor
    if _query_executor is not None:
        await _query_executor.close()
        _query_executor = None
