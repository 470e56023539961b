"""
Admin API routes for the subscription lifecycle.

Called by the billing backend and the operations console, never by end users.
Protected by the service key; the target account comes from the path.
"""

from fastapi import APIRouter, Depends
from structlog import get_logger

from app.api.dependencies import (
    get_credit_service,
    get_subscription_service,
    require_service_key,
)
from app.api.routes import account_response, ledger_http_error
from app.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    InvalidArgumentError,
    StorageError,
)
from app.models.api import (
    AccountResponse,
    ExpiryCheckResponse,
    GrantBonusRequest,
    SubscriptionDurationRequest,
)
from app.services.credits import CreditService
from app.services.subscriptions import SubscriptionService

logger = get_logger(__name__)
router = APIRouter(
    prefix="/v1/admin/accounts",
    tags=["admin"],
    dependencies=[Depends(require_service_key)],
)

_LIFECYCLE_ERRORS = (AccountNotFoundError, InvalidArgumentError, StorageError, DataIntegrityError)


@router.post("/{account_id}/upgrade", response_model=AccountResponse)
async def upgrade_account(
    account_id: str,
    request: SubscriptionDurationRequest | None = None,
    service: SubscriptionService = Depends(get_subscription_service),
) -> AccountResponse:
    """Move the account to pro. The balance is reset to the pro allotment."""
    duration = request.duration_days if request else None
    try:
        account = await service.upgrade(account_id, duration)
    except _LIFECYCLE_ERRORS as exc:
        raise ledger_http_error(exc) from exc

    logger.info("admin_upgraded_account", account_id=account_id)
    return account_response(account)


@router.post("/{account_id}/downgrade", response_model=AccountResponse)
async def downgrade_account(
    account_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
) -> AccountResponse:
    """Move the account back to free with the free allotment."""
    try:
        account = await service.downgrade(account_id)
    except _LIFECYCLE_ERRORS as exc:
        raise ledger_http_error(exc) from exc

    logger.info("admin_downgraded_account", account_id=account_id)
    return account_response(account)


@router.post("/{account_id}/renew", response_model=AccountResponse)
async def renew_subscription(
    account_id: str,
    request: SubscriptionDurationRequest | None = None,
    service: SubscriptionService = Depends(get_subscription_service),
) -> AccountResponse:
    """Extend the subscription from now. Balance is not touched."""
    duration = request.duration_days if request else None
    try:
        account = await service.renew(account_id, duration)
    except _LIFECYCLE_ERRORS as exc:
        raise ledger_http_error(exc) from exc
    return account_response(account)


@router.post("/{account_id}/bonus", response_model=AccountResponse)
async def grant_bonus(
    account_id: str,
    request: GrantBonusRequest,
    service: SubscriptionService = Depends(get_subscription_service),
) -> AccountResponse:
    """Add bonus credits on top of the current balance."""
    try:
        account = await service.grant_bonus(account_id, request.amount)
    except _LIFECYCLE_ERRORS as exc:
        raise ledger_http_error(exc) from exc

    logger.info("admin_granted_bonus", account_id=account_id, amount=request.amount)
    return account_response(account)


@router.post("/{account_id}/check-expiry", response_model=ExpiryCheckResponse)
async def check_expiry(
    account_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
) -> ExpiryCheckResponse:
    """Downgrade the account if its subscription has lapsed."""
    try:
        expired = await service.check_expiry(account_id)
    except _LIFECYCLE_ERRORS as exc:
        raise ledger_http_error(exc) from exc
    return ExpiryCheckResponse(account_id=account_id, expired=expired)


@router.post("/{account_id}/reset-monthly", response_model=AccountResponse)
async def reset_monthly_window(
    account_id: str,
    service: CreditService = Depends(get_credit_service),
) -> AccountResponse:
    """Zero the monthly usage counter and restart the window."""
    try:
        account = await service.reset_monthly_window(account_id)
    except _LIFECYCLE_ERRORS as exc:
        raise ledger_http_error(exc) from exc
    return account_response(account)
