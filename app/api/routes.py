"""
API Routes - FastAPI endpoints for credits, backend selection and the query proxy.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from structlog import get_logger

from app.api.dependencies import (
    get_account_id,
    get_backend_selection_service,
    get_credit_service,
    get_query_executor,
    get_query_validator,
)
from app.config import settings
from app.db.session import ping_database
from app.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    ExecutionError,
    InsufficientCreditsError,
    InvalidArgumentError,
    NoBackendSelectedError,
    QueryValidationError,
    StorageError,
    TransportError,
)
from app.models.api import (
    AccountResponse,
    AccountStatusResponse,
    BackendSelectionResponse,
    BalanceResponse,
    ConsumeResponse,
    HealthResponse,
    InitializeAccountRequest,
    QueryErrorResponse,
    QueryResponse,
    SelectBackendRequest,
)
from app.models.domain import AccountSnapshot, AccountStatusView, PublicBackendSelection
from app.observability.metrics import metrics
from app.services.backend_selection import BackendSelectionService
from app.services.credits import CreditService
from app.services.query_executor import QueryExecutor
from app.services.query_validator import QueryValidator

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Response Builders
# ============================================================================


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def account_response(account: AccountSnapshot) -> AccountResponse:
    return AccountResponse(
        account_id=account.account_id,
        tier=account.tier,
        balance=account.balance,
        lifetime_consumed_units=account.lifetime_consumed_units,
        monthly_consumed_units=account.monthly_consumed_units,
        monthly_period_anchor=account.monthly_period_anchor.isoformat(),
        subscription_active=account.subscription_active,
        subscription_expires_at=_iso(account.subscription_expires_at),
    )


def status_response(view: AccountStatusView) -> AccountStatusResponse:
    return AccountStatusResponse(
        account_id=view.account_id,
        tier=view.tier,
        balance=view.balance,
        max_credits=view.max_credits,
        units_per_credit=view.units_per_credit,
        available_units=view.available_units,
        lifetime_consumed_units=view.lifetime_consumed_units,
        monthly_consumed_units=view.monthly_consumed_units,
        monthly_period_anchor=view.monthly_period_anchor.isoformat(),
        subscription_active=view.subscription_active,
        subscription_expires_at=_iso(view.subscription_expires_at),
        has_expired=view.has_expired,
        days_until_expiry=view.days_until_expiry,
        is_active=view.is_active,
    )


def selection_response(selection: PublicBackendSelection) -> BackendSelectionResponse:
    return BackendSelectionResponse(
        provider_project_ref=selection.provider_project_ref,
        project_name=selection.project_name,
        public_endpoint=selection.public_endpoint,
        public_key=selection.public_key,
        selected_at=_iso(selection.selected_at),
    )


def ledger_http_error(exc: Exception) -> HTTPException:
    """Map ledger exceptions to HTTP errors."""
    if isinstance(exc, InsufficientCreditsError):
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=exc.message)
    if isinstance(exc, AccountNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidArgumentError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, DataIntegrityError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Account data integrity check failed",
        )
    if isinstance(exc, StorageError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger storage unavailable",
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


# ============================================================================
# Accounts & Credits
# ============================================================================


@router.post(
    "/v1/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED
)
async def initialize_account(
    request: InitializeAccountRequest | None = None,
    account_id: str = Depends(get_account_id),
    service: CreditService = Depends(get_credit_service),
) -> AccountResponse:
    """
    Create the caller's account with its tier's starting balance.

    Idempotent: an existing account is returned unchanged.
    """
    tier = request.tier if request else InitializeAccountRequest().tier
    try:
        account = await service.initialize_account(account_id, tier)
    except (InvalidArgumentError, StorageError, DataIntegrityError) as exc:
        raise ledger_http_error(exc) from exc
    return account_response(account)


@router.get("/v1/credits/balance", response_model=BalanceResponse)
async def check_balance(
    account_id: str = Depends(get_account_id),
    service: CreditService = Depends(get_credit_service),
) -> BalanceResponse:
    """Whether the caller may start an expensive action. Read-only."""
    try:
        result = await service.check_balance(account_id)
    except (AccountNotFoundError, StorageError, DataIntegrityError) as exc:
        raise ledger_http_error(exc) from exc

    return BalanceResponse(
        allowed=result.allowed,
        balance=result.balance,
        max_units=result.max_units,
        message=result.message,
    )


@router.post("/v1/credits/consume", response_model=ConsumeResponse)
async def consume_credit(
    account_id: str = Depends(get_account_id),
    service: CreditService = Depends(get_credit_service),
) -> ConsumeResponse:
    """
    Take one credit. 429 when the balance is exhausted.

    Any answer other than 200 means the action must not proceed.
    """
    try:
        result = await service.consume(account_id)
    except (
        InsufficientCreditsError,
        AccountNotFoundError,
        StorageError,
        DataIntegrityError,
    ) as exc:
        raise ledger_http_error(exc) from exc

    return ConsumeResponse(
        balance=result.balance,
        lifetime_consumed=result.lifetime_consumed,
        monthly_consumed=result.monthly_consumed,
        units_consumed=result.units_consumed,
        message=result.message,
    )


@router.get("/v1/credits/status", response_model=AccountStatusResponse)
async def credit_status(
    account_id: str = Depends(get_account_id),
    service: CreditService = Depends(get_credit_service),
) -> AccountStatusResponse:
    """Full credit and subscription status. Never mutates."""
    try:
        view = await service.status_projection(account_id)
    except (AccountNotFoundError, StorageError, DataIntegrityError) as exc:
        raise ledger_http_error(exc) from exc
    return status_response(view)


# ============================================================================
# Backend Selection
# ============================================================================


@router.get("/v1/backend/selection", response_model=BackendSelectionResponse)
async def get_backend_selection(
    account_id: str = Depends(get_account_id),
    service: BackendSelectionService = Depends(get_backend_selection_service),
) -> BackendSelectionResponse:
    """Public view of the selected backend. 404 when nothing is selected."""
    try:
        selection = await service.get_selection(account_id)
    except StorageError as exc:
        raise ledger_http_error(exc) from exc

    if selection is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=NoBackendSelectedError().args[0]
        )
    return selection_response(selection.to_public())


@router.put("/v1/backend/selection", response_model=BackendSelectionResponse)
async def select_backend(
    request: SelectBackendRequest,
    account_id: str = Depends(get_account_id),
    service: BackendSelectionService = Depends(get_backend_selection_service),
) -> BackendSelectionResponse:
    """Bind an external project to the caller's account, replacing any previous one."""
    try:
        selection = await service.select_backend(
            account_id,
            provider_project_ref=request.provider_project_ref,
            public_key=request.public_key,
            privileged_key=request.privileged_key,
            public_endpoint=request.public_endpoint,
            project_name=request.project_name,
        )
    except (AccountNotFoundError, InvalidArgumentError, StorageError) as exc:
        raise ledger_http_error(exc) from exc
    return selection_response(selection.to_public())


@router.delete("/v1/backend/selection", status_code=status.HTTP_204_NO_CONTENT)
async def deselect_backend(
    account_id: str = Depends(get_account_id),
    service: BackendSelectionService = Depends(get_backend_selection_service),
) -> Response:
    """Clear the selection. Idempotent."""
    try:
        await service.deselect(account_id)
    except StorageError as exc:
        raise ledger_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Query Proxy
# ============================================================================


def _query_error(
    status_code: int,
    error: str,
    code: str,
    field: str | None = None,
    provider_status: int | None = None,
    retryable: bool = False,
) -> JSONResponse:
    body = QueryErrorResponse(
        error=error,
        code=code,
        field=field,
        provider_status=provider_status,
        retryable=retryable,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.post(
    "/v1/db/query",
    response_model=QueryResponse,
    responses={
        400: {"model": QueryErrorResponse},
        502: {"model": QueryErrorResponse},
        503: {"model": QueryErrorResponse},
    },
)
async def proxy_query(
    payload: Any = Body(...),
    account_id: str = Depends(get_account_id),
    validator: QueryValidator = Depends(get_query_validator),
    selections: BackendSelectionService = Depends(get_backend_selection_service),
    executor: QueryExecutor = Depends(get_query_executor),
) -> QueryResponse | JSONResponse:
    """
    Validate a structured query and run it against the caller's backend.

    Nothing reaches the network unless validation passes.
    """
    try:
        query = validator.validate(payload)
    except QueryValidationError as exc:
        metrics.proxy_validation_failures_total.labels(error_type=exc.code).inc()
        logger.info("query_rejected", account_id=account_id, code=exc.code, field=exc.field)
        return _query_error(status.HTTP_400_BAD_REQUEST, exc.message, exc.code, field=exc.field)

    try:
        selection = await selections.get_selection(account_id)
        result = await executor.execute(selection, query)
    except NoBackendSelectedError as exc:
        return _query_error(status.HTTP_400_BAD_REQUEST, str(exc), "no_backend_selected")
    except ExecutionError as exc:
        return _query_error(
            status.HTTP_502_BAD_GATEWAY,
            exc.provider_message,
            "provider_error",
            provider_status=exc.status_code,
            retryable=exc.retryable,
        )
    except TransportError as exc:
        return _query_error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            exc.message,
            "transport_error",
            retryable=exc.retryable,
        )
    except StorageError:
        return _query_error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Ledger storage unavailable",
            "storage_error",
            retryable=True,
        )

    return QueryResponse(
        operation=result.operation,
        table=result.table,
        data=result.rows,
        row_count=result.row_count,
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await ping_database()
    except Exception as exc:
        logger.warning("health_check_failed", error_type=type(exc).__name__)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
        version=settings.api_version,
    )
