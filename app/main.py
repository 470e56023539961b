"""
Main Application - FastAPI application setup.

Wires the credit ledger, backend selection and query proxy routers behind
the gateway's service key.
"""

import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from app.api.admin_routes import router as admin_router
from app.api.dependencies import close_query_executor
from app.api.routes import ledger_http_error, router
from app.config import settings
from app.db.session import close_engines
from app.exceptions import LedgerError
from app.models.domain import CreditPolicy
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi

setup_logging()
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Log the active credit policy on startup; release pools on shutdown."""
    policy = CreditPolicy.from_settings(settings)
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        units_per_credit=policy.units_per_credit,
        free_tier_credits=policy.free_tier_credits,
        pro_tier_credits=policy.pro_tier_credits,
        enterprise_tier_credits=policy.enterprise_tier_credits,
        max_query_limit=settings.max_query_limit,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )
    if not settings.service_api_key:
        logger.warning("service_api_key_unset", detail="all authenticated routes will answer 401")

    yield

    logger.info("application_shutting_down")
    await close_query_executor()
    await close_engines()
    logger.info("connection_pools_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report field errors without echoing input (backend selection bodies carry keys)."""
    sanitized_errors = [
        {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    logger.warning("validation_error", path=request.url.path, errors=sanitized_errors)
    return JSONResponse(status_code=422, content={"detail": sanitized_errors})


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    """Ledger errors that escaped a route handler still get their mapped status."""
    http_error = ledger_http_error(exc)
    logger.warning(
        "ledger_error_unhandled_in_route",
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=http_error.status_code,
    )
    return JSONResponse(status_code=http_error.status_code, content={"detail": http_error.detail})


setup_tracing()
instrument_fastapi(app)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Time each request and bind request/account ids to every log line it produces."""
    start = time.perf_counter()
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    account_id = request.headers.get("X-Account-Id")
    path = request.url.path
    method = request.method

    metrics.http_requests_in_progress.labels(endpoint=path, method=method).inc()
    try:
        with log_context(request_id=request_id, account_id=account_id):
            response = await call_next(request)
    except Exception as e:
        duration = time.perf_counter() - start
        metrics.record_http_request(path, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")
        logger.error(
            "request_failed",
            method=method,
            path=path,
            error_type=type(e).__name__,
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=path, method=method).dec()

    duration = time.perf_counter() - start
    # Admin paths embed account ids; label by route template instead
    route_path = getattr(request.scope.get("route"), "path", path)
    metrics.record_http_request(route_path, method, response.status_code, duration)
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "request_completed",
        method=method,
        route=route_path,
        status_code=response.status_code,
        duration_seconds=duration,
        request_id=request_id,
    )
    return response


app.include_router(router)
app.include_router(admin_router)


@app.get("/")
async def root() -> dict[str, str]:
    return {"service": settings.api_title, "version": settings.api_version, "status": "running"}


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus text exposition; 404 when metrics are switched off."""
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
