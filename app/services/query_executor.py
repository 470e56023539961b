"""
Query Executor - Translate validated queries into one provider REST call.

The provider speaks the PostgREST dialect:
    GET    /{table}?select=a,b&col=eq.v&order=col.desc&limit=n&offset=m
    POST   /{table}                 body = row
    PATCH  /{table}?col=eq.v        body = changes
    DELETE /{table}?col=eq.v

Requests are authenticated with the account's privileged key. The key only
ever travels in request headers; it is scrubbed from every error message.
"""

import time
from typing import Any

import httpx
from structlog import get_logger

from app.config import settings
from app.exceptions import ExecutionError, NoBackendSelectedError, TransportError
from app.models.domain import BackendSelection, QueryResult
from app.models.query import DeleteQuery, InsertQuery, SelectQuery, UpdateQuery
from app.observability.metrics import metrics
from app.observability.tracing import add_span_attributes, get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

MAX_PROVIDER_MESSAGE_LENGTH = 500
REDACTED = "[REDACTED]"

AnyQuery = SelectQuery | InsertQuery | UpdateQuery | DeleteQuery


def encode_filter_value(value: Any) -> str:
    """Render one equality filter in PostgREST syntax."""
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{'true' if value else 'false'}"
    return f"eq.{value}"


def build_params(query: AnyQuery) -> list[tuple[str, str]]:
    """Query-string parameters for a validated query, in a stable order."""
    params: list[tuple[str, str]] = []

    if isinstance(query, SelectQuery):
        params.append(("select", ",".join(query.columns) if query.columns else "*"))
    elif query.returning:
        params.append(("select", ",".join(query.returning)))

    filters = getattr(query, "filters", None) or {}
    for column, value in filters.items():
        params.append((column, encode_filter_value(value)))

    if isinstance(query, SelectQuery):
        if query.order_by is not None:
            params.append(("order", f"{query.order_by.column}.{query.order_by.direction.value}"))
        if query.limit is not None:
            params.append(("limit", str(query.limit)))
        if query.offset is not None:
            params.append(("offset", str(query.offset)))

    return params


def redact(text: str, *secrets: str) -> str:
    """Replace every occurrence of the given secrets."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def _provider_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ("message", "error", "hint"):
            value = body.get(key)
            if value:
                return str(value)
    return response.text or response.reason_phrase or "Unknown provider error"


def _normalize_rows(response: httpx.Response) -> list[dict[str, Any]]:
    if not response.content:
        return []
    body = response.json()
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        return [body]
    return []


class QueryExecutor:
    """
    Issue validated queries against the selected backend.

    One HTTP round trip per execute(); no retries.
    """

    _METHODS = {
        SelectQuery: "GET",
        InsertQuery: "POST",
        UpdateQuery: "PATCH",
        DeleteQuery: "DELETE",
    }

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self._http_client = http_client
        self._owns_client = http_client is None
        self.timeout = timeout if timeout is not None else settings.proxy_timeout_seconds

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def execute(
        self,
        selection: BackendSelection | None,
        query: AnyQuery,
        timeout: float | None = None,
    ) -> QueryResult:
        """
        Run the query and return normalized rows.

        Raises:
            NoBackendSelectedError: selection is None
            ExecutionError: provider answered non-2xx
            TransportError: network failure or timeout
        """
        if selection is None:
            raise NoBackendSelectedError()

        operation = query.operation
        method = self._METHODS[type(query)]
        url = f"{selection.public_endpoint.rstrip('/')}/{query.table}"
        headers = {
            "apikey": selection.privileged_key,
            "Authorization": f"Bearer {selection.privileged_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if method != "GET":
            headers["Prefer"] = "return=representation"
        body = getattr(query, "data", None)
        secrets = (selection.privileged_key, selection.public_key)

        started = time.perf_counter()
        with tracer.start_as_current_span("proxy_query") as span:
            add_span_attributes(
                span,
                **{
                    "db.operation": operation,
                    "db.sql.table": query.table,
                    "proxy.account_id": selection.account_id,
                },
            )
            try:
                response = await self.http_client.request(
                    method,
                    url,
                    params=build_params(query),
                    headers=headers,
                    json=body,
                    timeout=timeout if timeout is not None else self.timeout,
                )
            except httpx.TimeoutException as e:
                self._record_failure(operation, query.table, "timeout", started)
                raise TransportError(
                    f"Provider request timed out ({type(e).__name__})"
                ) from None
            except httpx.TransportError as e:
                self._record_failure(operation, query.table, "transport_error", started)
                raise TransportError(
                    f"Provider unreachable ({type(e).__name__})"
                ) from None

            add_span_attributes(span, **{"http.status_code": response.status_code})

            if not response.is_success:
                message = redact(_provider_message(response), *secrets)
                message = message[:MAX_PROVIDER_MESSAGE_LENGTH]
                self._record_failure(
                    operation, query.table, "provider_error", started, response.status_code
                )
                raise ExecutionError(response.status_code, message)

            try:
                rows = _normalize_rows(response)
            except ValueError as e:
                self._record_failure(
                    operation, query.table, "provider_error", started, response.status_code
                )
                raise ExecutionError(
                    response.status_code, "Provider returned a non-JSON body"
                ) from e

        duration = time.perf_counter() - started
        metrics.record_proxy_query(operation, "success", duration)
        logger.info(
            "query_proxied",
            operation=operation,
            table=query.table,
            row_count=len(rows),
            duration_ms=round(duration * 1000, 2),
        )
        return QueryResult(operation=operation, table=query.table, rows=rows)

    def _record_failure(
        self,
        operation: str,
        table: str,
        outcome: str,
        started: float,
        status_code: int | None = None,
    ) -> None:
        metrics.record_proxy_query(operation, outcome, time.perf_counter() - started)
        logger.warning(
            "query_proxy_failed",
            operation=operation,
            table=table,
            outcome=outcome,
            status_code=status_code,
        )

    async def close(self) -> None:
        """Close HTTP client if we created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
