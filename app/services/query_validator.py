"""
Query Validator - Eager boundary check for proxied database requests.

The rules themselves live on the query models (app.models.query). This layer
checks the operation, picks the model, passes the configured limit cap and
turns pydantic errors into one typed QueryValidationError. Validation is
pure: no network or storage access, same input always gives the same
decision.

When a request breaks several rules, the one reported is the first in this
order:
1. operation
2. table name, then per-operation shape
3. every other identifier
4. filters on update/delete
5. data on insert/update
6. limit/offset/order direction
7. scalar values
"""

from collections.abc import Mapping
from typing import Any

from pydantic import TypeAdapter, ValidationError
from pydantic_core import ErrorDetails

from app.exceptions import (
    InvalidIdentifierError,
    InvalidValueTypeError,
    LimitExceededError,
    MalformedQueryError,
    MissingDataError,
    MissingFilterError,
    QueryValidationError,
    UnsupportedOperationError,
)
from app.models.query import (
    DEFAULT_MAX_LIMIT,
    QUERY_MODELS,
    Identifier,
    QueryRequest,
    Scalar,
    SelectQuery,
)

_identifier_adapter: TypeAdapter[str] = TypeAdapter(Identifier)
_scalar_adapter: TypeAdapter[Any] = TypeAdapter(Scalar)

# Field names as clients spell them in error reports
_DISPLAY_NAMES = {"order_by": "orderBy"}

# Rule ranks; lower is reported first
_TABLE, _SHAPE, _IDENTIFIER, _FILTERS, _DATA, _BOUNDS, _VALUES = range(1, 8)


def is_identifier(value: object) -> bool:
    """True when value is a whitelisted SQL identifier."""
    try:
        _identifier_adapter.validate_python(value)
    except ValidationError:
        return False
    return True


def is_scalar(value: object) -> bool:
    """True for string/number/boolean/null. Non-finite floats are not JSON."""
    try:
        _scalar_adapter.validate_python(value)
    except ValidationError:
        return False
    return True


def _extra_key_error(name: str, operation: str, raw: Mapping[str, Any]) -> MalformedQueryError:
    target = SelectQuery.field_aliases.get(name) if operation == "select" else None
    if target is not None and target in raw:
        return MalformedQueryError(
            f"Use either {name} or {target}, not both", field=name
        )
    return MalformedQueryError(f"Field not allowed for {operation}: {name}", field=name)


def _classify(
    error: ErrorDetails, operation: str, raw: Mapping[str, Any]
) -> tuple[int, QueryValidationError]:
    """Rank one pydantic error and translate it into the matching typed error."""
    loc = error["loc"]
    kind = error["type"]
    head = _DISPLAY_NAMES.get(str(loc[0]), str(loc[0])) if loc else ""

    if kind == "limit_exceeded":
        return _BOUNDS, LimitExceededError(error["msg"], field="limit")

    if kind == "extra_forbidden":
        if len(loc) == 1:
            return _SHAPE, _extra_key_error(head, operation, raw)
        return _SHAPE, MalformedQueryError(f"{head} has unexpected field {loc[1]}", field=head)

    if head == "table":
        return _TABLE, InvalidIdentifierError(
            f"Invalid identifier for table: {raw.get('table')!r}", field="table"
        )

    if head in ("filters", "data"):
        if len(loc) == 1:
            if kind in ("missing", "too_short"):
                if head == "filters":
                    return _FILTERS, MissingFilterError(
                        f"{operation} requires at least one filter", field="filters"
                    )
                return _DATA, MissingDataError(f"{operation} requires non-empty data", field="data")
            return _SHAPE, MalformedQueryError(f"{head} must be an object", field=head)
        field = f"{head}.{loc[1]}"
        if loc[-1] == "[key]":
            message = (
                error["msg"]
                if kind == "reserved_identifier"
                else f"Invalid identifier for {field}: {loc[1]!r}"
            )
            return _IDENTIFIER, InvalidIdentifierError(message, field=field)
        return _VALUES, InvalidValueTypeError(
            f"{field} must be a string, number, boolean or null", field=field
        )

    if head in ("columns", "returning"):
        if len(loc) == 1:
            return _SHAPE, MalformedQueryError(
                f"{head} must be a list of column names", field=head
            )
        return _IDENTIFIER, InvalidIdentifierError(
            f"Invalid identifier for {head}: {error['input']!r}", field=head
        )

    if head == "orderBy":
        part = loc[1] if len(loc) > 1 else None
        if part == "column" and kind != "missing":
            return _IDENTIFIER, InvalidIdentifierError(
                f"Invalid identifier for orderBy.column: {error['input']!r}",
                field="orderBy.column",
            )
        if part == "direction":
            return _BOUNDS, MalformedQueryError(
                "orderBy.direction must be 'asc' or 'desc'", field="orderBy.direction"
            )
        return _SHAPE, MalformedQueryError("orderBy must be {column, direction}", field="orderBy")

    if head == "limit":
        return _BOUNDS, MalformedQueryError("limit must be a positive integer", field="limit")
    if head == "offset":
        return _BOUNDS, MalformedQueryError(
            "offset must be a non-negative integer", field="offset"
        )

    return _SHAPE, MalformedQueryError(error["msg"], field=head or None)


class QueryValidator:
    """Turns a raw request object into a typed QueryRequest or raises."""

    def __init__(self, max_limit: int = DEFAULT_MAX_LIMIT) -> None:
        if max_limit <= 0:
            raise ValueError(f"max_limit must be positive: {max_limit}")
        self.max_limit = max_limit

    def validate(self, raw: object) -> QueryRequest:
        """
        Validate a raw request.

        Raises:
            UnsupportedOperationError: operation not select/insert/update/delete
            InvalidIdentifierError: table, column or filter name fails the whitelist
            MalformedQueryError: keys or containers do not fit the operation
            MissingFilterError: update/delete without filters
            MissingDataError: insert/update without data
            LimitExceededError: limit above the cap
            InvalidValueTypeError: non-scalar filter or data value
        """
        if not isinstance(raw, Mapping):
            raise MalformedQueryError("Query request must be an object")

        operation = raw.get("operation")
        if not isinstance(operation, str) or operation not in QUERY_MODELS:
            raise UnsupportedOperationError(
                f"Unsupported operation: {operation!r}", field="operation"
            )

        model = QUERY_MODELS[operation]
        try:
            return model.model_validate(raw, context={"max_limit": self.max_limit})  # type: ignore[return-value]
        except ValidationError as e:
            ranked = [_classify(error, operation, raw) for error in e.errors()]
            # Stable sort keeps pydantic's field order within a rank
            ranked.sort(key=lambda item: item[0])
            raise ranked[0][1] from None
