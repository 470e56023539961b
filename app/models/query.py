"""
Query Models - Closed tagged union of the four supported query shapes.

Every rule a proxied request must satisfy lives on these models, so an
instance is proof the request is safe to translate: identifiers are
whitelisted, filter keys can't collide with the provider's control
parameters, mutations always carry filters and values are JSON scalars.
"""

from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import (
    AfterValidator,
    AllowInfNan,
    BaseModel,
    ConfigDict,
    Field,
    Strict,
    StrictBool,
    StrictInt,
    StrictStr,
    StringConstraints,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic_core import PydanticCustomError

MAX_IDENTIFIER_LENGTH = 63  # PostgreSQL NAMEDATALEN - 1
DEFAULT_MAX_LIMIT = 1000

# Query-string names the provider reads as control parameters, not columns
RESERVED_FILTER_KEYS = frozenset(
    {"select", "order", "limit", "offset", "and", "or", "not", "columns", "on_conflict"}
)


def _not_reserved(value: str) -> str:
    if value.lower() in RESERVED_FILTER_KEYS:
        raise PydanticCustomError(
            "reserved_identifier",
            "'{name}' is a reserved parameter name and cannot be used as a filter",
            {"name": value},
        )
    return value


Identifier = Annotated[
    str,
    StringConstraints(
        strict=True, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$", max_length=MAX_IDENTIFIER_LENGTH
    ),
]
FilterKey = Annotated[Identifier, AfterValidator(_not_reserved)]

Scalar = Union[
    Strict,
    StrictBool,
    StrictInt,
    Annotated[float, Strict(), AllowInfNan(False)],
    StrictStr,
    None,
]


class QueryOperation(str, Enum):
    """Supported proxy operations."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class SortDirection(str, Enum):
    """Ordering direction for select."""

    ASC = "asc"
    DESC = "desc"


class _QueryBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Accepted input spellings, renamed onto the field when used alone
    field_aliases: ClassVar[dict[str, str]] = {}

    table: Identifier

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        """Treat null as absent and map alternate spellings onto field names."""
        if not isinstance(data, Mapping):
            return data
        normalized = {key: value for key, value in data.items() if value is not None}
        for alias, name in cls.field_aliases.items():
            # Both spellings present: the alias stays behind and fails as an extra key
            if alias in normalized and name not in normalized:
                normalized[name] = normalized.pop(alias)
        return normalized


class OrderBy(BaseModel):
    """Single-column ordering."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    column: Identifier
    direction: SortDirection = SortDirection.ASC


class SelectQuery(_QueryBase):
    """Read rows, optionally projected, filtered, ordered and paged."""

    field_aliases: ClassVar[dict[str, str]] = {"select": "columns", "orderBy": "order_by"}

    operation: Literal["select"] = "select"
    columns: tuple[Identifier, ...] | None = None
    filters: dict[FilterKey, Scalar] = Field(default_factory=dict)
    order_by: OrderBy | None = None
    limit: StrictInt | None = Field(None, gt=0)
    offset: StrictInt | None = Field(None, ge=0)

    @field_validator("limit")
    @classmethod
    def validate_limit_cap(cls, v: int | None, info: ValidationInfo) -> int | None:
        """Reject (never clamp) limits above the cap passed in the validation context."""
        max_limit = (info.context or {}).get("max_limit", DEFAULT_MAX_LIMIT)
        if v is not None and v > max_limit:
            raise PydanticCustomError(
                "limit_exceeded",
                "limit {limit} exceeds the maximum of {max_limit}",
                {"limit": v, "max_limit": max_limit},
            )
        return v


class InsertQuery(_QueryBase):
    """Create one row."""

    operation: Literal["insert"] = "insert"
    data: dict[Identifier, Scalar] = Field(..., min_length=1)
    returning: tuple[Identifier, ...] | None = None


class UpdateQuery(_QueryBase):
    """Change rows matching every filter."""

    operation: Literal["update"] = "update"
    data: dict[Identifier, Scalar] = Field(..., min_length=1)
    filters: dict[FilterKey, Scalar] = Field(..., min_length=1)
    returning: tuple[Identifier, ...] | None = None


class DeleteQuery(_QueryBase):
    """Remove rows matching every filter."""

    operation: Literal["delete"] = "delete"
    filters: dict[FilterKey, Scalar] = Field(..., min_length=1)
    returning: tuple[Identifier, ...] | None = None


QueryRequest = Annotated[
    Union[SelectQuery, InsertQuery, UpdateQuery, DeleteQuery],
    Field(discriminator="operation"),
]

QUERY_MODELS: dict[str, type[_QueryBase]] = {
    QueryOperation.SELECT.value: SelectQuery,
    QueryOperation.INSERT.value: InsertQuery,
    QueryOperation.UPDATE.value: UpdateQuery,
    QueryOperation.DELETE.value: DeleteQuery,
}
