"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Two families:
- LedgerError: credit accounting and subscription lifecycle
- QueryProxyError: query validation and execution against the external backend
"""


class LedgerError(Exception):
    """Base exception for all credit ledger errors."""

    pass


class InsufficientCreditsError(LedgerError):
    """Raised when an account has no credit left to consume."""

    DEFAULT_MESSAGE = (
        "Insufficient credits. Please upgrade your plan or wait for your credits to reset."
    )

    def __init__(self, balance: int, message: str | None = None) -> None:
        self.balance = balance
        self.message = message or self.DEFAULT_MESSAGE
        super().__init__(f"{self.message} Balance: {balance}")


class AccountNotFoundError(LedgerError):
    """Raised when account doesn't exist."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class InvalidArgumentError(LedgerError):
    """Raised when a ledger operation receives an invalid argument."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid argument: {message}")


class StorageError(LedgerError):
    """Raised when the ledger store cannot confirm a read or write."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage error: {message}")


class DataIntegrityError(LedgerError):
    """Raised when stored state violates a ledger invariant."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class QueryProxyError(Exception):
    """Base exception for all query proxy errors."""

    pass


class QueryValidationError(QueryProxyError):
    """Raised when a query request is rejected before any network call."""

    code = "invalid_query"

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


class UnsupportedOperationError(QueryValidationError):
    """Operation is not one of select/insert/update/delete."""

    code = "unsupported_operation"


class InvalidIdentifierError(QueryValidationError):
    """Table or column name does not match the identifier whitelist."""

    code = "invalid_identifier"


class MissingFilterError(QueryValidationError):
    """Update or delete without a non-empty filter set."""

    code = "missing_filter"


class MissingDataError(QueryValidationError):
    """Insert or update without a non-empty data set."""

    code = "missing_data"


class LimitExceededError(QueryValidationError):
    """Requested limit is above the configured cap."""

    code = "limit_exceeded"


class InvalidValueTypeError(QueryValidationError):
    """Filter or data value is not a scalar."""

    code = "invalid_value_type"


class MalformedQueryError(QueryValidationError):
    """Request shape does not fit the operation."""

    code = "malformed_query"


class NoBackendSelectedError(QueryProxyError):
    """Raised when the account has no external backend selected."""

    def __init__(self, account_id: str | None = None) -> None:
        self.account_id = account_id
        super().__init__(
            "No backend project selected. Select a project in workspace settings first."
        )


class ExecutionError(QueryProxyError):
    """Raised when the provider answers with a non-2xx status."""

    retryable = False

    def __init__(self, status_code: int, provider_message: str) -> None:
        self.status_code = status_code
        self.provider_message = provider_message
        super().__init__(f"Provider error {status_code}: {provider_message}")

    @property
    def is_client_error(self) -> bool:
        """True when the provider rejected the request shape or state (4xx)."""
        return 400 <= self.status_code < 500


class TransportError(QueryProxyError):
    """Raised on connection-level failures (timeout, DNS, TLS). Safe to retry."""

    retryable = True

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Transport error: {message}")
