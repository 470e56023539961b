"""
Tests for exception classes.

Covers all exception types, their attributes and string representations.
"""

import pytest

from app.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    ExecutionError,
    InsufficientCreditsError,
    InvalidArgumentError,
    InvalidIdentifierError,
    InvalidValueTypeError,
    LedgerError,
    LimitExceededError,
    MalformedQueryError,
    MissingDataError,
    MissingFilterError,
    NoBackendSelectedError,
    QueryProxyError,
    QueryValidationError,
    StorageError,
    TransportError,
    UnsupportedOperationError,
)


class TestLedgerErrors:
    """Tests for the ledger family."""

    @pytest.mark.parametrize(
        "exc",
        [
            InsufficientCreditsError(balance=0),
            AccountNotFoundError("user_1"),
            InvalidArgumentError("bad"),
            StorageError("down"),
            DataIntegrityError("negative"),
        ],
    )
    def test_all_are_ledger_errors(self, exc):
        """Every ledger exception shares the base class."""
        assert isinstance(exc, LedgerError)
        assert not isinstance(exc, QueryProxyError)

    def test_insufficient_credits_default_message(self):
        """Default message tells the user how to get more credits."""
        exc = InsufficientCreditsError(balance=0)
        assert exc.balance == 0
        assert exc.message == InsufficientCreditsError.DEFAULT_MESSAGE
        assert "upgrade" in str(exc)
        assert "Balance: 0" in str(exc)

    def test_insufficient_credits_custom_message(self):
        """Custom message overrides the default."""
        exc = InsufficientCreditsError(balance=0, message="Out of credits")
        assert exc.message == "Out of credits"

    def test_account_not_found(self):
        """Message names the account."""
        exc = AccountNotFoundError("user_1")
        assert exc.account_id == "user_1"
        assert str(exc) == "Account not found: user_1"


class TestQueryProxyErrors:
    """Tests for the query proxy family."""

    @pytest.mark.parametrize(
        "cls,code",
        [
            (UnsupportedOperationError, "unsupported_operation"),
            (InvalidIdentifierError, "invalid_identifier"),
            (MissingFilterError, "missing_filter"),
            (MissingDataError, "missing_data"),
            (LimitExceededError, "limit_exceeded"),
            (InvalidValueTypeError, "invalid_value_type"),
            (MalformedQueryError, "malformed_query"),
        ],
    )
    def test_validation_codes(self, cls, code):
        """Each rule has a stable machine-readable code."""
        exc = cls("message", field="table")
        assert isinstance(exc, QueryValidationError)
        assert isinstance(exc, QueryProxyError)
        assert exc.code == code
        assert exc.field == "table"
        assert str(exc) == "message"

    def test_no_backend_selected(self):
        """Message points at workspace settings."""
        exc = NoBackendSelectedError("user_1")
        assert exc.account_id == "user_1"
        assert "workspace settings" in str(exc)

    @pytest.mark.parametrize("status,client_error", [(400, True), (404, True), (500, False)])
    def test_execution_error(self, status, client_error):
        """Provider errors are not retryable and classify by status."""
        exc = ExecutionError(status, "boom")
        assert exc.status_code == status
        assert exc.provider_message == "boom"
        assert exc.is_client_error is client_error
        assert exc.retryable is False

    def test_transport_error_is_retryable(self):
        """Transport failures may be retried."""
        exc = TransportError("timed out")
        assert exc.retryable is True
        assert str(exc) == "Transport error: timed out"
