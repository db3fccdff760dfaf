"""Ledger error taxonomy.

Every error is raised before the enclosing unit of work flushes a mutation,
so callers see either a complete operation or none of it.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base ledger error with a stable code and optional details."""

    code = "LEDGER_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class BonusValidationError(LedgerError, ValueError):
    """Malformed input: non-positive amounts, unknown tax status, bad campaign data."""

    code = "VALIDATION_ERROR"


class InsufficientBalanceError(LedgerError):
    """The user's balance does not cover the requested deduction."""

    code = "INSUFFICIENT_BALANCE"

    def __init__(self, message: str = "Insufficient bonus balance", details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)


class StateConflictError(LedgerError):
    """An entity is not in the state the operation requires."""

    code = "STATE_CONFLICT"

    def __init__(
        self,
        message: str,
        expected: str | None = None,
        actual: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        merged = dict(details or {})
        if expected is not None:
            merged["expected"] = expected
        if actual is not None:
            merged["actual"] = actual
        super().__init__(message, merged)


class NotFoundError(LedgerError, LookupError):
    """Unknown user, commission, rate or campaign."""

    code = "NOT_FOUND"
