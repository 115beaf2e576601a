"""
Vault Errors
============
Error taxonomy for the escrow vault engine.

  Validation        -> rejected before any mutation or gateway call
  Insufficient funds -> fast-fail on the client, re-checked by the backend
  Gateway           -> network/service failure, caller may retry manually
  Ledger            -> illegal operation against the append-only log

Consistency violations (released > funded) are NOT errors. They are
recorded and surfaced as health indicators.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes for callers that branch on failure type."""
    VALIDATION_ERROR = "E1001"
    AMOUNT_NOT_POSITIVE = "E1002"
    AMOUNT_ABOVE_CEILING = "E1003"
    AMOUNT_BELOW_MINIMUM = "E1004"
    INSUFFICIENT_FUNDS = "E2000"
    GATEWAY_ERROR = "E5000"
    LEDGER_ERROR = "E6000"
    ENTRY_SETTLED = "E6001"
    NOT_FOUND = "E6002"
    DUPLICATE_RELEASE = "E6003"


class VaultError(ValueError):
    """Base error for the vault engine."""

    retryable = False

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.field = field
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "field": self.field,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(VaultError):
    """Input rejected before any state change."""


class InsufficientFundsError(VaultError):
    """Requested amount exceeds the available vault balance."""

    def __init__(self, requested: float, available: float) -> None:
        super().__init__(
            f"Insufficient available balance. Available: ${available:,.2f}, "
            f"Requested: ${requested:,.2f}",
            code=ErrorCode.INSUFFICIENT_FUNDS,
            field="amount",
            details={"requested": requested, "available": available},
        )


class GatewayError(VaultError):
    """The payment backend could not be reached or refused the request."""

    retryable = True

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code=ErrorCode.GATEWAY_ERROR, details=details)


class LedgerError(VaultError):
    """Illegal operation against the ledger."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.LEDGER_ERROR,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
