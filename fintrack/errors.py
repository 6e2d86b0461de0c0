"""
Error Taxonomy for the Ledger Engine

Four kinds of failure cross the orchestrator boundary:

1. ValidationError   - malformed input, rejected before any write
2. ConstraintError   - input is well-formed but a read-side check refused it
                       (credit limit, locked period, ...). Carries a
                       machine-parseable ``reason`` and ``details``.
3. PartialWriteError - a multi-step operation failed after writes committed
                       and compensation could not restore a clean state
4. TransientError    - storage/network unavailable; the only retryable kind

The offline queue decides retry vs. fail purely from ``retryable``.
"""

from typing import Any, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from fintrack.services.storage.interface import (
    NotFoundError,
    StorageError,
    StorageUnavailableError,
)


class LedgerError(Exception):
    """Base exception for all ledger engine errors."""

    kind = "ledger_error"
    retryable = False

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the error body returned by the RPC surface."""
        return {
            "error": self.message,
            "error_kind": self.kind,
            "reason": self.reason,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(LedgerError):
    """Malformed input. Never retryable."""

    kind = "validation_error"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, reason="invalid_input", details=details)
        self.field = field
        if field:
            self.details.setdefault("field", field)


class ConstraintError(LedgerError):
    """A business rule rejected the request after read-side checks."""

    kind = "constraint_error"

    def __init__(
        self,
        message: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, reason=reason, details=details)


class PartialWriteError(LedgerError):
    """
    A multi-step operation failed after some writes were committed.

    ``inconsistent`` is True when compensation did not complete and the
    listed identities may still exist server-side.
    """

    kind = "partial_write_error"

    def __init__(
        self,
        message: str,
        operation: str,
        committed_ids: Optional[list[UUID]] = None,
        inconsistent: bool = True,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            reason="inconsistent_state" if inconsistent else "compensated",
            details=details,
        )
        self.operation = operation
        self.committed_ids = list(committed_ids or [])
        self.inconsistent = inconsistent
        self.details.setdefault("operation", operation)
        self.details.setdefault("committed_ids", [str(i) for i in self.committed_ids])


class TransientError(LedgerError):
    """Storage or network unavailable. Safe to retry with the same idempotency key."""

    kind = "transient_error"
    retryable = True

    def __init__(
        self,
        message: str,
        reason: str = "unavailable",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, reason=reason, details=details)


def error_from_dict(body: dict[str, Any]) -> LedgerError:
    """
    Rebuild an exception from an RPC error body.

    Used on the client side so a rejection received over the wire is
    classified exactly like one raised in-process.
    """
    kind = body.get("error_kind")
    message = body.get("error") or body.get("error_message") or "Unknown error"
    details = body.get("details") or {}

    if kind == ValidationError.kind:
        return ValidationError(message, field=details.get("field"), details=details)
    if kind == ConstraintError.kind:
        return ConstraintError(message, reason=body.get("reason") or "rejected", details=details)
    if kind == PartialWriteError.kind:
        return PartialWriteError(
            message,
            operation=details.get("operation", "unknown"),
            inconsistent=body.get("reason") != "compensated",
            details=details,
        )
    if kind == TransientError.kind:
        return TransientError(message, reason=body.get("reason") or "unavailable", details=details)
    return LedgerError(message, reason=body.get("reason"), details=details)


def to_ledger_error(error: Exception) -> Exception:
    """
    Classify an exception raised below the orchestrator.

    Storage outages become TransientError, missing rows a not_found
    ConstraintError and pydantic failures a ValidationError. Ledger
    errors and anything unrecognised are returned unchanged.
    """
    if isinstance(error, LedgerError):
        return error
    if isinstance(error, PydanticValidationError):
        problems = [
            {
                "loc": [str(part) for part in problem.get("loc", ())],
                "msg": problem.get("msg", ""),
            }
            for problem in error.errors()
        ]
        first = problems[0] if problems else {"loc": [], "msg": str(error)}
        return ValidationError(
            first["msg"],
            field=".".join(first["loc"]) or None,
            details={"errors": problems},
        )
    if isinstance(error, StorageUnavailableError):
        return TransientError(str(error))
    if isinstance(error, NotFoundError):
        return ConstraintError(str(error), reason="not_found")
    if isinstance(error, StorageError):
        return LedgerError(str(error), reason="storage_error")
    return error
