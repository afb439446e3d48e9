from __future__ import annotations

from typing import Any


class LedgerError(RuntimeError):
    error_kind = "LedgerError"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        bound: int | None = None,
        conflicts: list[dict[str, Any]] | None = None,
        warnings: list[dict[str, Any]] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.bound = bound
        self.conflicts = list(conflicts or [])
        self.warnings = list(warnings or [])
        self.details = dict(details or {})

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"errorKind": self.error_kind, "message": self.message}
        if self.bound is not None:
            payload["bound"] = self.bound
        if self.conflicts:
            payload["conflicts"] = self.conflicts
        if self.warnings:
            payload["warnings"] = self.warnings
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LedgerError):
    error_kind = "ValidationError"
    status_code = 400


class ConflictError(LedgerError):
    error_kind = "ConflictError"
    status_code = 409


class NotFoundError(LedgerError):
    error_kind = "NotFoundError"
    status_code = 404


class ConcurrencyError(LedgerError):
    """Lock wait timed out, or the ledger moved on since the caller's pre-flight check."""

    error_kind = "ConcurrencyError"
    status_code = 503

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retryable = retryable


class MutationCancelled(ConcurrencyError):
    def __init__(self, message: str = "Mutation cancelled before the equipment lock was acquired.", **kwargs: Any):
        super().__init__(message, retryable=False, **kwargs)


class InvariantViolation(LedgerError):
    """A committed state would break conservation; this is an internal fault, not bad input."""

    error_kind = "InvariantViolation"
    status_code = 500

    def __init__(self, message: str, *, violations: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.violations = list(violations or [])

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["violations"] = self.violations
        return payload
