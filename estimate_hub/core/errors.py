from __future__ import annotations

from typing import Any, Optional


class EngineError(Exception):
    """Base class for failures surfaced to the transport/access layers."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class NotFoundError(EngineError):
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found.")
        self.resource = resource


class ConflictError(EngineError):
    code = "CONFLICT"


class ValidationFailedError(EngineError):
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, errors: Optional[list[dict]] = None):
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class TransactionFailedError(EngineError):
    code = "TRANSACTION_FAILED"
