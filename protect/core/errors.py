"""
Error Taxonomy

Every failure the core raises is a ProtectError with a stable code.

Propagation:
- VALIDATION, NOT_FOUND, STATE_CONFLICT: always surfaced to the caller
- LEDGER_UNAVAILABLE, DOWNSTREAM_UNAVAILABLE: absorbed by the outbox
  (logged + audited) unless the ledger write is the whole point
- INTERNAL: surfaced as a generic failure, detail stays in the logs
"""

from typing import Any, Optional


class ProtectError(Exception):
    """Base exception for all core errors."""
    code = "INTERNAL"

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ProtectError):
    """Malformed, missing or out-of-range input. Raised before any mutation."""
    code = "VALIDATION"

    @classmethod
    def from_pydantic(cls, exc, message: str = "Validation failed") -> "ValidationError":
        details = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ())),
                "message": err.get("msg", ""),
            }
            for err in exc.errors()
        ]
        return cls(message, details=details)


class NotFoundError(ProtectError):
    """Referenced quote/policy/claim does not exist."""
    code = "NOT_FOUND"


class StateConflictError(ProtectError):
    """Operation violates the lifecycle state machine."""
    code = "STATE_CONFLICT"


class LedgerUnavailableError(ProtectError):
    """The ledger append call failed (network, timeout, 5xx)."""
    code = "LEDGER_UNAVAILABLE"


class LedgerRejectedError(ProtectError):
    """The ledger answered but refused the event (4xx)."""
    code = "LEDGER_REJECTED"


class DownstreamUnavailableError(ProtectError):
    """The adjudication service could not be reached."""
    code = "DOWNSTREAM_UNAVAILABLE"


class InternalError(ProtectError):
    """Unexpected failure in the record store or codec."""
    code = "INTERNAL"


def parse_model(model_cls, data: Any, message: str = "Validation failed"):
    """
    Validate `data` into `model_cls`, translating pydantic errors.

    Already-built instances pass through untouched.
    """
    from pydantic import ValidationError as PydanticValidationError

    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e, message) from e
