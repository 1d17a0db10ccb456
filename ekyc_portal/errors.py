"""
Error taxonomy and the result type returned by every public portal operation.

- Precondition errors (not authenticated, admin access required) are returned
  before any remote call.
- Validation errors (malformed date, oversized field, missing notes) are raised
  before any remote call.
- Remote errors are wrapped verbatim (message + code) and returned, never retried.
- Secondary-effect errors (audit write after a status change) travel next to a
  successful result instead of replacing it.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

T = TypeVar("T")

UNIQUE_VIOLATION = "23505"


class PortalError(Exception):
    code = "portal_error"
    default_message = "Portal operation failed"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotAuthenticatedError(PortalError):
    code = "not_authenticated"
    default_message = "Not authenticated"


class AdminAccessRequiredError(PortalError):
    code = "admin_required"
    default_message = "Admin access required"


class InputValidationError(PortalError, ValueError):
    code = "validation_error"
    default_message = "Invalid input"


class InvalidDateError(InputValidationError):
    code = "invalid_date"
    default_message = "DOB must be in YYYY-MM-DD format"


class FieldTooLongError(InputValidationError):
    code = "field_too_long"

    def __init__(self, field: str, limit: int):
        self.field = field
        self.limit = limit
        super().__init__(f"{field} must be at most {limit} characters")


class NotesRequiredError(InputValidationError):
    code = "notes_required"
    default_message = "notes required"


class InvalidDocumentError(InputValidationError):
    code = "invalid_document"
    default_message = "Unsupported document"


class NotFoundError(PortalError):
    code = "not_found"
    default_message = "Row not found"


class InvalidTransitionError(PortalError):
    code = "invalid_transition"
    default_message = "Status transition not allowed"


class ConfigurationError(PortalError):
    code = "configuration_error"
    default_message = "Portal is not configured"


class StoreError(PortalError):
    """Error reported by the data, auth or storage collaborators."""
    code = "store_error"
    default_message = "Remote store error"

    @classmethod
    def from_exception(cls, exc: Exception) -> "StoreError":
        if isinstance(exc, StoreError):
            return exc
        orig = getattr(exc, "orig", None)
        message = str(orig) if orig is not None else str(exc)
        code = None
        if isinstance(exc, IntegrityError):
            code = UNIQUE_VIOLATION if is_unique_violation(exc) else "23000"
        elif orig is not None:
            code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        elif not isinstance(exc, SQLAlchemyError):
            code = type(exc).__name__
        return cls(message, code=code)

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION


def is_unique_violation(exc: Exception) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == UNIQUE_VIOLATION:
        return True
    return "unique" in str(orig if orig is not None else exc).lower()


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Either data or an error, never both."""
    data: Optional[T] = None
    error: Optional[PortalError] = None

    def __post_init__(self):
        if self.data is not None and self.error is not None:
            raise ValueError("OperationResult carries either data or an error, not both")

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: Optional[T] = None) -> "OperationResult[T]":
        return cls(data=data)

    @classmethod
    def failure(cls, error: PortalError) -> "OperationResult[T]":
        return cls(error=error)
