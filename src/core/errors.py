"""Error taxonomy and classification for sync operations."""

import sqlite3
from enum import Enum

from pydantic import BaseModel, ValidationError

from src.core.db_client import DatabaseError, RecordNotFoundError


class SyncErrorCategory(Enum):
    """Categories of outcomes and failures in sync operations."""

    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    TRANSIENT_STORE_ERROR = "transient_store_error"
    SCOPE_VIOLATION = "scope_violation"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"


class ErrorCode:
    """Error codes for request-level failures."""

    ERR_NOT_FOUND = "ERR_NOT_FOUND"
    ERR_SCOPE_VIOLATION = "ERR_SCOPE_VIOLATION"
    ERR_PERMISSION_DENIED = "ERR_PERMISSION_DENIED"
    ERR_IDENTITY_MISSING = "ERR_IDENTITY_MISSING"
    ERR_VALIDATION = "ERR_VALIDATION"
    ERR_STORE_UNAVAILABLE = "ERR_STORE_UNAVAILABLE"
    ERR_UNKNOWN = "ERR_UNKNOWN"


class ErrorResponse(BaseModel):
    """Structured error body for request-level failures."""

    code: str
    message: str


class SyncError(Exception):
    """Base class for sync-domain errors."""

    category: SyncErrorCategory = SyncErrorCategory.UNKNOWN


class NotFoundError(SyncError):
    """A referenced task or checklist item does not exist in the caller's tenant."""

    category = SyncErrorCategory.NOT_FOUND


class ItemValidationError(SyncError):
    """A submitted item is malformed."""

    category = SyncErrorCategory.VALIDATION_ERROR

    @classmethod
    def from_validation_error(cls, exception: ValidationError) -> "ItemValidationError":
        return cls(_format_validation_error(exception))


STORE_FAILURE_MESSAGE = "Temporary storage failure. The item was not applied and can be resubmitted."


class TransientStoreError(SyncError):
    """The store failed mid-item; nothing was committed and a retry is safe."""

    category = SyncErrorCategory.TRANSIENT_STORE_ERROR

    def __init__(self, message: str = STORE_FAILURE_MESSAGE) -> None:
        super().__init__(message)


class ScopeViolationError(SyncError):
    """The caller asked for data outside what they may see."""

    category = SyncErrorCategory.SCOPE_VIOLATION


class PermissionDeniedError(SyncError):
    """The caller's role does not allow the operation."""

    category = SyncErrorCategory.PERMISSION_DENIED


class IdentityMissingError(SyncError):
    """The request carries no resolved tenant/user identity."""


def _format_validation_error(exception: ValidationError) -> str:
    """Render a pydantic ValidationError as a compact one-line message."""
    parts = []
    for error in exception.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg', 'invalid')}" if location else error.get("msg", "invalid"))
    return "Invalid item: " + "; ".join(parts)


def classify_item_error(exception: Exception) -> tuple[SyncErrorCategory, str]:
    """Classify a per-item failure and return its category with a client-facing message.

    Args:
        exception: The exception raised while processing one pushed item

    Returns:
        Tuple of (SyncErrorCategory, message)
    """
    if isinstance(exception, SyncError):
        return exception.category, str(exception)

    if isinstance(exception, ValidationError):
        return SyncErrorCategory.VALIDATION_ERROR, _format_validation_error(exception)

    if isinstance(exception, RecordNotFoundError):
        return SyncErrorCategory.NOT_FOUND, str(exception.args[0]) if exception.args else "Record not found"

    if isinstance(exception, DatabaseError | sqlite3.Error | ConnectionError | TimeoutError):
        return SyncErrorCategory.TRANSIENT_STORE_ERROR, STORE_FAILURE_MESSAGE

    if isinstance(exception, ValueError):
        return SyncErrorCategory.VALIDATION_ERROR, str(exception)

    return SyncErrorCategory.UNKNOWN, "An unexpected error occurred. The item can be resubmitted."


def error_response_for(exception: SyncError) -> tuple[int, ErrorResponse]:
    """Map a request-level sync error to an HTTP status and error body."""
    if isinstance(exception, ScopeViolationError):
        return 403, ErrorResponse(code=ErrorCode.ERR_SCOPE_VIOLATION, message=str(exception))
    if isinstance(exception, PermissionDeniedError):
        return 403, ErrorResponse(code=ErrorCode.ERR_PERMISSION_DENIED, message=str(exception))
    if isinstance(exception, NotFoundError):
        return 404, ErrorResponse(code=ErrorCode.ERR_NOT_FOUND, message=str(exception))
    if isinstance(exception, IdentityMissingError):
        return 401, ErrorResponse(code=ErrorCode.ERR_IDENTITY_MISSING, message=str(exception))
    if isinstance(exception, ItemValidationError):
        return 422, ErrorResponse(code=ErrorCode.ERR_VALIDATION, message=str(exception))
    if isinstance(exception, TransientStoreError):
        return 503, ErrorResponse(code=ErrorCode.ERR_STORE_UNAVAILABLE, message=str(exception))
    return 500, ErrorResponse(code=ErrorCode.ERR_UNKNOWN, message="An unexpected error occurred.")
