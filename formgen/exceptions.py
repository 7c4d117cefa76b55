"""
Error kinds raised by the template and document pipeline.

Routers do not catch these individually; ``formgen.main`` maps each class to an
HTTP status through ``HTTP_STATUS_BY_ERROR``.
"""
from typing import Optional


class FormGenError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class ValidationError(FormGenError):
    """Bad or missing input to a registration, edit, or generation call."""
    pass


class UnsupportedFormatError(ValidationError):
    """File type outside pdf/docx."""
    pass


class ExtractionError(FormGenError):
    """Text extraction failed (corrupt, encrypted, or unreadable file)."""
    pass


class AIExtractionError(FormGenError):
    """The completion call failed or returned content of the wrong shape."""
    pass


class NotFoundError(FormGenError):
    """A referenced record does not exist."""
    pass


class InvalidStateError(FormGenError):
    """The record is not in a state that allows the requested transition."""
    pass


class ConcurrencyConflictError(FormGenError):
    """The caller's etag no longer matches the stored one."""
    pass


class LockConflictError(FormGenError):
    """Another user holds a live editor lock on the template."""

    def __init__(self, message: str, holder_id: Optional[str] = None):
        super().__init__(message)
        self.holder_id = holder_id


class StorageError(FormGenError):
    """Reading or writing a blob failed."""
    pass


HTTP_STATUS_BY_ERROR = {
    UnsupportedFormatError: 415,
    ValidationError: 400,
    NotFoundError: 404,
    InvalidStateError: 409,
    ConcurrencyConflictError: 409,
    LockConflictError: 409,
    ExtractionError: 422,
    AIExtractionError: 502,
    StorageError: 500,
}


def status_code_for(exc: FormGenError) -> int:
    """Return the HTTP status for *exc*, checking the most specific class first."""
    for cls in type(exc).__mro__:
        if cls in HTTP_STATUS_BY_ERROR:
            return HTTP_STATUS_BY_ERROR[cls]
    return 500
