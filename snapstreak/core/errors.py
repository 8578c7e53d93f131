"""Engine error taxonomy.

Every error carries a stable ``code`` and an HTTP-ish ``status_code`` so the
external adapter can map it without inspecting messages.
"""

import builtins
from typing import Optional


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class InvalidPairError(ValidationError):
    """A user cannot streak with themself."""
    code = "invalid_pair"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConcurrentUpdateConflict(AppError):
    """Optimistic retries exhausted; the caller may retry the whole action once."""
    code = "concurrent_update_conflict"
    status_code = 409
    retryable = True


class TimeoutError(AppError, builtins.TimeoutError):
    code = "timeout"
    status_code = 504


class StorageError(AppError):
    code = "storage_unavailable"
    status_code = 503
