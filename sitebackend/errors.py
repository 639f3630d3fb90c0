"""
Error taxonomy shared by the engine, the stores and the HTTP layer.

Every error carries a stable machine-readable ``kind`` and the HTTP status the
controllers render it with.
"""

from __future__ import annotations

from typing import Optional


class SiteBackendError(Exception):
    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class NotFound(SiteBackendError):
    kind = "not_found"
    status_code = 404


class ValidationError(SiteBackendError):
    kind = "validation_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message, detail=detail)
        self.field = field


class InvalidKey(ValidationError):
    kind = "invalid_key"


class Conflict(SiteBackendError):
    kind = "conflict"
    status_code = 409


class IOFailure(SiteBackendError):
    """Attachment write or delete failed."""

    kind = "io_failure"
    status_code = 500


class PersistenceFailure(SiteBackendError):
    """Record store read or write failed."""

    kind = "persistence_failure"
    status_code = 500


class AdvisoryFailure(SiteBackendError):
    """An external identity-provider call failed. Logged, never escalated."""

    kind = "advisory_failure"
    status_code = 502
