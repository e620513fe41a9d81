from __future__ import annotations

from typing import Optional


class QuickCollabError(Exception):
    """Base error for the synchronization core.

    ``status_code`` is what the HTTP layer answers with; the event-driven path
    only logs the error.
    """

    code = "error"
    status_code = 500

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "field": self.field}


class ValidationError(QuickCollabError):
    code = "validation_error"
    status_code = 400


class NotFoundError(QuickCollabError):
    code = "not_found"
    status_code = 404


class AuthorizationError(QuickCollabError):
    code = "forbidden"
    status_code = 403


class ConflictError(QuickCollabError):
    code = "conflict"
    status_code = 409


class TransientStoreError(QuickCollabError):
    """The store could not complete the call and applied nothing."""

    code = "store_unavailable"
    status_code = 503
