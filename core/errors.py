"""
core/errors.py -- Base class for errors that surface to API callers.

Every expected failure in the service (bad credentials, missing invite,
write conflicts, ...) is a ServiceError subclass carrying its own HTTP status
and a stable machine-readable code. api/main.py registers one exception
handler for the whole family, so domain code raises plain exceptions and never
imports fastapi.

Anything that is NOT a ServiceError (connectivity loss, schema errors) falls
through to the generic 500 handler.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or catalog/.
"""

from __future__ import annotations


class ServiceError(Exception):
    """An expected, client-visible failure.

    Subclasses override status_code, code, and message. The optional detail
    string is passed through to the error envelope unchanged.
    """

    status_code: int = 400
    code: str = "bad_request"
    message: str = "The request could not be completed."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        if message is not None:
            self.message = message
        self.detail = detail
        super().__init__(self.message)


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"
    message = "Resource not found."


class WriteConflict(ServiceError):
    """The write retry budget ran out while the store kept reporting conflicts."""

    status_code = 409
    code = "write_conflict"
    message = "The write could not be completed due to concurrent updates. Retry the request."
