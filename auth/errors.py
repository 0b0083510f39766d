"""
auth/errors.py -- The identity subsystem's error taxonomy.

All of these render as a 4xx with the standard error envelope (see the
ServiceError handler in api/main.py). InvalidToken is the exception: it never
leaves the auth package -- the session gate turns it into Unauthenticated so
a bad signature, a malformed payload, and an expired token all look the same
to the caller.

Layer rule: no imports from api/ or catalog/.
"""

from __future__ import annotations

from core.errors import NotFound, ServiceError, WriteConflict

__all__ = [
    "ForwardAuthDisabled",
    "InvalidCredentials",
    "InvalidToken",
    "InviteClaimed",
    "NoToken",
    "NotFound",
    "Unauthenticated",
    "Unauthorized",
    "UnsupportedFile",
    "UploadFailed",
    "UsernameNotAvailable",
    "WriteConflict",
]


class InvalidToken(Exception):
    """Token failed signature, structure, or expiry checks."""


class InvalidCredentials(ServiceError):
    status_code = 401
    code = "invalid_credentials"
    message = "Invalid username or password."


class Unauthenticated(ServiceError):
    status_code = 401
    code = "unauthenticated"
    message = "Authentication required."


class Unauthorized(ServiceError):
    status_code = 403
    code = "unauthorized"
    message = "Owner access required."


class NoToken(ServiceError):
    status_code = 403
    code = "no_token"
    message = "A valid, unclaimed invite token is required to register."


class UsernameNotAvailable(ServiceError):
    status_code = 409
    code = "username_not_available"
    message = "That username is already taken."


class ForwardAuthDisabled(ServiceError):
    status_code = 403
    code = "forward_auth_disabled"
    message = "Forwarded user authentication is disabled."


class InviteClaimed(ServiceError):
    status_code = 409
    code = "invite_claimed"
    message = "This invite has already been claimed and cannot be deleted."


class UploadFailed(ServiceError):
    status_code = 400
    code = "upload_failed"
    message = "The upload could not be processed."


class UnsupportedFile(ServiceError):
    status_code = 415
    code = "unsupported_file"
    message = "Only JPEG and PNG images are accepted."
