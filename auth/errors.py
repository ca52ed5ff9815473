"""
auth/errors.py -- Error taxonomy for the identity and access core.

Every failure the core can report is an AccessError subclass carrying a
machine-readable code, an HTTP status and a caller-safe message. The API
layer renders all of them through one exception handler, so route code
raises and never builds error responses by hand.

Messages are deliberately generic. PermissionDenied never says which rule
fired; InvalidOrExpiredToken never says whether the token was unknown,
expired or exhausted. The internal reason goes to the log, not the caller.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AccessError(Exception):
    """Base class for every failure reported by the core."""

    code = "error"
    status_code = 400
    message = "Request failed."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.message)
        self.detail = detail


class ValidationError(AccessError):
    """Malformed or missing input. Recoverable by resubmitting."""

    code = "validation_error"
    status_code = 400
    message = "Request validation failed."


class DuplicateEmail(AccessError):
    code = "duplicate_email"
    status_code = 409
    message = "A user with that email already exists."


class NotFound(AccessError):
    code = "not_found"
    status_code = 404
    message = "Not found."


class PermissionDenied(AccessError):
    """Authorization gate failure. detail is never sent to the caller."""

    code = "permission_denied"
    status_code = 403
    message = "Permission denied."


class InvalidCredentials(AccessError):
    code = "bad_credentials"
    status_code = 401
    message = "Invalid email or password."


class AccountInactive(AccessError):
    code = "account_inactive"
    status_code = 401
    message = "This account is disabled."


class InvalidOrExpiredToken(AccessError):
    code = "invalid_token"
    status_code = 400
    message = "The recovery link is invalid or has expired."


class WeakPassword(AccessError):
    code = "weak_password"
    status_code = 400
    message = (
        "Password must contain upper and lower case letters, a digit and a special character, "
        "and meet the minimum length."
    )


class DependencyFailure(AccessError):
    """A collaborator (store, notifier) is unavailable. Logged, never detailed."""

    code = "internal_error"
    status_code = 500
    message = "An unexpected error occurred."


class PersistenceError(DependencyFailure):
    pass


class NotificationFailed(DependencyFailure):
    code = "notification_failed"
    status_code = 503
    message = "The recovery message could not be sent. Please try again later."
