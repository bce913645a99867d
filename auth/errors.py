"""
auth/errors.py -- Error taxonomy for the authentication core.

Every failure a flow can report is an AuthError subclass carrying an HTTP
status, a stable machine-readable code, and an optional detail dict. The
single exception handler in api/main.py renders any AuthError into the
response envelope, so flows raise and never build responses themselves.

InvalidCredentials and InvalidOrExpiredToken deliberately carry the same
message whether the account exists or not -- callers must not be able to
distinguish "no such account" from "wrong secret".

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldError:
    """One itemized validation failure: dotted field path plus message."""

    path: str
    message: str

    def as_dict(self) -> dict:
        return {"path": self.path, "message": self.message}


class AuthError(Exception):
    """Base class for errors mapped to HTTP responses."""

    status_code: int = 400
    code: str = "bad_request"
    default_message: str = "Request could not be processed."

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        detail: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}


class ValidationFailed(AuthError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation error"

    def __init__(self, errors: list[FieldError], message: str | None = None) -> None:
        super().__init__(message)
        self.errors = errors


class DuplicateAccount(AuthError):
    status_code = 400
    code = "DUPLICATE_ACCOUNT"
    default_message = "User with this email already exists"


class InvalidCredentials(AuthError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class InvalidOrExpiredToken(AuthError):
    status_code = 401
    code = "INVALID_OR_EXPIRED_TOKEN"
    default_message = "Invalid or expired token"


class ExternalIdentityOnly(AuthError):
    status_code = 400
    code = "EXTERNAL_IDENTITY_ONLY"
    default_message = "This account uses external sign-in. Please log in with your identity provider."


class EmailNotVerified(AuthError):
    status_code = 403
    code = "EMAIL_NOT_VERIFIED"
    default_message = "Please verify your email before continuing."


class AlreadyVerified(AuthError):
    status_code = 400
    code = "ALREADY_VERIFIED"
    default_message = "Email is already verified"


class SamePassword(AuthError):
    status_code = 400
    code = "SAME_PASSWORD"
    default_message = "New password must be different from the current password"


class InvalidTwoFactorCode(AuthError):
    status_code = 401
    code = "INVALID_2FA_CODE"
    default_message = "Invalid two-factor code"


class TwoFactorNotPending(AuthError):
    status_code = 400
    code = "2FA_NOT_PENDING"
    default_message = "Two-factor setup has not been started"


class TwoFactorAlreadyEnabled(AuthError):
    status_code = 400
    code = "2FA_ALREADY_ENABLED"
    default_message = "Two-factor authentication is already enabled"


class Unauthenticated(AuthError):
    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = "Authentication required. Please login."


class Forbidden(AuthError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Forbidden: You do not have permission to access this resource"


class NotFound(AuthError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class ExternalIdentityError(AuthError):
    status_code = 502
    code = "EXTERNAL_IDENTITY_ERROR"
    default_message = "External identity provider could not verify this sign-in"


class Internal(AuthError):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"


class ConcurrentUpdate(AuthError):
    status_code = 409
    code = "CONCURRENT_UPDATE"
    default_message = "The account was changed by another request. Please try again."
