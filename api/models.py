"""
API request and response models for AccountGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Strings are taken as sent: passwords keep leading and trailing spaces, and
names and emails are normalized by auth/flows.py the same way for every
caller.

Field names on the wire are camelCase (refreshToken, currentPassword) to
match existing browser clients; Python attributes stay snake_case via
aliases.

Validation failures are rendered by api/main.py as a 400 with an itemized
[{path, message}] list, the same shape auth/validation.py produces.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.validation import (
    EMAIL_PATTERN,
    NAME_MAX_LENGTH,
    NAME_MIN_LENGTH,
    PASSWORD_MAX_LENGTH,
    PASSWORD_MIN_LENGTH,
)

_TOTP_PATTERN = r"^\d{6}$"


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class _EmailField(_Request):
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def lowercase_email(cls, value: Any) -> Any:
        """Lowercase before the pattern check so stored emails are case-normalized."""
        return value.strip().lower() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Auth request models
# ---------------------------------------------------------------------------


class RegisterRequest(_EmailField):
    name: str = Field(min_length=NAME_MIN_LENGTH, max_length=NAME_MAX_LENGTH)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class LoginRequest(_EmailField):
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class EmailRequest(_EmailField):
    """Body for forgot-password and resend-verification."""


class ResetPasswordRequest(_Request):
    token: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class ChangePasswordRequest(_Request):
    current_password: str = Field(alias="currentPassword", min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str = Field(alias="newPassword", min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class VerifyEmailRequest(_Request):
    token: str = Field(min_length=1, max_length=128)


class RefreshRequest(_Request):
    """Body for refresh-token and logout. Cookie clients may send an empty body."""

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=4096)


class TwoFactorCodeRequest(_Request):
    token: str = Field(pattern=_TOTP_PATTERN, description="6-digit code from the authenticator app")


class TwoFactorLoginRequest(_Request):
    challenge_token: str = Field(alias="challengeToken", min_length=1, max_length=4096)
    token: Optional[str] = Field(default=None, pattern=_TOTP_PATTERN)
    backup_code: Optional[str] = Field(default=None, alias="backupCode", min_length=1, max_length=32)


class TwoFactorDisableRequest(_Request):
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    token: Optional[str] = Field(default=None, pattern=_TOTP_PATTERN)
    backup_code: Optional[str] = Field(default=None, alias="backupCode", min_length=1, max_length=32)


# ---------------------------------------------------------------------------
# User management request models
# ---------------------------------------------------------------------------


class UserUpdateRequest(_Request):
    """Body for PUT /users/{id}. Every field optional; omitted fields are kept."""

    name: Optional[str] = Field(default=None, min_length=NAME_MIN_LENGTH, max_length=NAME_MAX_LENGTH)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    role: Optional[str] = Field(default=None, pattern=r"^(user|admin)$")

    @field_validator("email", mode="before")
    @classmethod
    def lowercase_email(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Response envelope
# ---------------------------------------------------------------------------


class FieldErrorModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    message: str


class Envelope(BaseModel):
    """Uniform response body: {success, message, data?, errors?}.

    Extra top-level keys (count, requiredRoles, yourRole, code) are allowed so
    list and error responses can carry their metadata alongside.
    """

    model_config = ConfigDict(extra="allow")

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    errors: Optional[list[FieldErrorModel]] = None


def envelope(success: bool = True, message: Optional[str] = None, data: Any = None, **extra: Any) -> dict:
    """Build a JSON-ready envelope dict, omitting unset optional members."""
    return Envelope(success=success, message=message, data=data, **extra).model_dump(exclude_none=True)


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
