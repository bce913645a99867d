"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store, token issuer, and flow controller do the work.
AccountUpdate is the one exception: it carries its own apply() so the
"explicit value beats existing value" precedence lives in exactly one place.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum


class Role(str, Enum):
    user = "user"
    admin = "admin"


@dataclass
class Account:
    """A local account, optionally linked to an external identity.

    hashed_password is None for identity-only accounts (created by OAuth).
    external_id is None until the account logs in through an external
    provider. Both may be present after linking.

    token_version is the revocation counter. Every token embeds the value it
    was issued under; any mismatch with the stored value rejects the token.

    refresh_token / refresh_token_expires hold the single live refresh
    session. A new login overwrites them.

    two_factor_challenge is the one outstanding 2FA login challenge; it is
    cleared when used, so a challenge completes at most one login.

    row_version counts writes to the record; the store refuses a save whose
    copy was read before the latest write.

    two_factor_pending_secret holds a secret from enroll() until the user
    proves possession of it in confirm_setup(); only then does it move to
    two_factor_secret.
    """

    name: str
    email: str
    role: Role = Role.user
    id: int | None = None
    hashed_password: str | None = None
    external_id: str | None = None
    is_email_verified: bool = False
    email_verification_token: str | None = None
    email_verification_expires: str | None = None  # ISO 8601
    reset_password_token: str | None = None
    reset_password_expires: str | None = None  # ISO 8601
    token_version: int = 0
    refresh_token: str | None = None
    refresh_token_expires: str | None = None  # ISO 8601
    is_two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    two_factor_pending_secret: str | None = None
    two_factor_backup_codes: list[str] = field(default_factory=list)
    two_factor_challenge: str | None = None
    row_version: int = 0
    created_at: str | None = None
    updated_at: str | None = None

    def summary(self) -> dict:
        """Public view of the account -- never includes hashes, tokens, or secrets."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "isEmailVerified": self.is_email_verified,
            "isTwoFactorEnabled": self.is_two_factor_enabled,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class Principal:
    """The minimal identity attached to an authenticated request."""

    id: int
    email: str
    role: Role


@dataclass(frozen=True)
class TokenClaims:
    """Decoded, signature-verified claims of an issued token."""

    account_id: int
    email: str
    role: Role
    token_version: int
    token_type: str  # "access" | "refresh" | "2fa"
    expires_at: int  # epoch seconds


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a flow that signs the account in."""

    account: Account
    tokens: TokenPair


@dataclass(frozen=True)
class TwoFactorChallenge:
    """Returned by login() instead of a token pair when two-factor is enabled."""

    account: Account
    challenge_token: str
    expires_in: int


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64,...


@dataclass(frozen=True)
class ExternalIdentity:
    """A verified identity assertion from an external provider."""

    external_id: str
    email: str
    display_name: str


@dataclass(frozen=True)
class AccountUpdate:
    """Partial update of an account's mutable profile fields.

    Each slot is None when the caller did not supply it. apply() resolves
    precedence field by field: an explicit value wins, None keeps the
    existing value.
    """

    name: str | None = None
    email: str | None = None
    role: Role | None = None

    def is_empty(self) -> bool:
        return self.name is None and self.email is None and self.role is None

    def apply(self, account: Account) -> Account:
        """Return a copy of account with every supplied slot written over it."""
        return replace(
            account,
            name=self.name if self.name is not None else account.name,
            email=self.email if self.email is not None else account.email,
            role=self.role if self.role is not None else account.role,
        )

    def changes_email(self, account: Account) -> bool:
        return self.email is not None and self.email != account.email
