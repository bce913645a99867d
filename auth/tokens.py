"""
auth/tokens.py -- Signed bearer tokens: access, refresh, and 2FA challenge.

Security design decisions:
  JWT: python-jose with HS256. Every token carries the same claim set
       {sub, email, role, token_version} plus a "type" claim that pins it to
       one use. An access token presented to /refresh-token, or a refresh
       token presented as a bearer credential, fails decoding.

  Stateless signature, stateful validity: decode() only proves the token is
       ours and unexpired. Whether it is still *valid* is decided by callers
       comparing token_version with the stored counter and, for refresh
       tokens, the stored refresh value.

  jti: a random id per token, so two logins inside the same second still
       produce different refresh tokens and replay of a superseded one is
       detectable.

  Fail closed: decode() returns None on any failure -- malformed, unsigned,
       expired, tampered, wrong type, or missing claims. Nothing raises past it.

The issuer is constructed from an explicit Settings instance; it never reads
configuration on its own.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import Account, Role, TokenClaims, TokenPair
from core.config import Settings

logger = logging.getLogger("accountgate.auth.tokens")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
TWO_FACTOR = "2fa"

_REQUIRED_CLAIMS = ("sub", "email", "role", "token_version", "type", "exp")


class TokenIssuer:
    """Issues and verifies the three token classes for one signing key."""

    def __init__(self, settings: Settings) -> None:
        self._secret_key = settings.secret_key
        self.access_ttl = settings.access_token_expire_seconds
        self.refresh_ttl = settings.refresh_token_expire_seconds
        self.challenge_ttl = settings.two_factor_challenge_expire_seconds

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def _encode(self, account: Account, token_type: str, ttl: int) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(account.id),
            "email": account.email,
            "role": account.role.value,
            "token_version": account.token_version,
            "type": token_type,
            "jti": secrets.token_hex(8),
            "iat": now,
            "exp": now + timedelta(seconds=ttl),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def issue_access_token(self, account: Account) -> str:
        return self._encode(account, ACCESS, self.access_ttl)

    def issue_refresh_token(self, account: Account) -> str:
        return self._encode(account, REFRESH, self.refresh_ttl)

    def issue_challenge_token(self, account: Account) -> str:
        """Short-lived token proving the password step of a 2FA login passed."""
        return self._encode(account, TWO_FACTOR, self.challenge_ttl)

    def issue_pair(self, account: Account) -> TokenPair:
        """Issue an access + refresh pair stamped with account.token_version."""
        return TokenPair(
            access_token=self.issue_access_token(account),
            refresh_token=self.issue_refresh_token(account),
            access_expires_in=self.access_ttl,
            refresh_expires_in=self.refresh_ttl,
        )

    def refresh_expiry(self) -> datetime:
        """Absolute expiry to store alongside a freshly issued refresh token."""
        return datetime.now(timezone.utc) + timedelta(seconds=self.refresh_ttl)

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def decode(self, token: str | None, expected_type: str) -> TokenClaims | None:
        """Verify signature, expiry and type. Returns the claims or None on any failure."""
        if not token:
            return None
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            return None
        if payload["type"] != expected_type:
            return None
        try:
            return TokenClaims(
                account_id=int(payload["sub"]),
                email=payload["email"],
                role=Role(payload["role"]),
                token_version=int(payload["token_version"]),
                token_type=payload["type"],
                expires_at=int(payload["exp"]),
            )
        except (TypeError, ValueError):
            logger.warning("Signed token carried malformed claims; rejecting")
            return None


# ---------------------------------------------------------------------------
# Cookie transport
# ---------------------------------------------------------------------------

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def set_session_cookies(response, tokens: TokenPair, secure: bool) -> None:
    """Write the access and refresh tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches each token's expiry so cookie and token die together.
    """
    for name, value, max_age in (
        (ACCESS_COOKIE, tokens.access_token, tokens.access_expires_in),
        (REFRESH_COOKIE, tokens.refresh_token, tokens.refresh_expires_in),
    ):
        response.set_cookie(
            name,
            value=value,
            httponly=True,
            samesite="strict",
            secure=secure,
            max_age=max_age,
            path="/",
        )


def set_access_cookie(response, token: str, max_age: int, secure: bool) -> None:
    response.set_cookie(
        ACCESS_COOKIE, value=token, httponly=True, samesite="strict", secure=secure, max_age=max_age, path="/"
    )


def clear_session_cookies(response, secure: bool) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", httponly=True, samesite="strict", secure=secure)
