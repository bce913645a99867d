"""Unit tests for auth/tokens.py -- TokenIssuer encode/decode.

Covers:
- access/refresh/2fa tokens decode only as their own type
- claims carry id, email, role and token_version
- expired, tampered and foreign-key tokens decode to None
- two tokens issued back to back are distinct (jti)
"""

from datetime import datetime, timedelta, timezone

from jose import jwt

from auth.models import Account, Role
from auth.tokens import ACCESS, REFRESH, TWO_FACTOR, TokenIssuer
from conftest import make_settings


def _account(**overrides) -> Account:
    values = {"id": 7, "name": "Ana", "email": "ana@example.com", "role": Role.admin, "token_version": 3}
    values.update(overrides)
    return Account(**values)


class TestTokenTypes:
    def test_access_token_round_trips_claims(self, issuer: TokenIssuer) -> None:
        """An access token decodes as ACCESS with every identity claim intact."""
        claims = issuer.decode(issuer.issue_access_token(_account()), ACCESS)
        assert claims is not None
        assert claims.account_id == 7
        assert claims.email == "ana@example.com"
        assert claims.role == Role.admin
        assert claims.token_version == 3
        assert claims.token_type == ACCESS

    def test_refresh_token_is_not_an_access_token(self, issuer: TokenIssuer) -> None:
        """A refresh token presented where an access token is expected is rejected."""
        token = issuer.issue_refresh_token(_account())
        assert issuer.decode(token, ACCESS) is None
        assert issuer.decode(token, REFRESH) is not None

    def test_challenge_token_only_decodes_as_2fa(self, issuer: TokenIssuer) -> None:
        token = issuer.issue_challenge_token(_account())
        assert issuer.decode(token, ACCESS) is None
        assert issuer.decode(token, REFRESH) is None
        assert issuer.decode(token, TWO_FACTOR) is not None

    def test_pair_reports_configured_lifetimes(self) -> None:
        issuer = TokenIssuer(make_settings(access_token_expire_seconds=60, refresh_token_expire_seconds=120))
        pair = issuer.issue_pair(_account())
        assert pair.access_expires_in == 60
        assert pair.refresh_expires_in == 120

    def test_tokens_issued_in_same_second_differ(self, issuer: TokenIssuer) -> None:
        """jti makes every token unique even with identical claims and timestamps."""
        account = _account()
        assert issuer.issue_refresh_token(account) != issuer.issue_refresh_token(account)


class TestRejection:
    def test_missing_token_is_none(self, issuer: TokenIssuer) -> None:
        assert issuer.decode(None, ACCESS) is None
        assert issuer.decode("", ACCESS) is None

    def test_garbage_is_none(self, issuer: TokenIssuer) -> None:
        assert issuer.decode("not-a-jwt", ACCESS) is None

    def test_expired_token_is_none(self) -> None:
        issuer = TokenIssuer(make_settings(access_token_expire_seconds=-10))
        assert issuer.decode(issuer.issue_access_token(_account()), ACCESS) is None

    def test_token_signed_with_other_key_is_none(self, issuer: TokenIssuer) -> None:
        other = TokenIssuer(make_settings(secret_key="another-secret-key-abcdefghijklmnopqrstuvwxyz"))
        assert issuer.decode(other.issue_access_token(_account()), ACCESS) is None

    def test_tampered_payload_is_none(self, issuer: TokenIssuer) -> None:
        """Changing a claim without re-signing breaks the signature."""
        token = issuer.issue_access_token(_account(role=Role.user))
        header, _payload, signature = token.split(".")
        forged_payload = jwt.encode(
            {
                "sub": "7",
                "email": "ana@example.com",
                "role": "admin",
                "token_version": 3,
                "type": ACCESS,
                "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
            },
            "irrelevant-key-irrelevant-key-irrelevant",
            algorithm="HS256",
        ).split(".")[1]
        assert issuer.decode(f"{header}.{forged_payload}.{signature}", ACCESS) is None

    def test_token_missing_version_claim_is_none(self, settings) -> None:
        issuer = TokenIssuer(settings)
        token = jwt.encode(
            {
                "sub": "7",
                "email": "ana@example.com",
                "role": "user",
                "type": ACCESS,
                "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
            },
            settings.secret_key,
            algorithm="HS256",
        )
        assert issuer.decode(token, ACCESS) is None
