"""Unit tests for auth/oauth.py -- provider registry and identity extraction.

Covers:
- identities are namespaced by provider
- incomplete or unverified userinfo is rejected
- authorization-code exchange failures become ExternalIdentityError (502)
- only configured providers are enabled and registered
"""

import asyncio

import httpx
import pytest
from authlib.integrations.base_client import OAuthError

from auth.errors import ExternalIdentityError
from auth.oauth import build_oauth, exchange_code, get_enabled_providers, identity_from_token
from conftest import make_settings


class TestExternalIdentity:
    def test_identity_is_namespaced_by_provider(self) -> None:
        identity = identity_from_token(
            "google", {"userinfo": {"sub": "123", "email": "g@example.com", "email_verified": True, "name": "Gina"}}
        )
        assert identity.external_id == "google:123"
        assert identity.email == "g@example.com"
        assert identity.display_name == "Gina"

    @pytest.mark.parametrize(
        "token",
        [
            {},
            {"userinfo": {"sub": "1", "email": "g@example.com", "email_verified": False}},
            {"userinfo": {"sub": "1", "email_verified": True}},
            {"userinfo": {"email": "g@example.com", "email_verified": True}},
        ],
    )
    def test_incomplete_or_unverified_identity_rejected(self, token) -> None:
        with pytest.raises(ExternalIdentityError):
            identity_from_token("google", token)

    @pytest.mark.parametrize("error", [OAuthError(error="access_denied"), httpx.ConnectError("unreachable")])
    def test_exchange_failure_becomes_external_identity_error(self, error) -> None:
        class _Client:
            async def authorize_access_token(self, request):
                raise error

        with pytest.raises(ExternalIdentityError) as exc_info:
            asyncio.run(exchange_code(_Client(), request=None))
        assert exc_info.value.status_code == 502

    def test_only_configured_providers_are_enabled(self) -> None:
        settings = make_settings(google_client_id="id", google_client_secret="secret")
        assert [p["name"] for p in get_enabled_providers(settings)] == ["google"]
        assert build_oauth(settings).create_client("google") is not None
        assert get_enabled_providers(make_settings(google_client_id="", oidc_client_id="")) == []
