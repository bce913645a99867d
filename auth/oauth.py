"""
auth/oauth.py -- Authlib OAuth/OIDC provider registry and identity extraction.

build_oauth() registers only providers whose client ID and secret are both
configured; the login page renders buttons from get_enabled_providers().

Security notes:
  [H1] Email verification is mandatory. identity_from_token() raises
       ExternalIdentityError if the provider does not confirm the email is
       verified. link_external_identity() trusts a verified provider email
       enough to mark the local account verified and attach to it, so an
       unverified claim must never get that far.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

  Any failure talking to the provider -- code exchange, missing claims,
  unverified email -- surfaces as ExternalIdentityError before the flow
  controller touches the store.

Supported providers:
  google -- Authorization code flow; OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.starlette_client import OAuth

from auth.errors import ExternalIdentityError
from auth.models import ExternalIdentity
from core.config import Settings

logger = logging.getLogger("accountgate.auth.oauth")

_GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


def build_oauth(settings: Settings) -> OAuth:
    """Return an authlib registry holding every configured provider."""
    oauth = OAuth()

    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=_GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        oauth.register(
            name="oidc",
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            server_metadata_url=settings.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Generic OIDC provider registered (display name: %s)", settings.oidc_display_name)

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for every configured provider."""
    providers: list[dict] = []
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        providers.append({"name": "oidc", "label": settings.oidc_display_name})
    return providers


async def exchange_code(client, request) -> dict:
    """Exchange the authorization code on the callback request for a token dict."""
    try:
        return await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("OAuth code exchange failed: %s", exc.error)
        raise ExternalIdentityError() from exc
    except httpx.HTTPError as exc:
        logger.warning("OAuth provider unreachable: %s", exc)
        raise ExternalIdentityError() from exc


def identity_from_token(provider: str, token: dict) -> ExternalIdentity:
    """Extract a verified ExternalIdentity from an OIDC token response [H1].

    The stored external id is namespaced by provider ("google:1234") so two
    providers issuing the same subject string can never collide.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ExternalIdentityError(f"{provider}: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ExternalIdentityError(f"{provider}: email is not verified by the provider")

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ExternalIdentityError(f"{provider}: missing email or sub claim in userinfo")

    display_name = userinfo.get("name") or email.split("@", 1)[0]
    return ExternalIdentity(external_id=f"{provider}:{subject}", email=email, display_name=display_name)
