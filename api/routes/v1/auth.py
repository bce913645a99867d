"""
api/routes/v1/auth.py -- Authentication, token lifecycle and two-factor REST endpoints.

Routes (all under /api/v1/auth):
  POST /register               -- create account; 201; sets cookies
  POST /login                  -- password login; tokens or a 2FA challenge
  POST /refresh-token          -- new access token from a live refresh token
  POST /logout                 -- end the refresh session; clears cookies; never fails
  POST /forgot-password        -- generic message whether or not the email exists
  POST /reset-password         -- consume reset token; revokes every session
  POST /verify-email           -- consume verification token
  POST /resend-verification    -- generic message; rotates the verification token
  POST /change-password        -- requires auth; revokes every session
  GET  /me                     -- current account (requires auth)
  GET  /providers              -- enabled external identity providers (public)
  GET  /oauth/{provider}/login     -- redirect to the provider
  GET  /oauth/{provider}/callback  -- link or create the account; sets cookies
  POST /2fa/enable             -- start enrollment (requires auth)
  POST /2fa/verify-setup       -- activate; returns backup codes (requires auth)
  POST /2fa/verify-login       -- finish a challenged login
  POST /2fa/disable            -- requires auth, password and a code

Security:
  Routes that accept a secret (login, reset-password, 2fa/verify-login) and
  the email-sending routes are rate-limited per IP.
  Cache-Control: no-store is added to every /auth response by api/main.py.
  Tokens travel both as httpOnly SameSite=strict cookies and in the body, so
  browser and non-browser clients are served by the same routes.

Handlers translate HTTP to AuthFlow calls and back. Every failure is an
AuthError raised by the flow or the guard and rendered by api/main.py.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import credential_rate_limit, limiter
from api.models import (
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorLoginRequest,
    VerifyEmailRequest,
    envelope,
)
from auth.dependencies import get_current_principal
from auth.errors import ConcurrentUpdate, DuplicateAccount, ExternalIdentityError, NotFound
from auth.flows import AuthFlow
from auth.models import AuthResult, Principal, TwoFactorChallenge
from auth.oauth import exchange_code, get_enabled_providers, identity_from_token
from auth.store import AccountStore
from auth.tokens import REFRESH_COOKIE, clear_session_cookies, set_access_cookie, set_session_cookies
from core.config import Settings

logger = logging.getLogger("accountgate.api.auth")

# Auth policy:
# - register, login, refresh-token, logout, forgot/reset-password, verify-email,
#   resend-verification, providers, oauth/*, 2fa/verify-login: public
# - me, change-password, 2fa/enable, 2fa/verify-setup, 2fa/disable:
#   requires auth (get_current_principal)
router = APIRouter(prefix="/auth")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _flow(request: Request) -> AuthFlow:
    return request.app.state.flow


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _session_payload(result: AuthResult) -> dict:
    return {
        "user": result.account.summary(),
        "accessToken": result.tokens.access_token,
        "refreshToken": result.tokens.refresh_token,
        "expiresIn": result.tokens.access_expires_in,
    }


def _session_response(request: Request, result: AuthResult, message: str, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=envelope(True, message, _session_payload(result)))
    set_session_cookies(resp, result.tokens, _settings(request).secure_cookies)
    return resp


def _presented_refresh_token(request: Request, body: RefreshRequest | None) -> str | None:
    """Body value wins over the cookie so API clients can override a stale cookie."""
    if body is not None and body.refresh_token:
        return body.refresh_token
    return request.cookies.get(REFRESH_COOKIE)


# ---------------------------------------------------------------------------
# Registration, login, session
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)
@router.post("/register", status_code=201)
async def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password account and start its first session.

    The account can hold tokens immediately but the guard refuses them until
    the email is verified.
    """
    result = await _flow(request).register(body.name, body.email, body.password)
    return _session_response(
        request,
        result,
        "User registered successfully. Please check your email to verify your account.",
        status_code=201,
    )


@limiter.limit(credential_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/login")
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    With two-factor enabled no tokens are issued here; the response carries a
    short-lived challengeToken for POST /2fa/verify-login instead.
    """
    outcome = await _flow(request).login(body.email, body.password)
    if isinstance(outcome, TwoFactorChallenge):
        return JSONResponse(
            content=envelope(
                True,
                "Two-factor authentication required",
                {
                    "requiresTwoFactor": True,
                    "challengeToken": outcome.challenge_token,
                    "expiresIn": outcome.expires_in,
                },
            )
        )
    return _session_response(request, outcome, "Login successful")


@router.post("/refresh-token")
async def refresh_token(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Issue a new access token. The refresh token itself is not rotated."""
    flow = _flow(request)
    access_token = await flow.refresh(_presented_refresh_token(request, body))
    ttl = flow.issuer.access_ttl
    resp = JSONResponse(content=envelope(True, "Token refreshed", {"accessToken": access_token, "expiresIn": ttl}))
    set_access_cookie(resp, access_token, ttl, _settings(request).secure_cookies)
    return resp


@router.post("/logout")
async def logout(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """End the refresh session if one is presented. Always 200."""
    await _flow(request).logout(_presented_refresh_token(request, body))
    resp = JSONResponse(content=envelope(True, "Logged out successfully"))
    clear_session_cookies(resp, _settings(request).secure_cookies)
    return resp


@router.get("/me")
async def me(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    store: AccountStore = request.app.state.account_store
    account = await run_in_threadpool(store.find_by_id, principal.id)
    if account is None:
        raise NotFound("User not found")
    return JSONResponse(content=envelope(True, data={"user": account.summary()}))


# ---------------------------------------------------------------------------
# Password reset and change
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)
@router.post("/forgot-password")
async def forgot_password(request: Request, body: EmailRequest) -> JSONResponse:
    message = await _flow(request).forgot_password(body.email)
    return JSONResponse(content=envelope(True, message))


@limiter.limit(credential_rate_limit)
@router.post("/reset-password")
async def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password from a reset token. Every outstanding token stops working."""
    await _flow(request).reset_password(body.token, body.password)
    resp = JSONResponse(content=envelope(True, "Password reset successful. Please log in with your new password."))
    clear_session_cookies(resp, _settings(request).secure_cookies)
    return resp


@router.post("/change-password")
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    await _flow(request).change_password(principal.id, body.current_password, body.new_password)
    resp = JSONResponse(content=envelope(True, "Password changed successfully. Please log in again."))
    clear_session_cookies(resp, _settings(request).secure_cookies)
    return resp


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/verify-email")
async def verify_email(request: Request, body: VerifyEmailRequest) -> JSONResponse:
    account = await _flow(request).verify_email(body.token)
    return JSONResponse(content=envelope(True, "Email verified successfully", {"user": account.summary()}))


@limiter.limit(credential_rate_limit)
@router.post("/resend-verification")
async def resend_verification(request: Request, body: EmailRequest) -> JSONResponse:
    message = await _flow(request).resend_verification(body.email)
    return JSONResponse(content=envelope(True, message))


# ---------------------------------------------------------------------------
# External identity providers
# ---------------------------------------------------------------------------


@router.get("/providers")
async def list_providers(request: Request) -> JSONResponse:
    """Return the configured providers so the login page knows which buttons to render."""
    return JSONResponse(content=envelope(True, data={"providers": get_enabled_providers(_settings(request))}))


def _require_provider(request: Request, provider: str):
    enabled = {p["name"] for p in get_enabled_providers(_settings(request))}
    if provider not in enabled:
        raise NotFound(f"Unknown identity provider: {provider}")
    return request.app.state.oauth.create_client(provider)


@router.get("/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list so a crafted name
    cannot pick an arbitrary client.
    """
    client = _require_provider(request, provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Exchange the code, link or create the account, set cookies, and return to the frontend.

    Any provider failure sends the browser back to the login page with
    ?error=oauth_failed; nothing is written to the store in that case.
    """
    client = _require_provider(request, provider)
    frontend = _settings(request).frontend_url.rstrip("/")
    try:
        token = await exchange_code(client, request)
        identity = identity_from_token(provider, token)
        result = await _flow(request).link_external_identity(identity)
    except (ExternalIdentityError, DuplicateAccount, ConcurrentUpdate) as exc:
        logger.warning("External sign-in via %s failed: %s", provider, exc.message)
        return RedirectResponse(f"{frontend}/login?error=oauth_failed", status_code=302)

    resp = RedirectResponse(f"{frontend}/", status_code=302)
    set_session_cookies(resp, result.tokens, _settings(request).secure_cookies)
    return resp


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


@router.post("/2fa/enable")
async def two_factor_enable(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    """Start enrollment. The secret stays pending until /2fa/verify-setup succeeds."""
    enrollment = await _flow(request).enroll_two_factor(principal.id)
    return JSONResponse(
        content=envelope(
            True,
            "Scan the QR code with your authenticator app, then confirm with a code",
            {"secret": enrollment.secret, "otpauthUrl": enrollment.provisioning_uri, "qrCode": enrollment.qr_code},
        )
    )


@router.post("/2fa/verify-setup")
async def two_factor_verify_setup(
    request: Request,
    body: TwoFactorCodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Activate two-factor. The backup codes are shown once and never again."""
    backup_codes = await _flow(request).confirm_two_factor(principal.id, body.token)
    return JSONResponse(
        content=envelope(True, "Two-factor authentication enabled", {"backupCodes": backup_codes})
    )


@limiter.limit(credential_rate_limit)
@router.post("/2fa/verify-login")
async def two_factor_verify_login(request: Request, body: TwoFactorLoginRequest) -> JSONResponse:
    result = await _flow(request).verify_two_factor_login(
        body.challenge_token, code=body.token, backup_code=body.backup_code
    )
    return _session_response(request, result, "Login successful")


@router.post("/2fa/disable")
async def two_factor_disable(
    request: Request,
    body: TwoFactorDisableRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    await _flow(request).disable_two_factor(
        principal.id, body.password, code=body.token, backup_code=body.backup_code
    )
    return JSONResponse(content=envelope(True, "Two-factor authentication disabled"))
