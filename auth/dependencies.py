"""
auth/dependencies.py -- FastAPI Depends() helpers: the authorization guard.

A bearer access token is looked for in priority order:
  1. "access_token" cookie -- set by the login/refresh responses.
  2. Authorization: Bearer <token> header -- non-cookie API clients.

get_current_principal() validates the token, loads the account, and rejects
it when the account is gone, the token_version no longer matches (revoked by
a password reset/change), or the email is unverified. On success the minimal
Principal {id, email, role} is attached to request.state and returned.

require_roles() layers a role check on top; is_owner_or_admin() is the
ownership predicate every resource route uses.

Dependencies here are plain `def`: FastAPI runs them on the thread pool, so
the blocking store read does not stall the event loop.

Layer rule: may import from fastapi (Request) because this module is part of
the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.errors import EmailNotVerified, Forbidden, Unauthenticated
from auth.models import Principal, Role
from auth.store import AccountStore
from auth.tokens import ACCESS, ACCESS_COOKIE, TokenIssuer


def extract_bearer_token(request: Request) -> str | None:
    """Return the access token from the cookie or the Authorization header."""
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def get_current_principal(request: Request) -> Principal:
    """Require a valid, unrevoked access token for a verified account.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    issuer: TokenIssuer = request.app.state.issuer
    store: AccountStore = request.app.state.account_store

    token = extract_bearer_token(request)
    if token is None:
        raise Unauthenticated()

    claims = issuer.decode(token, ACCESS)
    if claims is None:
        raise Unauthenticated("Invalid or expired token. Please login again.")

    account = store.find_by_id(claims.account_id)
    if account is None:
        raise Unauthenticated("Invalid or expired token. Please login again.")
    if account.token_version != claims.token_version:
        raise Unauthenticated("Token has been invalidated. Please login again.")
    if not account.is_email_verified:
        raise EmailNotVerified("Please verify your email before accessing this resource.")

    principal = Principal(id=account.id, email=account.email, role=account.role)
    request.state.principal = principal
    return principal


def require_roles(*roles: Role):
    """Build a dependency that admits only principals holding one of roles.

    Use as a FastAPI dependency:
        @router.get("/admin-only")
        async def route(principal: Principal = Depends(require_roles(Role.admin))): ...
    """
    allowed = [role.value for role in roles]

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role.value not in allowed:
            raise Forbidden(detail={"requiredRoles": allowed, "yourRole": principal.role.value})
        return principal

    return dependency


require_admin = require_roles(Role.admin)


def is_owner_or_admin(principal: Principal, owner_id: int) -> bool:
    """Admins may act on anything; everyone else only on what they own."""
    if principal.role == Role.admin:
        return True
    return principal.id == owner_id
