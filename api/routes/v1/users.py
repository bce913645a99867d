"""
api/routes/v1/users.py -- Account profile and administration endpoints.

Routes (all under /api/v1/users, all require auth):
  GET    /users/profile   -- own account
  GET    /users           -- every account, newest first (admin only)
  GET    /users/{id}      -- one account (owner or admin)
  PUT    /users/{id}      -- partial update of name/email (owner or admin); role (admin only)
  DELETE /users/{id}      -- delete an account (admin only, never yourself)

Route registration order: /users/profile must come before /users/{id} or
FastAPI would try to parse "profile" as an id.

IDOR guard: every /{id} route checks is_owner_or_admin() before loading or
touching the target.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.models import UserUpdateRequest, envelope
from auth.dependencies import get_current_principal, is_owner_or_admin, require_admin
from auth.errors import AuthError, Forbidden, NotFound
from auth.models import AccountUpdate, Principal, Role
from auth.store import AccountStore

logger = logging.getLogger("accountgate.api.users")

router = APIRouter(prefix="/users")


def _store(request: Request) -> AccountStore:
    return request.app.state.account_store


def _check_access(principal: Principal, account_id: int) -> None:
    if not is_owner_or_admin(principal, account_id):
        raise Forbidden("You do not have permission to access this user")


@router.get("/profile")
async def profile(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    account = await run_in_threadpool(_store(request).find_by_id, principal.id)
    if account is None:
        raise NotFound("User not found")
    return JSONResponse(content=envelope(True, data={"user": account.summary()}))


@router.get("")
async def list_users(request: Request, principal: Principal = Depends(require_admin)) -> JSONResponse:
    """List every account without sensitive fields. Admin only."""
    accounts = await run_in_threadpool(_store(request).list_accounts)
    return JSONResponse(
        content=envelope(True, data={"users": [a.summary() for a in accounts]}, count=len(accounts))
    )


@router.get("/{account_id}")
async def get_user(
    request: Request,
    account_id: int,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    _check_access(principal, account_id)
    account = await run_in_threadpool(_store(request).find_by_id, account_id)
    if account is None:
        raise NotFound("User not found")
    return JSONResponse(content=envelope(True, data={"user": account.summary()}))


@router.put("/{account_id}")
async def update_user(
    request: Request,
    account_id: int,
    body: UserUpdateRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Update name and/or email; admins may also change the role.

    Changing the email marks the account unverified and mails a new link.
    """
    _check_access(principal, account_id)
    if body.role is not None and principal.role != Role.admin:
        raise Forbidden("Only admins can change roles")

    update = AccountUpdate(
        name=body.name,
        email=body.email,
        role=Role(body.role) if body.role is not None else None,
    )
    account = await request.app.state.flow.update_account(account_id, update)
    if update.role is not None:
        logger.info("Account %s role set to %s by account %s", account_id, update.role.value, principal.id)
    return JSONResponse(content=envelope(True, "User updated successfully", {"user": account.summary()}))


@router.delete("/{account_id}")
async def delete_user(
    request: Request,
    account_id: int,
    principal: Principal = Depends(require_admin),
) -> JSONResponse:
    """Permanently delete an account. Admin only; an admin cannot delete themselves."""
    if account_id == principal.id:
        raise AuthError("You cannot delete your own account")
    deleted = await run_in_threadpool(_store(request).delete, account_id)
    if not deleted:
        raise NotFound("User not found")
    logger.warning("Account %s deleted by admin %s", account_id, principal.id)
    return JSONResponse(content=envelope(True, "User deleted successfully"))
