"""
api/main.py -- FastAPI application entry point for AccountGate.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- authlib keeps the OAuth state value here

Lifespan builds every collaborator once from the Settings singleton and hangs
it on app.state: account store, token issuer, notification dispatcher (plus
its background delivery task), OAuth registry, and the AuthFlow controller.
Shutdown reverses it.

Every error leaves through one of the handlers below as the
{success, message, data?, errors?} envelope.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import HealthResponse, envelope
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthError, ValidationFailed
from auth.flows import AuthFlow
from auth.notifier import EmailSender, NotificationDispatcher
from auth.oauth import build_oauth
from auth.passwords import PasswordHasher
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from auth.two_factor import TwoFactorEngine
from core.config import Settings, get_settings

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("accountgate.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, settings: Settings, store: AccountStore, dispatcher) -> None:
    """Attach the settings, store, issuer, dispatcher, OAuth registry and flow to app.state.

    The lifespan calls this with production collaborators; tests call it
    with an in-memory store and a recording dispatcher.
    """
    issuer = TokenIssuer(settings)
    app.state.settings = settings
    app.state.account_store = store
    app.state.issuer = issuer
    app.state.dispatcher = dispatcher
    app.state.oauth = build_oauth(settings)
    app.state.flow = AuthFlow(
        store=store,
        issuer=issuer,
        hasher=PasswordHasher(settings.bcrypt_rounds),
        two_factor=TwoFactorEngine(settings.two_factor_issuer, settings.backup_code_count),
        dispatcher=dispatcher,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build collaborators on startup; stop the mail task and close the store on shutdown.

    The dispatcher must exist before its delivery task starts, and the task
    must be cancelled before the store closes so a late send cannot race a
    disposed engine.
    """
    settings = get_settings()
    logger.info("AccountGate API starting up (debug=%s)", settings.debug)

    dispatcher = NotificationDispatcher(EmailSender(settings))
    wire_services(app, settings, AccountStore(settings.database_url), dispatcher)
    app.state.mail_task = asyncio.create_task(dispatcher.run())
    logger.info("Account store ready; notification worker started")

    yield

    app.state.mail_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.mail_task
    await dispatcher.drain()
    app.state.account_store.close()
    logger.info("AccountGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

# Middleware is configured at import time, before the lifespan runs.
_settings = get_settings()

app = FastAPI(
    title="AccountGate API",
    description="Account authentication, token lifecycle, two-factor and external identity sign-in.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib stores the OAuth state value in the session between the
# authorization redirect and the callback.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.secure_cookies)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


@app.middleware("http")
async def no_store_auth_responses(request: Request, call_next):
    """Tokens and auth outcomes must never be cached, error responses included."""
    response = await call_next(request)
    if request.url.path.startswith("/api/v1/auth/"):
        response.headers["Cache-Control"] = "no-store"
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same envelope so API clients can parse errors
# uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any flow or guard failure with its status, code and detail."""
    errors = [e.as_dict() for e in exc.errors] if isinstance(exc, ValidationFailed) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(False, exc.message, errors=errors, code=exc.code, **exc.detail),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a rate limit is exceeded, with Retry-After in seconds."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=envelope(False, "Too many requests. Please try again later.", code="RATE_LIMITED"),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {path, message} entry per invalid field.

    The leading "body"/"query"/"path" location segment is dropped so paths
    read the same as the ones auth/validation.py reports.
    """
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ())]
        if len(loc) > 1 and loc[0] in ("body", "query", "path"):
            loc = loc[1:]
        errors.append({"path": ".".join(loc) or "body", "message": err.get("msg", "Invalid value")})
    return JSONResponse(
        status_code=400,
        content=envelope(False, "Validation error", errors=errors, code="VALIDATION_ERROR"),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap framework HTTP errors (unknown route, wrong method) in the envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(False, str(exc.detail), code=f"HTTP_{exc.status_code}"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback always goes to the log. It is echoed in the response body
    only when DEBUG=true.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    extra = {}
    if get_settings().debug:
        extra = {"detail": str(exc), "stack": traceback.format_exc()}
    return JSONResponse(
        status_code=500,
        content=envelope(False, "Internal server error", code="INTERNAL_ERROR", **extra),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration. No rate limit: load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Return liveness, version, and whether the database answers."""
    store: AccountStore = request.app.state.account_store
    try:
        db_ok = await run_in_threadpool(store.ping)
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        db_ok = False

    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        components={"database": "ok" if db_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
