"""
api/main.py -- FastAPI application entry point for the PyroAlert auth service.

Exposes the auth core over HTTP: OAuth2 token endpoints, 2FA management,
account management, and a health check.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, token issuer, 2FA engine, grant handler,
purge task) and shutdown (cancel purge task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.oauth import router as oauth_router
from api.routes.v1.two_factor import router as two_factor_router
from auth.dependencies import Principal, get_principal
from auth.errors import AuthError, InsufficientScope, InvalidToken
from auth.grants import GrantHandler
from auth.refresh import RefreshTokenStore
from auth.store import UserStore
from auth.tokens import TokenIssuer
from auth.totp import TwoFactorEngine
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pyroalert.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def init_auth_state(app: FastAPI, settings: Settings, user_store: UserStore, refresh_store: RefreshTokenStore) -> None:
    """Build the auth components around the given stores and attach them to app.state.

    Shared by the real lifespan and the test lifespan so both wire the
    issuer, 2FA engine, and grant handler identically.
    """
    issuer = TokenIssuer(settings.secret_key, ttl_seconds=settings.access_token_expire_seconds)
    two_factor = TwoFactorEngine(
        user_store,
        issuer_name=settings.totp_issuer,
        interval=settings.totp_interval,
        valid_window=settings.totp_valid_window,
        recovery_code_count=settings.recovery_code_count,
    )
    app.state.user_store = user_store
    app.state.refresh_store = refresh_store
    app.state.issuer = issuer
    app.state.two_factor = two_factor
    app.state.grant_handler = GrantHandler(
        user_store,
        issuer,
        refresh_store,
        two_factor,
        default_scope=settings.default_scopes,
        allowed_scopes=settings.allowed_scopes,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired refresh tokens every interval_seconds (default 6 hours).

    Runs as a background asyncio task started in lifespan startup.
    asyncio.sleep yields to the event loop between iterations; CancelledError
    from task.cancel() during shutdown propagates out of asyncio.sleep and
    unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        removed = app.state.refresh_store.purge_expired()
        if removed:
            logger.info("Purged %d expired refresh tokens", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. UserStore first -- RefreshTokenStore resolves users through it.
      2. RefreshTokenStore second.
      3. Issuer, 2FA engine, grant handler -- pure wiring around the stores.
      4. Purge task last -- references app.state.refresh_store.
    """
    logger.info("PyroAlert auth API starting up")
    user_store = UserStore(settings.database_url)
    refresh_store = RefreshTokenStore(
        settings.database_url,
        ttl_days=settings.refresh_token_expire_days,
        revoke_family_on_replay=settings.refresh_replay_revokes_family,
        user_store=user_store,
    )
    init_auth_state(app, settings, user_store, refresh_store)
    if not user_store.has_users():
        logger.warning("No users exist yet -- create one with: python main.py create-admin EMAIL PASSWORD")
    logger.info(
        "Auth initialized (access_ttl=%ds refresh_ttl=%dd replay_revokes_family=%s)",
        settings.access_token_expire_seconds,
        settings.refresh_token_expire_days,
        settings.refresh_replay_revokes_family,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.refresh_store.close()
    app.state.user_store.close()
    logger.info("PyroAlert auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="PyroAlert Auth API",
    description="OAuth2 token issuance, refresh token rotation, and TOTP two-factor authentication.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below with auth-protected routes.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPIMiddleware looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Only method, path, status, latency, and client host are logged;
# bodies carry passwords and tokens and are never logged.
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


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(oauth_router, tags=["OAuth"])
app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(two_factor_router, prefix="/api/v1", tags=["Two-Factor"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_principal)):
    """Swagger UI -- requires a bearer token."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="PyroAlert Auth API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_principal)):
    """ReDoc UI -- requires a bearer token."""
    return get_redoc_html(openapi_url="/openapi.json", title="PyroAlert Auth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {"error", "error_description"} envelope so API
# clients can parse errors uniformly without inspecting status codes.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a typed auth failure. Token errors also get WWW-Authenticate (RFC 6750)."""
    response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    if isinstance(exc, (InvalidToken, InsufficientScope)):
        response.headers["WWW-Authenticate"] = f'Bearer error="{exc.error}", error_description="{exc.description}"'
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error="rate_limited",
            error_description=f"Too many requests: {exc.detail}",
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 invalid_request when a body or parameter fails schema validation."""
    errors = exc.errors()
    description = "Request validation failed."
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        description = f"{loc}: {first.get('msg', 'invalid value')}" if loc else str(first.get("msg", description))
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(error="invalid_request", error_description=description).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"error": ..., "error_description": ...}.
    When detail is already that dict it is the body as-is; str(dict) would
    produce a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = ErrorResponse(error=f"http_{exc.status_code}", error_description=str(exc.detail)).model_dump()
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="server_error", error_description="An unexpected error occurred.").model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request):
    """Return API liveness, version, and database reachability."""
    try:
        request.app.state.user_store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        return JSONResponse(
            status_code=503,
            content=HealthResponse(status="degraded", version=API_VERSION, database="unavailable").model_dump(),
        )
    return HealthResponse(version=API_VERSION)
