"""
api/main.py -- FastAPI application entry point for Dim.

Run with:      python main.py serve
               uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware   -- rejects requests with unexpected Host headers
  2. log_requests            -- method, path, status, latency, client
  3. forwarded_user_login    -- reverse-proxy login (only when enabled)
  4. CORSMiddleware          -- adds CORS headers for allowed browser origins
  5. SlowAPIMiddleware       -- enforces per-route rate limits from api.limiter

Lifespan builds the shared Database, both stores, the frozen AuthConfig and
the TokenIssuer on startup, and disposes of the engine on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from api.errors import error_response, service_error_response
from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.user import router as user_router
from auth.registration import forwarded_login
from auth.store import UserStore
from auth.tokens import SESSION_COOKIE, TokenIssuer, set_auth_cookie
from catalog.store import CatalogStore
from core.config import AuthConfig, get_settings
from core.database import Database
from core.errors import ServiceError

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("dim.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the Database first, since both stores attach to it
    and share its writer permit; then the config snapshot and the token
    issuer built from it.
    """
    logger.info("Dim API starting up")
    db = Database(settings.database_url, max_write_attempts=settings.write_retry_limit)
    app.state.db = db
    app.state.user_store = UserStore(db)
    app.state.catalog = CatalogStore(db)
    app.state.auth_config = settings.auth_config()
    app.state.tokens = TokenIssuer.from_config(app.state.auth_config)
    app.state.metadata_path = settings.metadata_path
    logger.info(
        "Auth initialized (admin_exists=%s, forwarded_user_auth=%s)",
        app.state.user_store.has_users(),
        app.state.auth_config.forwarded_auth_enabled,
    )

    yield

    db.close()
    logger.info("Dim API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Dim API",
    description="Accounts, invites and sessions for the Dim media server.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST one added is the
# outermost. Registered innermost-first: SlowAPI, CORS, then the
# @app.middleware("http") functions, then TrustedHost around all of them.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Forwarded-user login
#
# Behind a trusted reverse proxy that has already authenticated the user, a
# request carrying the configured header (X-Forwarded-User by default) and
# no session cookie is logged in as that user, created on first sight, and
# redirected to / with the session cookie set. Requests that already hold a
# cookie pass straight through, so the redirect happens once per session.
#
# Disabled by default: the header is then ignored entirely.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def forwarded_user_login(request: Request, call_next):
    config: AuthConfig | None = getattr(request.app.state, "auth_config", None)
    if config is None or not config.forwarded_auth_enabled:
        return await call_next(request)

    username = request.headers.get(config.forwarded_user_header, "").strip()
    if not username or request.cookies.get(SESSION_COOKIE):
        return await call_next(request)

    # Exceptions raised in middleware bypass the app's exception handlers,
    # so ServiceErrors are rendered here.
    try:
        user = await run_in_threadpool(forwarded_login, request.app.state.user_store, config, username)
    except ServiceError as exc:
        return service_error_response(exc)

    issuer: TokenIssuer = request.app.state.tokens
    token = issuer.issue(user.username, user.roles, user.claimed_invite)
    resp = RedirectResponse("/", status_code=302)
    set_auth_cookie(resp, token, config)
    return resp


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
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


# Added last so it wraps everything above, forwarded-user login included.
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(user_router, prefix="/api/v1", tags=["User"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render expected failures (bad credentials, missing invite, conflicts, ...)."""
    return service_error_response(exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    db: Database = request.app.state.db
    database_ok = db.ping()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "error"},
    )
