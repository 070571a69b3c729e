"""
api/main.py -- FastAPI application entry point for AuthCore.

Exposes the auth core over HTTP: registration, login, token refresh,
password and email flows, 2FA, OAuth and session management.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- slowapi request hook; per-route limits are
                              checked by the @limiter.limit wrappers
  4. SessionMiddleware     -- signed cookie holding step-up 2FA and OAuth state

Lifespan builds the object graph once (store -> hasher -> token, two-factor
and OAuth services -> AuthService) and hangs it on app.state. Routes and
dependencies only ever read from app.state, so tests swap the whole graph by
patching the lifespan.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import requests
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.notifications import LoggingNotifier, Notifier
from auth.oauth import OAuthService
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import TokenService
from auth.two_factor import TwoFactorService
from core.config import Settings, get_settings
from core.errors import (
    AuthError,
    AuthenticationError,
    BadRequestError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(
    app: FastAPI,
    settings: Settings,
    store: CredentialStore,
    http: requests.Session,
    notifier: Notifier | None = None,
) -> None:
    """Construct the service graph on app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    way. The HTTP session is created by the caller and closed by the caller.
    """
    hasher = PasswordHasher(rounds=settings.password_hash_rounds)
    tokens = TokenService(store, hasher, settings)
    two_factor = TwoFactorService(store, hasher, settings)
    oauth = OAuthService(store, hasher, settings, http=http)
    app.state.settings = settings
    app.state.store = store
    app.state.tokens = tokens
    app.state.two_factor = two_factor
    app.state.oauth = oauth
    app.state.auth_service = AuthService(
        store, hasher, tokens, two_factor, oauth, notifier or LoggingNotifier(), settings
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Pattern: asynccontextmanager lifespan. Everything before yield runs on
    startup; everything after yield runs on shutdown.

    Startup order matters:
      1. Settings first -- a missing signing secret stops startup here.
      2. Store second -- creates the schema if needed.
      3. Services last -- they hold references to the store and settings.
    """
    logger.info("AuthCore API starting up")
    settings = get_settings()
    store = CredentialStore(settings.database_url)
    http = requests.Session()
    build_services(app, settings, store, http)
    logger.info("Auth initialized (oauth providers: %s)", ", ".join(settings.enabled_oauth_providers) or "none")

    yield

    http.close()
    store.close()
    logger.info("AuthCore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="AuthCore API",
    description="Authentication, sessions, tokens, two-factor and OAuth account linking.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the LAST call becomes the
# outermost layer. Registered innermost-first: Session -> SlowAPI -> CORS ->
# TrustedHost, giving request order TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

# Signed with its own SESSION_SECRET; the cookie only carries the 2FA
# step-up timestamp and OAuth state, never credentials.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.session_secret,
    session_cookie="authcore_session",
    same_site="lax",
    https_only=not _settings.debug,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts_list,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Captures wall-clock time around call_next so every response gets one log
# line with its latency. Paths are logged, query strings are not (they can
# carry OAuth codes).
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: list[tuple[type[AuthError], int]] = [
    (ConflictError, 409),
    (AuthenticationError, 401),
    (NotFoundError, 404),
    (BadRequestError, 400),
    (ValidationError, 422),
    (ConfigurationError, 500),
]


def status_for(exc: AuthError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map core error kinds to HTTP status codes.

    The message is already generic where it has to be (login, token checks);
    the core collapses causes before raising, so it is safe to return as-is.
    Configuration errors are the exception: their text names settings, so
    clients get a generic message and the detail goes to the log.
    """
    status = status_for(exc)
    if status >= 500:
        logger.error("Configuration error on %s %s: %s", request.method, request.url.path, exc.message)
        error = ErrorDetail(code="internal_error", message="An unexpected error occurred.")
    else:
        error = ErrorDetail(code=exc.code, message=exc.message)
    response = JSONResponse(status_code=status, content=ErrorResponse(error=error).model_dump())
    if status == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    Synchronous because SlowAPIMiddleware calls it without awaiting;
    Starlette runs it in the threadpool when a route wrapper raises.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Only field locations and messages are echoed back; rejected input values
    (passwords included) are not.
    """
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=problems,
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies and routes raise HTTPException with a dict detail. When detail
    is already a structured dict, use it directly as the error field rather
    than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    try:
        request.app.state.store.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "unavailable"
    return HealthResponse(status="ok" if database == "ok" else "degraded", version=API_VERSION, database=database)
