"""
api/main.py -- FastAPI application entry point for the Notez credential core.

Exposes session, password reset and API token operations over HTTP. All
business rules live in auth/; this module wires services together and turns
their typed failures into HTTP responses.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the AuthStore and builds the services on startup, and closes
the store on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.tokens import router as tokens_router
from auth.api_tokens import ApiTokenManager
from auth.dependencies import get_session_principal
from auth.errors import AuthError
from auth.models import Principal
from auth.notify import MessageDispatcher, build_dispatcher
from auth.passwords import PasswordHasher
from auth.reset import PasswordResetFlow
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("notez.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_services(
    app: FastAPI,
    settings: Settings,
    store: AuthStore,
    dispatcher: MessageDispatcher | None = None,
) -> None:
    """Build every credential service over one store and hang it on app.state.

    Route handlers and dependencies read app.state.sessions, .resets and
    .api_tokens; nothing else in api/ constructs a service. Tests call this
    with an isolated store and a recording dispatcher.
    """
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    if dispatcher is None:
        dispatcher = build_dispatcher(settings)
    app.state.settings = settings
    app.state.store = store
    app.state.sessions = SessionManager(
        store,
        TokenCodec.from_settings(settings),
        hasher,
        token_hash_key=settings.secret_key,
        session_ttl=timedelta(seconds=settings.session_expire_seconds),
        dispatcher=dispatcher,
    )
    app.state.resets = PasswordResetFlow(
        store,
        hasher,
        dispatcher,
        token_hash_key=settings.secret_key,
        token_ttl=timedelta(seconds=settings.reset_token_expire_seconds),
    )
    app.state.api_tokens = ApiTokenManager(
        store,
        token_hash_key=settings.secret_key,
        max_active=settings.api_token_max_active,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and build services on startup; close the store on shutdown."""
    logger.info("Notez auth API starting up")
    settings = get_settings()
    store = AuthStore(settings.database_url)
    attach_services(app, settings, store)
    logger.info("Auth initialized (setup_needed=%s)", app.state.sessions.setup_needed())

    yield

    store.close()
    logger.info("Notez auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Notez Auth API",
    description="Sessions, password reset and API tokens for Notez.",
    version=VERSION,
    lifespan=lifespan,
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

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


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(tokens_router, prefix="/api/v1", tags=["API Tokens"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_session_principal)):
    """Swagger UI -- requires a session access token."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Notez Auth API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_session_principal)):
    """ReDoc UI -- requires a session access token."""
    return get_redoc_html(openapi_url="/openapi.json", title="Notez Auth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map every typed credential failure to its status and public message.

    exc.detail names the internal cause. It is logged here and nowhere else;
    the body carries only exc.public_message.
    """
    logger.warning(
        "%s %s rejected: %s (%s)",
        request.method,
        request.url.path,
        exc.code,
        exc.detail,
    )
    response = _error(exc.status_code, exc.code, exc.public_message)
    response.headers["Cache-Control"] = "no-store"
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Error entries are reduced to location and message: pydantic includes the
    rejected input, which for these routes can be a password.
    """
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return _error(422, "validation_error", "Request validation failed.", str(errors))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405)."""
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    db_ok = request.app.state.store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "unreachable"},
    )
