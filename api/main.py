"""
api/main.py -- FastAPI application entry point for the member portal auth service.

Run with:  uvicorn api.main:app --reload

Request path through the middleware (first to last):
  1. TrustedHostMiddleware -- drops requests whose Host header is not allowed
  2. CORSMiddleware        -- answers preflights, lets the SPA send the refresh cookie
  3. SlowAPIMiddleware     -- applies the per-route limits declared in api.limiter

Lifespan builds the auth services once (engine, stores, token codec, session
manager, access guard) and disposes of the engine on shutdown. The SECRET_KEY
goes from Settings straight into the TokenCodec constructor; no other module
holds it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.guard import AccessGuard
from auth.sessions import SessionManager
from auth.store import SessionStore, UserStore, build_engine
from auth.tokens import TokenCodec
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
logger = logging.getLogger("memberportal.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_auth_services(app: FastAPI, settings: Settings, engine: Engine) -> None:
    """Build the auth services for settings/engine and hang them on app.state.

    Shared by the real lifespan and the test fixtures so both wire the
    services identically.
    """
    codec = TokenCodec(settings.secret_key)
    users = UserStore(engine)
    sessions = SessionStore(engine)
    app.state.settings = settings
    app.state.session_store = sessions
    app.state.session_manager = SessionManager(
        users,
        sessions,
        codec,
        access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
        refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
        bcrypt_rounds=settings.bcrypt_rounds,
    )
    app.state.access_guard = AccessGuard(users, sessions, codec)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the auth database and services for the lifetime of the server.

    Settings are validated first so a missing SECRET_KEY stops the process
    before any table is created.
    """
    logger.info("Member portal auth API starting up")
    settings = get_settings()
    engine = build_engine(settings.database_url)
    attach_auth_services(app, settings, engine)
    logger.info(
        "Auth initialized (access_ttl=%ss, refresh_ttl=%ss)",
        settings.access_token_expire_seconds,
        settings.refresh_token_expire_seconds,
    )

    yield

    engine.dispose()
    logger.info("Member portal auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Member Portal Auth API",
    description="Registration, login, refresh-token rotation and logout for the member portal.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,  # the refresh cookie must reach /auth/refresh cross-origin
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)
app.state.limiter = limiter  # SlowAPIMiddleware reads it from here


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Access log: method, path, status, latency, client address."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.client.host if request.client else "unknown",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves as {"error": {"code", "message", "detail"}}.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    envelope = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    retry_after = int(getattr(exc, "retry_after", 60))
    return _error_response(
        429,
        "rate_limited",
        "Too many attempts. Try again later.",
        detail=str(exc.detail),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 for request bodies and query parameters that fail their schema."""
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes raise HTTPException with a ready-made error dict; pass it through as-is.

    Anything else (a plain string detail) is wrapped in the envelope.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 for anything unhandled, store outages included.

    The traceback stays in the server log; the client gets a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint -- public, not rate-limited
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    try:
        request.app.state.session_store.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components={"app": "ok", "database": database})
