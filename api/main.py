"""
api/main.py -- FastAPI application entry point for the Helfy auth API.

Run with:      python main.py serve
               uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests    -- one access-log line per request with latency
  2. CORSMiddleware  -- adds CORS headers for the configured browser origins

Lifespan handles startup (wait for the database, create tables, bootstrap the
admin account, start the token sweep) and shutdown (cancel the sweep, dispose
of the engine) symmetrically. The store handle is created here and hung on
app.state; nothing else opens database connections.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from api.models import ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from auth.activity import ActivityLog, configure_activity_logging
from auth.bootstrap import ensure_admin_user
from auth.exceptions import AuthError, Internal, InvalidInput
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import get_settings
from core.retry import wait_until_ready

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_settings = get_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("helfy.api")

_SWEEP_INTERVAL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Background token sweep
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired tokens every hour.

    Expired tokens are already rejected by authenticate(); this only keeps
    user_tokens from growing without bound. A failed sweep is logged and the
    next one tries again. CancelledError from shutdown unwinds the loop.
    """
    while True:
        await asyncio.sleep(_SWEEP_INTERVAL_SECONDS)
        try:
            await asyncio.to_thread(app.state.tokens.purge_expired)
        except SQLAlchemyError as exc:
            logger.warning("Token sweep failed: %s", exc)
        except Exception:
            logger.exception("Token sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Database reachability -- bounded retry. If it never answers,
         ResourceUnavailable propagates, uvicorn aborts startup and the
         process exits non-zero. No request is ever served against a dead store.
      2. Schema -- idempotent create_all.
      3. Admin bootstrap -- needs the schema and the token service (for hashing).
      4. Sweep task last.
    """
    settings = get_settings()
    logger.info("Helfy API starting up")
    configure_activity_logging()

    store = CredentialStore(settings.database_url)
    try:
        await asyncio.to_thread(
            wait_until_ready,
            store.ping,
            name="database",
            attempts=settings.db_connect_attempts,
            interval=settings.db_connect_interval,
        )
        store.create_schema()
    except Exception:
        store.close()
        raise

    app.state.settings = settings
    app.state.store = store
    app.state.tokens = TokenService(
        store,
        lifetime=timedelta(hours=settings.token_lifetime_hours),
        rounds=settings.bcrypt_rounds,
    )
    app.state.activity = ActivityLog()

    if settings.admin_bootstrap_enabled:
        ensure_admin_user(
            store,
            app.state.tokens,
            email=settings.admin_email,
            username=settings.admin_username,
            password=settings.admin_password,
        )

    app.state.purge_task = asyncio.create_task(_purge_loop(app))
    logger.info("API ready on port %d", settings.port)

    yield

    # Shutdown
    app.state.purge_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.purge_task
    app.state.store.close()
    logger.info("Helfy API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Helfy API",
    description="Email/username + password login with opaque bearer tokens.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Auth-Token"],
    max_age=3600,
)


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

app.include_router(auth_router, prefix="/api", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope ({"error", "code"}) so
# clients can parse errors uniformly.
# ---------------------------------------------------------------------------


def _error(exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message, code=exc.code).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return _error(exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed JSON or wrongly-typed fields are a 400 like any other bad input."""
    logger.debug("Request validation failed: %s", exc.errors())
    return _error(InvalidInput("Invalid request body"))


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Store failures: full detail to the log, a generic 500 to the client."""
    logger.exception("Store error on %s %s", request.method, request.url.path)
    return _error(Internal())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail), code=f"http_{exc.status_code}").model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(Internal())


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return liveness and the current server time."""
    return HealthResponse(timestamp=datetime.now(timezone.utc).isoformat())
