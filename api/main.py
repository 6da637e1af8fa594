"""
api/main.py -- FastAPI application entry point for the sign-in service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  3. log_requests          -- method, path, status, latency, client host
  4. renew_auth_cookie     -- rotates the auth token on every request that
                              carries a valid auth cookie

Lifespan handles startup (user store, auth service, commit listener, expired
token purge task) and shutdown (cancel purge task, close DB) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import InvalidCredentials, StoreUnavailable
from auth.events import TokenEvent
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import response_sets_auth_cookie, set_auth_cookie
from core.config import get_settings

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("signin.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired auth tokens every TOKEN_PURGE_INTERVAL_SECONDS.

    Expired tokens already fail to resolve; this only keeps the table small.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    interval = get_settings().token_purge_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(app.state.auth_service.purge_expired_tokens)
        except StoreUnavailable:
            logger.warning("Expired token purge skipped: store unavailable")


def _log_sign_in_state(event: TokenEvent) -> None:
    """Commit listener: sign-in state changed for a user."""
    logger.info("Sign-in state changed (%s) for user_id=%s", event.kind.value, event.user_id)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task is started last because it references
    app.state.auth_service.
    """
    logger.info("Sign-in API starting up")
    settings = get_settings()
    app.state.user_store = UserStore(settings.database_url) if settings.database_url else UserStore()
    app.state.user_store.events.subscribe(_log_sign_in_state)
    app.state.auth_service = AuthService(app.state.user_store, settings)
    logger.info("Auth initialized (users=%d)", app.state.user_store.count_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("Sign-in API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Sign-in API",
    description="Password sign-in, auth-token renewal and first-run admin bootstrap.",
    version=_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls are applied outermost-first from the caller's
# perspective. @app.middleware("http") functions sit inside those, and the
# last one declared runs first.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def renew_auth_cookie(request: Request, call_next):
    """Rotate the auth token on every request that carries a valid auth cookie.

    The renewed token is stored on request.state so route handlers see it
    instead of the (now dead) incoming value. If the route itself sets or
    clears the auth cookie (sign-in, sign-out) its cookie wins.
    """
    settings = get_settings()
    cookie_value = request.cookies.get(settings.auth_cookie_name)
    if not cookie_value or not settings.renew_on_request:
        return await call_next(request)

    service: AuthService = request.app.state.auth_service
    try:
        token = await run_in_threadpool(service.resolve, cookie_value)
        renewed = await run_in_threadpool(service.renew, token) if token is not None else None
    except StoreUnavailable:
        logger.exception("Auth cookie renewal failed on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(
                error=ErrorDetail(code="store_unavailable", message="Service temporarily unavailable.")
            ).model_dump(),
        )

    request.state.auth_resolved = True
    request.state.auth_token = renewed

    response = await call_next(request)
    if renewed is not None and not response_sets_auth_cookie(response):
        set_auth_cookie(response, renewed)
    return response


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


app.add_middleware(SlowAPIMiddleware)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=get_settings().allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Sign-in"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(InvalidCredentials)
async def invalid_credentials_handler(request: Request, exc: InvalidCredentials) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content=ErrorResponse(error=ErrorDetail(code="bad_credentials", message=str(exc))).model_dump(),
    )


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """Backing-store failure: fatal to this request, not retried. The transaction was rolled back."""
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(code="store_unavailable", message="Service temporarily unavailable.")
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; use it directly as the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
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
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=_VERSION)
