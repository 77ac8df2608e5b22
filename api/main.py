"""
api/main.py -- FastAPI application entry point for the SynKrypt auth service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the credential store and wires the auth services onto
app.state at startup, and closes the store at shutdown.

Every error leaves the service in the same envelope:
    {"success": false, "error_type": ..., "message": ..., "errors": [...]}
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.cli import router as cli_router
from api.routes.v1.keys import router as keys_router
from api.routes.v1.web import router as web_router
from auth.accounts import AccountService
from auth.keys import KeySetupService
from auth.nonces import NonceEngine
from auth.sessions import SessionIssuer
from auth.store import CredentialStore
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("synkrypt.api")

_settings = get_settings()


def wire_services(app: FastAPI, store: CredentialStore) -> None:
    """Attach the store and the services built on it to app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    object graph.
    """
    app.state.store = store
    app.state.nonces = NonceEngine(store, ttl_seconds=_settings.nonce_ttl_seconds)
    app.state.sessions = SessionIssuer(store, lifetime_seconds=_settings.session_expire_seconds)
    app.state.accounts = AccountService(store, app.state.nonces, app.state.sessions)
    app.state.key_setup = KeySetupService(store, lifetime_seconds=_settings.key_setup_expire_seconds)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the credential store on startup and close it on shutdown."""
    logger.info("SynKrypt auth API starting up")
    store = CredentialStore(_settings.database_url) if _settings.database_url else CredentialStore()
    wire_services(app, store)
    logger.info("Credential store initialized")

    yield

    app.state.store.close()
    logger.info("SynKrypt auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SynKrypt Auth API",
    description="Password and public-key challenge-response authentication with revocable sessions.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
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
    allow_headers=["Content-Type", "Authorization"],
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

app.include_router(web_router, prefix="/api/v1", tags=["Web"])
app.include_router(cli_router, prefix="/api/v1", tags=["CLI"])
app.include_router(keys_router, prefix="/api/v1", tags=["Keys"])


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _envelope(status_code: int, error_type: str, message: str, errors: list | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error_type=error_type, message=message, errors=errors or []).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a Retry-After header when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(429, "rate_limited", "Too many requests.", [{"limit": str(exc.detail)}])
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one entry per invalid field.

    Only loc/msg/type are copied; pydantic's ctx may hold exception objects
    that are not JSON serializable.
    """
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return _envelope(400, "validation_error", "Request validation failed.", errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTPException as the error envelope.

    Auth code raises HTTPException with detail={error_type, message, errors}.
    Anything else (a bare string detail, including routing 404/405 raised by
    Starlette itself) gets a generic http_<status> type.
    """
    if isinstance(exc.detail, dict) and "error_type" in exc.detail:
        response = _envelope(
            exc.status_code,
            exc.detail["error_type"],
            exc.detail.get("message", ""),
            exc.detail.get("errors"),
        )
    else:
        response = _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged, never returned. The client receives only a
    generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, "unknown_error", "internal server error")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    ping = request.app.state.store.ping()
    return HealthResponse(
        version=VERSION,
        components={"app": "ok", "database": "ok" if ping.ok else "error"},
    )
