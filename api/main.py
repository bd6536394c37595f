"""
api/main.py -- FastAPI application entry point for CareGate.

Exposes the authentication and authorization core over HTTP: registration,
login, token refresh, logout, and zone-scoped protected endpoints.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. assign_request_id     -- X-Request-ID in, X-Request-ID out, request.state.request_id
  2. log_requests          -- one access-log line per request
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the identity/session database and the revocation store, wires
the AuthService and AuthorizationEngine onto app.state, and starts the expiry
sweep; shutdown reverses it.

Every error leaves the API in one envelope:
  {"error": {"code", "message", "details", "timestamp", "request_id"}}
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.zones import router as zones_router
from auth.authorization import AuthorizationEngine
from auth.dependencies import get_auth_context
from auth.errors import AuthError, StoreUnavailable
from auth.models import AuthContext
from auth.revocation import RevocationLedger
from auth.service import AuthService
from auth.store import DEFAULT_DB_URL, IdentityStore, SessionStore, open_engine
from auth.tokens import TokenIssuer
from cache.store import open_revocation_store
from core.config import get_settings

VERSION = "0.1.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, _settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("caregate.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_expired(app: FastAPI) -> tuple[int, int]:
    """Drop expired session records and revocation entries. Returns (sessions, revocations)."""
    sessions = app.state.session_store.purge_expired()
    revocations = app.state.revocation_store.purge_expired()
    return sessions, revocations


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired sessions and revocation entries every PURGE_INTERVAL_SECONDS.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A store outage skips one
    sweep; the next one picks up the backlog.
    """
    while True:
        await asyncio.sleep(_settings.purge_interval_seconds)
        try:
            sessions, revocations = await asyncio.to_thread(purge_expired, app)
        except StoreUnavailable:
            logger.warning("Expiry sweep skipped: store unavailable")
            continue
        logger.info("Expiry sweep removed %d session(s), %d revocation(s)", sessions, revocations)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Database engine first -- both repositories share it.
      2. Revocation store second -- the ledger wraps it.
      3. AuthService / AuthorizationEngine -- need everything above.
      4. Purge task last -- references the stores on app.state.
    """
    logger.info("CareGate API starting up")
    timeout = _settings.store_timeout_seconds
    app.state.engine = open_engine(_settings.database_url or DEFAULT_DB_URL, timeout_seconds=timeout)
    app.state.identity_store = IdentityStore(app.state.engine)
    app.state.session_store = SessionStore(app.state.engine)
    app.state.revocation_store = open_revocation_store(_settings.revocation_store_url, timeout_seconds=timeout)
    app.state.auth = AuthService.build(
        identities=app.state.identity_store,
        sessions=app.state.session_store,
        issuer=TokenIssuer.from_settings(_settings),
        ledger=RevocationLedger(app.state.revocation_store),
        bcrypt_rounds=_settings.bcrypt_rounds,
    )
    app.state.authorizer = AuthorizationEngine()
    logger.info("Auth initialized (self_registration=%s)", _settings.self_registration_enabled)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.revocation_store.close()
    app.state.engine.dispose()
    logger.info("CareGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CareGate API",
    description="Authentication, token lifecycle and zone-scoped authorization for home-care teams.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by authenticated routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() inserts at the outermost position, so the last registered
# middleware sees the request first.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPIMiddleware looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging and correlation middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s rid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        getattr(request.state, "request_id", "unknown"),
    )
    return response


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    """Adopt a sane caller-supplied X-Request-ID or mint one, and echo it back."""
    supplied = request.headers.get("X-Request-ID", "")
    request_id = supplied if 0 < len(supplied) <= 128 and supplied.isprintable() else uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(zones_router, prefix="/api/v1", tags=["Zones"])


@app.get("/docs", include_in_schema=False)
async def docs(context: AuthContext = Depends(get_auth_context)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="CareGate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(context: AuthContext = Depends(get_auth_context)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="CareGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the standard error envelope for any failure."""
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or "unknown"
    body = ErrorResponse(
        error=ErrorDetail(
            code=code,
            message=message,
            details=details,
            timestamp=datetime.now(timezone.utc).isoformat(),
            request_id=request_id,
        )
    )
    response = JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)
    response.headers["Cache-Control"] = "no-store"
    if request_id != "unknown":
        response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render every typed auth failure, including authorization denials."""
    headers = None
    if isinstance(exc, StoreUnavailable):
        # Already logged with traceback at the store boundary.
        logger.error("Store unavailable on %s %s", request.method, request.url.path)
        headers = {"Retry-After": "1"}
    elif exc.status_code == 401:
        headers = {"WWW-Authenticate": "Bearer"}
    return error_response(request, exc.status_code, exc.code, exc.message, exc.details, headers)


def _retry_after_seconds(exc: RateLimitExceeded) -> int:
    # exc.limit is slowapi's wrapper; exc.limit.limit is the RateLimitItem.
    item = getattr(getattr(exc, "limit", None), "limit", None)
    return int(item.get_expiry()) if item is not None else 60


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded.

    Plain function rather than a coroutine: SlowAPIMiddleware calls the
    registered handler directly and returns its result as the response.
    Logged at WARNING so abuse shows up in monitoring; sessions are untouched.
    """
    retry_after = _retry_after_seconds(exc)
    logger.warning(
        "Rate limit exceeded: %s %s client=%s limit=%s",
        request.method,
        request.url.path,
        request.client.host if request.client else "unknown",
        exc.detail,
    )
    return error_response(
        request,
        429,
        "RATE_LIMIT_EXCEEDED",
        "Too many requests, please try again later.",
        {"limit": str(exc.detail), "retry_after": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


app.add_exception_handler(RateLimitExceeded, rate_limit_handler)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 when the request body or parameters do not match the schema."""
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return error_response(request, 400, "VALIDATION_ERROR", "Request validation failed.", {"errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured errors for routing-level failures (404, 405, ...)."""
    return error_response(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(request, 500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit -- load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, version, and whether each backing store answers."""
    components: dict[str, str] = {}
    for name, store in (
        ("database", request.app.state.session_store),
        ("revocation_store", request.app.state.revocation_store),
    ):
        try:
            store.ping()
            components[name] = "ok"
        except StoreUnavailable:
            components[name] = "unavailable"
    healthy = all(status == "ok" for status in components.values())
    body = HealthResponse(status="ok" if healthy else "degraded", version=VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
