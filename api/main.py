"""
api/main.py -- FastAPI application factory for CAS Gate.

create_app() builds the gated application: every request passes through the
CAS access gate (auth/gate.py) before it reaches a route. The browser-facing
CAS routes (login, logout, fail, authenticate) live in web/ and are mounted
by asgi.py, not here.

Run with:  uvicorn asgi:app --reload
           python main.py serve

Middleware stack (outermost to innermost):
  1. log_requests          -- access log line per request
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. SessionMiddleware     -- signed cookie session; the gate reads it
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  5. CASGateMiddleware     -- authentication (HTTP and WebSocket)

Profile checks run after routing: require_declared_profiles is an app-wide
dependency, and ProfileCheckFailed carries the response on_check_failed()
chose back out to its exception handler.

Lifespan closes the ticket validator's HTTP connection pool on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.checks import ProfileCheckFailed, require_declared_profiles
from auth.gate import AccessGate, CASGateMiddleware
from auth.security import Security
from core.config import Settings, get_settings
from core.validator import TicketValidator

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("casgate.api")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Log the effective CAS mode on startup; release the validator on shutdown."""
    gate: AccessGate = app.state.cas_gate
    logger.info(
        "CAS Gate starting up (mode=%s, cas_version=%s, validate_url=%s)",
        "two-step" if gate.settings.cas_dedicated_callback else "single-step",
        gate.settings.cas_version,
        gate.settings.cas_validate_url,
    )

    yield

    close = getattr(gate.validator, "close", None)
    if close is not None:
        close()
    logger.info("CAS Gate shutdown complete")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    validator: Optional[TicketValidator] = None,
    security: Optional[Security] = None,
) -> FastAPI:
    """Build the gated FastAPI application.

    Args:
        settings:  Explicit configuration. Defaults to get_settings() (env/.env).
        validator: Ticket validator. Defaults to one built from settings;
                   tests pass a stub with the same validate(ticket, service).
        security:  The application's Security subclass. Defaults to the
                   allow-everything Security from auth/security.py.
    """
    settings = settings or get_settings()
    validator = validator or TicketValidator.from_settings(settings)
    gate = AccessGate(settings, validator, security)

    app = FastAPI(
        title="CAS Gate",
        description="CAS client gate: session authentication and profile checks in front of an ASGI app.",
        version=VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        dependencies=[Depends(require_declared_profiles)],
    )
    app.state.settings = settings
    app.state.cas_gate = gate
    # SlowAPI looks for app.state.limiter by convention.
    app.state.limiter = limiter

    # -----------------------------------------------------------------------
    # Middleware stack
    #
    # add_middleware() inserts at the front of the stack, so the LAST call is
    # the OUTERMOST layer. The gate is registered first (innermost) because it
    # needs request.session, which SessionMiddleware provides from outside.
    # -----------------------------------------------------------------------

    app.add_middleware(CASGateMiddleware, gate=gate)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.secret_key,
        session_cookie="cas_session",
        max_age=settings.session_max_age,
        same_site="lax",
        https_only=settings.secure_cookies,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    # -----------------------------------------------------------------------
    # Request logging middleware
    #
    # Every request passes through this coroutine before any other layer, so
    # gate redirects (302 to CAS) show up in the access log too.
    # -----------------------------------------------------------------------

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

    # -----------------------------------------------------------------------
    # Router registration
    # -----------------------------------------------------------------------

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])

    _register_exception_handlers(app)

    # Health is exempt from the gate through settings.cas_exempt_paths so load
    # balancers are never redirected to CAS.
    @app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
    async def health() -> HealthResponse:
        """Return liveness and current version."""
        return HealthResponse(version=VERSION)

    return app


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProfileCheckFailed)
    async def profile_check_handler(request: Request, exc: ProfileCheckFailed) -> Response:
        """Answer with the response Security.on_check_failed() chose."""
        logger.debug(
            "Profile check ended %s %s with %d", request.method, request.url.path, exc.response.status_code
        )
        return exc.response

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
        """Return 422 with structured error when query params fail validation."""
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

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Return a structured error for all FastAPI/Starlette HTTP exceptions.

        When detail is already a structured dict, use it directly as the error
        field rather than stringifying it.
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

        Starlette installs an Exception handler on its outermost server error
        middleware, so this also sees errors raised by the gate (Security
        hooks, the validator). The exception is re-raised to the server after
        this response is sent; it is never swallowed. The raw exception goes
        to the log only, never to the response body.
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
