"""
api/main.py -- FastAPI application entry point for authgraph.

Exposes the identity graph core over HTTP: record creation and lookup,
linking, and credential verification for the login front end.

Run with:      uvicorn api.main:app --reload
Initialize:    python main.py init-db

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (API key check, graph store, identity stores,
verifier) and shutdown (close the graph store) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.dependencies import require_api_key
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.login import router as login_router
from api.routes.v1.records import router as records_router
from core.config import get_settings
from core.errors import (
    AlreadyExists,
    AssociationIncomplete,
    CorruptData,
    EmptyResult,
    IdentityError,
    NotFound,
    TransportError,
    TypeMismatch,
    ValidationFailed,
)
from graph.store import GraphStore
from identity.store import IdentityStores
from identity.verifier import CredentialVerifier

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgraph.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. API key check first -- refuse to serve an unprotected management API.
      2. Graph store second -- opens the pool and creates missing tables.
      3. Stores and verifier last -- they share the one graph store.
    """
    if not get_settings().api_key:
        raise RuntimeError("API_KEY must be set (at least 32 characters) when DEBUG is false.")
    logger.info("authgraph API starting up")
    graph = GraphStore()
    app.state.stores = IdentityStores(graph)
    app.state.verifier = CredentialVerifier(app.state.stores)
    logger.info("Graph store initialized")

    yield

    app.state.stores.close()
    logger.info("authgraph API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authgraph API",
    description="Identity graph store and credential verification.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by key-protected routes.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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

app.include_router(records_router, prefix="/api/v1", tags=["Records"])
app.include_router(login_router, prefix="/api/v1", tags=["Login"])


@app.get("/docs", include_in_schema=False, dependencies=[Depends(require_api_key)])
async def docs():
    """Swagger UI -- requires X-API-Key."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="authgraph API")


@app.get("/redoc", include_in_schema=False, dependencies=[Depends(require_api_key)])
async def redoc():
    """ReDoc UI -- requires X-API-Key."""
    return get_redoc_html(openapi_url="/openapi.json", title="authgraph API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Most specific first: lookup walks this in order with isinstance().
_ERROR_STATUS: tuple[tuple[type[IdentityError], int], ...] = (
    (AssociationIncomplete, 502),
    (ValidationFailed, 422),
    (TypeMismatch, 422),
    (NotFound, 404),
    (AlreadyExists, 409),
    (TransportError, 503),
    (CorruptData, 500),
    (EmptyResult, 500),
)


def status_for(exc: IdentityError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    """Render a domain error in the standard envelope.

    Server-side faults (5xx other than 502) carry the code only: their
    details name internal uids and driver classes. 502 keeps its details
    because the caller needs the linked / failed lists to reconcile.
    """
    status = status_for(exc)
    if status >= 500 and status != 502:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        error = ErrorDetail(code=exc.code, message="The identity store could not complete the request.")
    else:
        error = ErrorDetail(code=exc.code, message=exc.message, context=exc.details or None)
    return JSONResponse(status_code=status, content=ErrorResponse(error=error).model_dump())


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Plain def: SlowAPIMiddleware calls this directly, without awaiting, when
    the limited route is a sync handler.
    """
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


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with detail=ErrorDetail(...).model_dump().
    A dict detail is used directly as the error field.
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

    The raw exception is logged, never returned to the client.
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
# No API key and no rate limit: load balancers must be able to poll it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and graph store reachability."""
    graph_ok = request.app.state.stores.graph.ping()
    return HealthResponse(
        status="healthy" if graph_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "graph": "ok" if graph_ok else "error"},
    )
