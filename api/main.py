"""
api/main.py -- FastAPI application shell for the Konabra authentication core.

Run with:  uvicorn api.main:app --reload

Feature routers (identity, incidents, categories, roles) mount onto this app
and guard their routes with auth.dependencies.require_roles(). This module
owns only what every router shares:

  - lifespan: builds the AppContext (api/context.py) on startup and closes
    it on shutdown, symmetrically.
  - error mapping: every core exception family becomes one ErrorResponse.
    Verification failures of any kind collapse into a single 401 body.
  - request logging and CORS.
  - GET /api/v1/health.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.context import build_context
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from core.config import get_settings
from core.errors import PersistenceError, ValidationError, VerificationError

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("konabra.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth core on startup; close it on shutdown."""
    logger.info("Konabra API starting up")
    app.state.context = build_context(get_settings())

    yield

    app.state.context.close()
    logger.info("Konabra API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Konabra API",
    description="Community incident reporting -- authentication and secure verification core.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


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


@app.exception_handler(VerificationError)
async def verification_error_handler(request: Request, exc: VerificationError) -> JSONResponse:
    """Return one 401 body for every verification failure.

    The precise reason (signature, expiry, mismatch...) was already logged
    where it was detected; repeating it here would hand clients an oracle.
    """
    return _error(401, "unauthorized", "The token or code is invalid.")


@app.exception_handler(ValidationError)
async def core_validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(400, "validation_error", "One or more validation errors occurred.", str(exc))


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Persistence failure on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "unavailable", "The service is temporarily unavailable.")


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict (auth/dependencies.py raises
    those), use it directly as the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    response = _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and session-store reachability."""
    components = {"app": "ok", "database": "ok"}
    try:
        request.app.state.context.session_store.ping()
    except Exception:
        logger.exception("Health check: session store unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=__version__, components=components)
