"""
MistakeBook Backend — FastAPI Application Factory
==================================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() wires middleware, exception handlers and routers;
       lifespan() handles logging setup, configuration checks and shutdown.
Who:   uvicorn (uvicorn mistakebook.main:app) and the API tests.

Application Architecture:
    ┌─────────────────────────────────────────────────────┐
    │                   FastAPI App                       │
    │                                                     │
    │  Middleware:  Request ID → Access Log → GZip → CORS │
    │                                                     │
    │  Routes:                                            │
    │    POST /api/ai/recognize                           │
    │    POST /api/ai/recognize/batch                     │
    │    GET  /health                                     │
    │                                                     │
    │  Exception Handlers:                                │
    │    Validation→400  Unauthorized→401  Empty→422      │
    │    Provider→503    Database→500      other→500      │
    └─────────────────────────────────────────────────────┘
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from mistakebook import __version__
from mistakebook.config import settings
from mistakebook.database import dispose_engine
from mistakebook.exceptions import (
    CircuitBreakerOpenError,
    DatabaseError,
    EmptyResultError,
    MistakeBookError,
    ProviderError,
    UnauthorizedError,
    ValidationError,
)
from mistakebook.middleware.logging import RequestLoggingMiddleware
from mistakebook.middleware.request_id import RequestIDMiddleware, request_id_var
from mistakebook.routes import health, recognize
from mistakebook.services.orchestrator import orchestrator

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once, before anything else logs.

    Format: 2025-01-15T12:00:00 [INFO] mistakebook.services.orchestrator: ...
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party libraries that log every request at INFO/DEBUG
    for name in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("=" * 60)
    logger.info("MistakeBook recognition service %s starting up...", __version__)

    # Missing credentials only disable the affected provider; the others
    # and the health endpoint keep working
    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))

    providers = await orchestrator.health()
    logger.info(
        "Providers configured: %s (default: %s)",
        ", ".join(name for name, h in providers.items() if h.configured) or "none",
        settings.default_provider,
    )
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("MistakeBook recognition service shutting down...")
    await orchestrator.aclose()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error(status_code: int, error: str, message: str, details=None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "details": details,
            "request_id": request_id_var.get(""),
        },
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map application exceptions to HTTP responses.

    Handler hierarchy (most specific class wins):
        ValidationError         → 400
        UnauthorizedError       → 401
        EmptyResultError        → 422 (no question on the photo)
        CircuitBreakerOpenError → 503 with Retry-After
        ProviderError           → 503
        DatabaseError           → 500, generic message
        MistakeBookError        → 500
        Exception               → 500, request id only

    Provider details (kind, provider) are returned; SQL errors and stack
    traces are logged server-side only.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return _error(400, "validation_error", exc.message, {"reason": exc.reason, "field": exc.field})

    @app.exception_handler(UnauthorizedError)
    async def handle_unauthorized(request: Request, exc: UnauthorizedError):
        return _error(401, "unauthorized", exc.message, headers={"WWW-Authenticate": "Bearer"})

    @app.exception_handler(EmptyResultError)
    async def handle_empty_result(request: Request, exc: EmptyResultError):
        return _error(422, "no_content_recognized", exc.message, {"provider": exc.provider})

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_open(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return _error(
            503,
            "service_unavailable",
            exc.message,
            {"kind": exc.kind, "provider": exc.provider, "recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(ProviderError)
    async def handle_provider_error(request: Request, exc: ProviderError):
        logger.error(
            "[%s] Recognition failed (%s/%s): %s",
            request_id_var.get(""), exc.provider, exc.kind, exc.message,
        )
        return _error(503, "recognition_failed", exc.message, {"kind": exc.kind, "provider": exc.provider})

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error("[%s] Database error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context)
        return _error(500, "server_error", exc.message)

    @app.exception_handler(MistakeBookError)
    async def handle_application_error(request: Request, exc: MistakeBookError):
        logger.error("[%s] Application error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context)
        return _error(500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return _error(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="MistakeBook Recognition API",
        description=(
            "Recognizes exam questions in photos with Alibaba DashScope, Baidu OCR "
            "and Google Gemini, falling back between providers when one fails."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware runs in reverse order of registration: the request id
    # is set before the access log reads it
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(recognize.router)
    app.include_router(health.router)

    return app


app = create_app()
