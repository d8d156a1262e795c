"""EAA Assistant API - Main FastAPI Application."""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pythonjsonlogger.json import JsonFormatter

from eaa_assistant.api.routes import ask, sessions, suggestions
from eaa_assistant.container import ServiceContainer, build_container
from eaa_assistant.core.config import Settings, get_settings
from eaa_assistant.core.exceptions import AssistantError, sanitize_error


def configure_logging(log_format: str = "text", log_level: str = "INFO") -> None:
    """Set up root logging.

    json: Structured JSON via python-json-logger (for production).
    text: Human-readable format (for local development).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate output
    root_logger.handlers.clear()

    handler = logging.StreamHandler()

    if log_format.lower() == "json":
        formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
                "name": "service",
            },
            static_fields={"app": "eaa-assistant"},
        )
        handler.setFormatter(formatter)
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    root_logger.addHandler(handler)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """Build the service container on startup and drain background work on shutdown."""
    container: ServiceContainer | None = getattr(app.state, "container", None)
    if container is None:
        container = build_container(get_settings())
        app.state.container = container

    logger.info("Starting EAA Assistant API...")
    if not container.notifier.configured:
        logger.warning("RESEND_API_KEY or ESCALATION_EMAIL not set - escalations are logged only")
    await container.start()
    yield
    logger.info("Shutting down EAA Assistant API...")
    await container.stop()


async def assistant_exception_handler(request: Request, exc: AssistantError) -> JSONResponse:
    """Handle assistant exceptions with a consistent, sanitized body."""
    request_id = str(uuid.uuid4())
    logger.warning(
        "Assistant exception occurred",
        extra={
            "code": exc.code,
            "status_code": exc.status_code,
            "request_id": request_id,
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": sanitize_error(exc),
            "code": exc.code,
            "request_id": request_id,
        },
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle FastAPI request validation errors.

    Body and query validation failures become 400 responses carrying the
    same ``code`` as :class:`ValidationError`.
    """
    request_id = str(uuid.uuid4())
    errors = json.loads(json.dumps(exc.errors(), default=str))
    logger.warning(
        "Request validation error",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "error_count": len(errors),
        },
    )
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Validation error",
            "code": "VALIDATION_ERROR",
            "request_id": request_id,
            "errors": errors,
        },
    )


def create_app(
    settings: Settings | None = None, container: ServiceContainer | None = None
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Settings used for CORS; defaults to the cached settings.
        container: Prebuilt services; built from settings at startup when omitted.
    """
    settings = settings or (container.settings if container else get_settings())

    app = FastAPI(
        title="EAA Assistant API",
        description="Conversational assistant for European Accessibility Act compliance",
        version="1.0.0",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    cors_origins = settings.cors_origins_list
    logger.info("CORS allowed origins: %s", cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ask.router, prefix="/api/v1")
    app.include_router(sessions.router, prefix="/api/v1")
    app.include_router(suggestions.router, prefix="/api/v1")

    app.add_exception_handler(AssistantError, assistant_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Lightweight check; returns 200 if the process is running."""
        return {"status": "healthy"}

    @app.get("/api/v1/health", tags=["system"])
    async def api_health_check() -> dict[str, Any]:
        """Health with the configured backends."""
        current = app.state.container.settings if hasattr(app.state, "container") else settings
        return {
            "status": "healthy",
            "storage": current.STORAGE_BACKEND,
            "email_configured": current.email_configured,
        }

    return app


_settings = get_settings()
configure_logging(_settings.LOG_FORMAT, _settings.LOG_LEVEL)
app = create_app(_settings)
