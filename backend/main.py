"""
SilentDial - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload  (from the backend/ directory)
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from silentdial import __version__
from silentdial.config import Settings, get_settings
from silentdial.api import health, routes, websocket
from silentdial.core.call_service import create_call_service
from silentdial.core.exceptions import SilentDialError
from silentdial.core.logging import setup_structured_logging
from silentdial.core.shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Configure logging
        - Create the call service (provider, registry, admission, limiter)
        - Start the rate limiter sweep
        - Route unhandled loop faults to the shutdown sequence

    Shutdown:
        - Stop the sweep, end every conversation, wait for channels to close
        - Release provider HTTP resources
    """
    settings: Settings = app.state.settings

    # === Startup ===
    setup_structured_logging(settings.app_log_level, json_format=settings.log_json)
    logger.info("SilentDial starting in %s mode", settings.app_env)

    service = create_call_service(settings)
    coordinator = ShutdownCoordinator(
        service.rate_limiter,
        service.registry,
        grace_seconds=settings.shutdown_grace_seconds,
    )

    # Store in app state for dependency injection
    app.state.call_service = service
    app.state.shutdown = coordinator

    await service.startup()
    coordinator.install_exception_handler()

    logger.info(
        "Voice provider: %s (configured=%s)",
        service.provider.name,
        service.provider.is_configured,
    )
    logger.info(
        "   Admission: per_session=%d, per_minute=%d, per_hour=%d, cooldown_ms=%d",
        settings.max_calls_per_session,
        settings.max_calls_per_minute,
        settings.max_calls_per_hour,
        settings.call_cooldown_ms,
    )

    yield

    # === Shutdown ===
    logger.info("SilentDial shutting down")
    await coordinator.shutdown("SIGTERM")
    await service.aclose()
    logger.info("Shutdown complete")


# =============================================================================
# Exception Handlers
# =============================================================================

async def silentdial_error_handler(request: Request, exc: SilentDialError) -> JSONResponse:
    content = {"success": False, "error": exc.message, "code": exc.code}
    content.update(exc.details)

    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if "limit" in exc.details and "remaining" in exc.details:
        headers["X-RateLimit-Limit"] = str(exc.details["limit"])
        headers["X-RateLimit-Remaining"] = str(exc.details["remaining"])
        if "resetTime" in exc.details:
            headers["X-RateLimit-Reset"] = str(exc.details["resetTime"])

    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    else:
        logger.info("Request rejected (%s): %s", exc.code, exc.message)

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers or None)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid request data",
            "details": jsonable_encoder(exc.errors()),
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s: %s", request.url.path, str(exc), exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error occurred"},
    )


# =============================================================================
# Application Factory
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Application factory."""
    settings = settings or get_settings()

    app = FastAPI(
        title="SilentDial",
        description="Emergency call-session orchestration for people who cannot speak",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    app.add_exception_handler(SilentDialError, silentdial_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # --- Routes ---
    app.include_router(routes.router, prefix="/api")
    app.include_router(health.router)
    app.include_router(websocket.router)

    @app.get("/")
    async def root():
        """Root health check."""
        return {
            "service": "SilentDial",
            "status": "operational",
            "version": __version__,
        }

    return app


# Create app instance
app = create_app()


def run() -> None:
    """Console entrypoint: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.app_debug and not settings.is_production,
        log_level=settings.app_log_level.lower(),
    )


if __name__ == "__main__":
    run()
