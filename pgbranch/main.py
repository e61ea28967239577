"""
pgbranch API server - FastAPI application
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .config.settings import Settings, settings as default_settings
from .api import branches
from .services.database import DatabaseBranchManager
from .utils.logging_config import setup_logging


logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[DatabaseBranchManager] = None,
) -> FastAPI:
    """
    Create the API application

    Args:
        settings: Application settings, defaults to the environment
        manager: Branch manager to serve, built from settings when omitted

    Returns:
        FastAPI: The configured application
    """
    settings = settings or default_settings
    if manager is None:
        manager = DatabaseBranchManager.from_settings(settings)

    app = FastAPI(
        title="pgbranch API",
        description="PostgreSQL database branching API",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None
    )
    app.state.settings = settings
    app.state.branch_manager = manager

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routers
    app.include_router(branches.router, prefix="/api")

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all uncaught exceptions"""
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error" if settings.is_production else str(exc)
            }
        )

    @app.on_event("startup")
    async def startup_event():
        """Application startup tasks"""
        logger.info(f"Starting pgbranch API in {settings.ENVIRONMENT} mode")
        if settings.is_development:
            logger.info("Authentication: disabled (development mode)")
        else:
            logger.info("Authentication: enabled")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown tasks"""
        logger.info("Shutting down pgbranch API")
        await manager.close()

    return app


def run() -> None:
    """Run the API server with uvicorn"""
    setup_logging(default_settings.LOG_LEVEL)
    app = create_app(default_settings)
    uvicorn.run(
        app,
        host=default_settings.HOST,
        port=default_settings.PORT,
        log_config=None
    )


if __name__ == "__main__":
    run()
