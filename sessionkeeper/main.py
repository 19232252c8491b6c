"""SessionKeeper - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sessionkeeper.api.auth import auth_error_handler
from sessionkeeper.api.auth import router as auth_router
from sessionkeeper.core.config import Settings, get_settings
from sessionkeeper.core.logging import get_logger, setup_logging
from sessionkeeper.services.auth import AuthenticationFacade, build_auth_facade
from sessionkeeper.services.credential_cleanup import CredentialCleanupService
from sessionkeeper.services.errors import AuthError

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    config: Settings = app.state.settings
    setup_logging(
        level=config.log_level, format_type=config.log_format, service=config.app_name.lower()
    )
    logger.info(f"Starting {config.app_name} v{config.app_version} ({config.storage_backend} storage)")

    facade: AuthenticationFacade = app.state.auth_facade
    cleanup = CredentialCleanupService.get_instance(
        facade.credentials,
        facade.registry,
        interval_seconds=config.credential_cleanup_interval_seconds,
    )
    await cleanup.start()

    yield

    logger.info("Shutting down...")
    await cleanup.stop()
    CredentialCleanupService.reset_instance()


def create_app(
    config: Settings | None = None,
    facade: AuthenticationFacade | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or get_settings()
    app = FastAPI(
        title=config.app_name,
        description="Session and credential lifecycle service",
        version=config.app_version,
        lifespan=lifespan,
        docs_url="/docs" if config.debug else None,
        redoc_url="/redoc" if config.debug else None,
        openapi_url="/openapi.json" if config.debug else None,
    )

    app.state.settings = config
    app.state.auth_facade = facade or build_auth_facade(config)

    app.add_exception_handler(AuthError, auth_error_handler)
    app.include_router(auth_router)  # Auth at root level (/auth)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": config.app_name,
            "version": config.app_version,
        }

    return app
