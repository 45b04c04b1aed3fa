from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from heist_api.core.settings import settings
from heist_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.heist import BackgroundDispatcher, HeistNotificationService, get_heist_config, validate_heist_config


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_heist_config()
    if config.notifications_enabled and settings.heist_notification_retention_days > 0:
        try:
            await HeistNotificationService(async_session).purge_read_older_than(
                settings.heist_notification_retention_days
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Heist notification purge failed", error=str(exc))

    try:
        yield
    finally:
        await app.state.heist_dispatcher.close()


def create_app() -> FastAPI:
    """Application factory for the heist API service."""
    configure_logging(
        service_name="heist-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    config = get_heist_config()
    errors = validate_heist_config(config)
    if errors:
        for error in errors:
            logger.error("Invalid heist configuration", error=error)
    else:
        logger.info(
            "Heist configuration loaded",
            enabled=config.enabled,
            steal_percentage=config.steal_percentage,
            max_points_per_heist=config.max_points_per_heist,
            items_enabled=config.items_enabled,
        )

    app = FastAPI(
        title="Heist API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    # Created eagerly so the executor dependency works without a running lifespan.
    app.state.heist_dispatcher = BackgroundDispatcher()

    if settings.tracing_enabled:
        configure_tracing(
            app,
            service_name="heist-api",
            service_version=APP_VERSION,
            environment=settings.environment,
            console_fallback=settings.tracing_console_export,
        )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
