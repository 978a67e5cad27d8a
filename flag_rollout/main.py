"""
FastAPI application entry point for the flag rollout service.

The lifespan wires the whole service once:
- asyncpg pool plus PostgresStorage / PostgresDistribution adapters
- SlackNotifier when SLACK_WEBHOOK_URL is set, LoggingNotifier otherwise
- RolloutService with its flush and tick background jobs

Without DATABASE_URL the API still starts (health checks work) but the
rollout endpoints answer 503.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from flag_rollout.api import api_router
from flag_rollout.core.config import Settings, get_settings
from flag_rollout.core.database import close_db, init_db
from flag_rollout.jobs.notifications import LoggingNotifier, SlackNotifier
from flag_rollout.services.ports import NotificationPort
from flag_rollout.services.rollout_service import RolloutService, build_rollout_service
from flag_rollout.services.storage import PostgresDistribution, PostgresStorage


logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_notifier(settings: Settings) -> NotificationPort:
    if settings.slack_webhook_url:
        return SlackNotifier(settings.slack_webhook_url)
    logger.warning("SLACK_WEBHOOK_URL not configured, notifications go to the log only")
    return LoggingNotifier()


async def build_service_from_settings(settings: Settings) -> Optional[RolloutService]:
    """Initialize the database and wire the service. None when storage is not configured."""
    if not settings.database_url:
        logger.warning("DATABASE_URL not configured, rollout service disabled")
        return None

    await init_db()
    storage = PostgresStorage()
    await storage.ensure_schema()

    return build_rollout_service(
        settings,
        storage=storage,
        distribution=PostgresDistribution(),
        notifier=build_notifier(settings),
    )


def create_app(service: Optional[RolloutService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Pre-built service to serve instead of wiring one from settings.
            The app still starts and stops it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Flag Rollout API starting")
        rollout_service = service
        owns_database = False

        if rollout_service is None:
            try:
                rollout_service = await build_service_from_settings(get_settings())
                owns_database = rollout_service is not None
            except Exception as e:
                logger.error(f"Failed to initialize rollout service: {e}")
                rollout_service = None

        if rollout_service is not None:
            await rollout_service.start()
        app.state.rollout_service = rollout_service

        yield

        logger.info("Flag Rollout API shutting down")
        if rollout_service is not None:
            try:
                await rollout_service.stop()
            except Exception as e:
                logger.error(f"Error stopping rollout service: {e}")
        if owns_database:
            try:
                await close_db()
            except Exception as e:
                logger.error(f"Error closing database pool: {e}")

    app = FastAPI(
        title="Flag Rollout API",
        version="1.0.0",
        description=(
            "Records feature-flag experiment events, analyzes A/B tests and "
            "drives gradual rollouts with automatic rollback."
        ),
        lifespan=lifespan,
    )
    app.include_router(api_router)

    @app.get("/health")
    async def health_check():
        """Health check for monitoring and load balancer probes."""
        return {
            "status": "healthy",
            "rollout_service": getattr(app.state, 'rollout_service', None) is not None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "flag_rollout.main:app",
        host="0.0.0.0",
        port=8000,
    )
