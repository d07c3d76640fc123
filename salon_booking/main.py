from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from salon_booking.api.v1.api import api_router
from salon_booking.core.config import Settings, settings
from salon_booking.core.database import build_engine, build_session_factory, init_db
from salon_booking.core.logging import configure_logging
from salon_booking.core.redis import RedisClient, SlotCache
from salon_booking.services.notification_service import NotificationDispatcher

logger = structlog.get_logger(__name__)


def create_app(app_settings: Settings = settings) -> FastAPI:
    """Composition root: every shared client is built here, once."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(app_settings.LOG_LEVEL, app_settings.LOG_JSON)

        engine = build_engine(
            app_settings.DATABASE_URL, isolation_level=app_settings.DATABASE_ISOLATION_LEVEL
        )
        await init_db(engine)
        app.state.session_factory = build_session_factory(engine)
        app.state.engine_settings = app_settings.engine_settings()
        app.state.dispatcher = NotificationDispatcher()

        redis_client = None
        app.state.slot_cache = None
        if app_settings.SLOT_CACHE_ENABLED:
            redis_client = RedisClient(app_settings.REDIS_URL)
            app.state.slot_cache = SlotCache(
                redis_client, ttl_seconds=app_settings.SLOT_CACHE_TTL_SECONDS
            )

        logger.info(
            "Booking engine started",
            environment=app_settings.ENVIRONMENT,
            slot_cache=app_settings.SLOT_CACHE_ENABLED,
        )
        try:
            yield
        finally:
            if redis_client is not None:
                await redis_client.close()
            await engine.dispose()
            logger.info("Booking engine stopped")

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        version=app_settings.VERSION,
        debug=app_settings.DEBUG,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": app_settings.PROJECT_NAME}

    return app


app = create_app()
