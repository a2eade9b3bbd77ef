"""FastAPI application entry point for the Talent Escrow service.

Lifecycle:
    1. Startup: logging, database (create_all in development), Redis for
       rate limiting (optional), payment provider client, and the
       APScheduler job that expires overdue offers.
    2. Running: REST API at /api/v1/* and the provider webhook endpoint.
    3. Shutdown: stop the scheduler, then close the provider, Redis and
       database connections.

Run with:
    uv run uvicorn talent_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from talent_escrow.config import get_settings
from talent_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info("app.starting", env=settings.app_env, debug=settings.app_debug)

    # 2. Initialize database
    from talent_escrow.infrastructure.database.engine import close_db, get_session_factory, init_db

    await init_db()

    # 3. Initialize Redis (rate limiting only; the app runs without it)
    from talent_escrow.infrastructure.redis_client import close_redis, init_redis

    await init_redis()

    # 4. Payment provider + notifications
    from talent_escrow.infrastructure.payment_provider import build_payment_provider
    from talent_escrow.services import ExpirationSweeper, LoggingNotificationService

    provider = build_payment_provider(settings)
    notifier = LoggingNotificationService()
    app.state.payment_provider = provider
    app.state.notifier = notifier

    # 5. Expiration sweep
    scheduler = AsyncIOScheduler(timezone="UTC")
    sweeper = ExpirationSweeper(get_session_factory(), notifier=notifier, settings=settings)
    sweeper.start(scheduler)
    scheduler.start()

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    scheduler.shutdown(wait=False)
    aclose = getattr(provider, "aclose", None)
    if aclose is not None:
        await aclose()
    await close_redis()
    await close_db()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Talent Escrow",
        description=(
            "Offer negotiation and escrow payments between companies and talent."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from talent_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from talent_escrow.api.routes.engagements import router as engagements_router
    from talent_escrow.api.routes.health import router as health_router
    from talent_escrow.api.routes.offers import router as offers_router
    from talent_escrow.api.routes.payments import router as payments_router
    from talent_escrow.api.routes.webhooks import router as webhooks_router

    app.include_router(health_router)
    app.include_router(offers_router)
    app.include_router(engagements_router)
    app.include_router(payments_router)
    app.include_router(webhooks_router)

    return app


# The app instance used by Uvicorn
app = create_app()
