"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
services, the payment provider, Redis-backed rate limiting and configuration.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable

import redis.asyncio as aioredis  # noqa: TC002 - FastAPI resolves annotations at runtime
from fastapi import Depends, Request
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from talent_escrow.config import Settings, get_settings
from talent_escrow.domain.exceptions import RateLimitExceededError, RetryableProviderError
from talent_escrow.domain.notifier_protocol import NotificationService
from talent_escrow.domain.provider_protocol import PaymentProviderClient
from talent_escrow.infrastructure.database.engine import get_async_session
from talent_escrow.infrastructure.redis_client import get_redis, hit_rate_limit, seconds_until_reset
from talent_escrow.logging_config import get_logger
from talent_escrow.services import (
    EngagementService,
    EscrowService,
    LoggingNotificationService,
    OfferService,
    WebhookService,
)

logger = get_logger(__name__)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_redis_client() -> aioredis.Redis | None:
    """Provide the Redis client, or None when Redis is not connected."""
    return get_redis()


def get_payment_provider(request: Request) -> PaymentProviderClient:
    """The provider client built during startup."""
    provider = getattr(request.app.state, "payment_provider", None)
    if provider is None:
        raise RetryableProviderError("Payment provider is not configured")
    return provider


def get_notifier(request: Request) -> NotificationService:
    notifier = getattr(request.app.state, "notifier", None)
    return notifier if notifier is not None else LoggingNotificationService()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_offer_service(
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProviderClient = Depends(get_payment_provider),
    notifier: NotificationService = Depends(get_notifier),
    settings: Settings = Depends(get_app_settings),
) -> OfferService:
    return OfferService(session, provider=provider, notifier=notifier, settings=settings)


def get_escrow_service(
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProviderClient = Depends(get_payment_provider),
    notifier: NotificationService = Depends(get_notifier),
    settings: Settings = Depends(get_app_settings),
) -> EscrowService:
    return EscrowService(session, provider, notifier=notifier, settings=settings)


def get_engagement_service(
    session: AsyncSession = Depends(get_db_session),
    notifier: NotificationService = Depends(get_notifier),
    settings: Settings = Depends(get_app_settings),
) -> EngagementService:
    return EngagementService(session, notifier=notifier, settings=settings)


def get_webhook_service(
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProviderClient = Depends(get_payment_provider),
    notifier: NotificationService = Depends(get_notifier),
    settings: Settings = Depends(get_app_settings),
) -> WebhookService:
    return WebhookService(session, provider, notifier=notifier, settings=settings)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


def rate_limit(group: str) -> Callable[..., Awaitable[None]]:
    """Build a dependency that counts the caller against a shared Redis window.

    Keys on client IP + group. Without Redis the request is let through.
    """

    async def _check(
        request: Request,
        client: aioredis.Redis | None = Depends(get_redis_client),
        settings: Settings = Depends(get_app_settings),
    ) -> None:
        if not settings.rate_limit_enabled or client is None:
            return
        ip = request.client.host if request.client else "unknown"
        window = settings.rate_limit_window_seconds
        try:
            count = await hit_rate_limit(client, f"ratelimit:{group}:{ip}", window)
        except (RedisError, OSError) as exc:
            logger.warning("rate_limit.redis_unavailable", group=group, error=str(exc))
            return
        if count > settings.rate_limit_requests:
            logger.warning("rate_limit.exceeded", group=group, client_ip=ip, count=count)
            raise RateLimitExceededError(group, retry_after=seconds_until_reset(window))

    return _check
