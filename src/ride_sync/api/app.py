"""FastAPI application factory for the ride sync websocket bridge."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from ride_sync.api.websocket import router as websocket_router
from ride_sync.redis_provider import RedisChannelProvider
from ride_sync.settings import Settings, get_settings

if TYPE_CHECKING:
    from ride_sync.provider import ChannelProvider

logger = logging.getLogger(__name__)


def create_redis_client(settings: Settings) -> Redis:
    """Create async Redis client for the change channels."""
    return Redis(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        password=settings.redis.password or None,
        ssl=settings.redis.ssl,
        decode_responses=True,
    )


def create_app(
    provider: ChannelProvider | None = None,
    redis_client: Redis | None = None,
) -> FastAPI:
    """Create FastAPI application with injected dependencies.

    Args:
        provider: Channel provider shared by every websocket session. Built
            from ``redis_client`` (or the settings) at startup when omitted.
        redis_client: Async Redis client backing the default provider.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Manage application startup and shutdown."""
        owned_client: Redis | None = None
        owned_provider: RedisChannelProvider | None = None
        if app.state.channel_provider is None:
            client = redis_client
            if client is None:
                client = owned_client = create_redis_client(settings)
            owned_provider = RedisChannelProvider.from_settings(client, settings)
            app.state.channel_provider = owned_provider
            logger.info(
                f"Redis channel provider ready on {settings.redis.host}:{settings.redis.port}"
            )
        yield
        if owned_provider is not None:
            await owned_provider.close()
            app.state.channel_provider = None
        if owned_client is not None:
            await owned_client.aclose()

    app = FastAPI(
        title="Ride Sync Bridge",
        version="0.1.0",
        description="Streams live ride status, messages and connection state to consumer UIs",
        lifespan=lifespan,
    )

    # Set immediately (not in lifespan) so injected providers are available for testing
    app.state.channel_provider = provider

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(websocket_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint for monitoring (unauthenticated for infrastructure)."""
        return {"status": "healthy"}

    return app
