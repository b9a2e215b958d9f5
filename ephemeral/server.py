"""Ephemeral Hub HTTP/WebSocket front door.

Run with `ephemeral-hub` or `uvicorn --factory ephemeral.server:create_app`.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as aioredis
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ephemeral.common.error_envelope import register_error_handlers
from ephemeral.common.health import router as health_router
from ephemeral.config import runtime_config
from ephemeral.config.runtime_config import HubSettings
from ephemeral.hubs.routes import router as hubs_router
from ephemeral.hubs.service import HubService
from ephemeral.hubs.sweeper import BlobSweeper
from ephemeral.hubs.ws_routes import router as ws_router
from ephemeral.metadata_store.repository import InMemoryMetadataStore, RedisMetadataStore
from ephemeral.object_store.repository import InMemoryObjectStore, S3ObjectStore
from ephemeral.realtime.broadcaster import HubBroadcaster
from ephemeral.realtime.redis_relay import RedisEventRelay

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000


def configure_logging() -> None:
    logging.basicConfig(
        level=runtime_config.get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_service(settings: Optional[HubSettings] = None) -> HubService:
    """Wire the stores and event fan-out selected by the environment."""
    settings = settings or runtime_config.load_settings()

    metadata_backend = runtime_config.get_metadata_backend()
    redis_client: Optional[aioredis.Redis] = None
    if metadata_backend == "redis":
        metadata = RedisMetadataStore(retry_attempts=settings.store_retry_attempts)
        redis_client = metadata.client
    elif metadata_backend == "memory":
        metadata = InMemoryMetadataStore()
    else:
        raise RuntimeError(f"Unknown HUB_METADATA_BACKEND {metadata_backend!r}")

    object_backend = runtime_config.get_object_backend()
    if object_backend == "s3":
        objects = S3ObjectStore(retry_attempts=settings.store_retry_attempts)
    elif object_backend == "memory":
        objects = InMemoryObjectStore()
    else:
        raise RuntimeError(f"Unknown HUB_OBJECT_BACKEND {object_backend!r}")

    broadcaster = HubBroadcaster(queue_size=settings.subscriber_queue_size)
    events_backend = runtime_config.get_events_backend()
    if events_backend == "redis":
        if redis_client is None:
            redis_client = aioredis.Redis.from_url(runtime_config.get_redis_url(), decode_responses=True)
        events = RedisEventRelay(redis_client, broadcaster)
    elif events_backend == "memory":
        events = broadcaster
    else:
        raise RuntimeError(f"Unknown HUB_EVENTS_BACKEND {events_backend!r}")

    return HubService(metadata, objects, events, settings=settings)


def create_app(service: Optional[HubService] = None) -> FastAPI:
    configure_logging()
    if service is None:
        logger.info("Starting hub service with %s", runtime_config.config_snapshot())
        service = build_service()
    sweeper = BlobSweeper(service, service.settings.blob_sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.events.start()
        try:
            await service.objects.ensure_bucket()
        except Exception as exc:
            logger.error("Could not ensure object bucket: %s", exc.__class__.__name__)
        await sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            await service.events.stop()
            await service.metadata.close()

    app = FastAPI(title="Ephemeral Hub", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.state.hub_service = service
    app.state.hub_events = service.events
    app.state.blob_sweeper = sweeper

    app.include_router(health_router)
    app.include_router(hubs_router)
    app.include_router(ws_router)
    return app


def main() -> None:
    uvicorn.run(create_app(), host="0.0.0.0", port=DEFAULT_PORT, log_config=None)


if __name__ == "__main__":
    main()
