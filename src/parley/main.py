# src/parley/main.py
"""Main entry point for the Parley messaging service."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from parley.api.v1 import messages_router, realtime_router
from parley.core.settings import settings
from parley.realtime.hub import TransportHub
from parley.services.delivery_queue import DeliveryQueue
from parley.services.message_store import store_scope
from parley.services.push import PushRelay

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Parley API",
    description="End-to-end encrypted direct messaging",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(messages_router, prefix="/api/v1")
app.include_router(realtime_router, prefix="/api/v1")


def _configure_logging() -> None:
    level = logging.DEBUG if settings.debug else settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("parley").setLevel(level)


@app.on_event("startup")
async def on_startup() -> None:
    _configure_logging()
    # Tests may install their own store factory before startup.
    store_factory = getattr(app.state, "store_factory", None) or store_scope
    hub = TransportHub(
        store_factory=store_factory,
        offline_grace_seconds=settings.presence_offline_grace_seconds,
    )
    delivery_queue = DeliveryQueue(
        hub,
        store_factory,
        retry_interval=settings.delivery_retry_interval_seconds,
        max_retries=settings.delivery_max_retries,
        pending_limit=settings.delivery_pending_limit,
    )
    app.state.hub = hub
    app.state.delivery_queue = delivery_queue
    app.state.push_relay = PushRelay()
    await delivery_queue.start()
    logger.info("%s %s started", settings.app_name, settings.app_version)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    delivery_queue: DeliveryQueue | None = getattr(app.state, "delivery_queue", None)
    if delivery_queue:
        await delivery_queue.stop()
    hub: TransportHub | None = getattr(app.state, "hub", None)
    if hub:
        await hub.shutdown()
    push_relay: PushRelay | None = getattr(app.state, "push_relay", None)
    if push_relay:
        await push_relay.close()


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint reporting delivery and presence counters."""
    hub: TransportHub | None = getattr(app.state, "hub", None)
    delivery_queue: DeliveryQueue | None = getattr(app.state, "delivery_queue", None)
    return {
        "status": "ok",
        "deliveryQueue": delivery_queue.get_status() if delivery_queue else None,
        "presence": {
            "onlineUsers": len(hub.online_users()) if hub else 0,
            "connections": hub.connection_count if hub else 0,
        },
    }


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "End-to-end encrypted direct messaging",
        "docs": "/docs",
        "redoc": "/redoc",
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("parley.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
