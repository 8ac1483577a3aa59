"""FastAPI application factory.

Mounts the routers on top of a Services container kept on ``app.state``:
- /webhooks/shopify/orders-create, /webhooks/scan2ship/order-ready
- /carrier/rates (checkout callback)
- /admin/* (dead letters, mappings, install), /webhooks/status
- /health

Run with: uvicorn shipsync.serve:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from shipsync import __version__
from shipsync.config import Settings, get_settings
from shipsync.routers import admin, carrier, health
from shipsync.services import Services, build_services
from shipsync.webhooks import handlers

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install one stream handler on the root logger (idempotent)."""
    root = logging.getLogger()
    if not any(getattr(h, "_shipsync", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._shipsync = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level.upper())


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    if settings is None:
        settings = services.settings if services else get_settings()
    configure_logging(settings.log_level)
    if services is None:
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for store in (services.mappings, services.dead_letters):
            init_tables = getattr(store, "init_tables", None)
            if init_tables is not None:
                init_tables()
        logger.info("shipsync %s started (stores=%s)", __version__, type(services.mappings).__name__)
        yield
        await services.rates.drain()
        aclose = getattr(services.carrier, "aclose", None)
        if aclose is not None:
            await aclose()

    app = FastAPI(title="Shipsync", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.include_router(handlers.router)
    app.include_router(carrier.router)
    app.include_router(admin.router)
    app.include_router(health.router)
    logger.info("Routes registered: /webhooks, /carrier/rates, /admin, /health")
    return app
