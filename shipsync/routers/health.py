"""Environment health check.

Four checks: carrier API reachable, carrier webhook secret set, Shopify
secret set, database reachable. All pass -> healthy, at least two ->
warning, otherwise unhealthy (503).
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from shipsync import __version__
from shipsync.routers.deps import get_services
from shipsync.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

CARRIER_CHECK_TIMEOUT = 5.0


def overall_status(checks: dict[str, bool]) -> str:
    passed = sum(1 for ok in checks.values() if ok)
    if passed == len(checks):
        return "healthy"
    if passed >= 2:
        return "warning"
    return "unhealthy"


async def _carrier_reachable(services: Services) -> bool:
    try:
        return await asyncio.wait_for(services.carrier.env_check(), timeout=CARRIER_CHECK_TIMEOUT)
    except Exception as exc:
        logger.warning("Carrier env check failed: %s", exc)
        return False


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    settings = services.settings
    checks = {
        "carrier_api": await _carrier_reachable(services),
        "carrier_webhook_secret": bool(settings.scan2ship_webhook_secret),
        "shopify_api_secret": bool(settings.shopify_api_secret),
        "database": await asyncio.to_thread(services.mappings.ping),
    }
    status = overall_status(checks)
    return JSONResponse(
        {"status": status, "version": __version__, "checks": checks},
        status_code=503 if status == "unhealthy" else 200,
    )
