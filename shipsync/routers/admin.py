"""Operator API — dead-letter inspection and replay, mappings, install.

Every route requires ``Authorization: Bearer <ADMIN_API_TOKEN>``.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from shipsync.errors import SyncError
from shipsync.routers.deps import get_services, require_admin
from shipsync.services import Services
from shipsync.store.mappings import MappingStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/admin/dead-letters")
async def list_dead_letters(
    shop_id: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    """List quarantined orders, newest first."""
    entries = await asyncio.to_thread(services.dead_letters.list_entries, shop_id=shop_id, limit=limit)
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}


@router.get("/admin/dead-letters/{entry_id}")
async def get_dead_letter(entry_id: int, services: Services = Depends(get_services)):
    entry = await asyncio.to_thread(services.dead_letters.get, entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Dead-letter entry not found")
    return entry.to_dict(include_payload=True)


@router.post("/admin/dead-letters/{entry_id}/replay")
async def replay_dead_letter(entry_id: int, services: Services = Depends(get_services)):
    """Re-run the order sync from a stored dead-letter payload."""
    try:
        outcome = await services.order_sync.replay_dead_letter(entry_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    logger.info("Admin replay of dead-letter %d -> %s", entry_id, outcome.value)
    return {"entry_id": entry_id, "outcome": outcome.value}


@router.get("/admin/mappings")
async def list_mappings(
    shop_id: str | None = None,
    status: MappingStatus | None = None,
    limit: int = Query(100, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    mappings = await asyncio.to_thread(
        services.mappings.list_mappings, shop_id=shop_id, status=status, limit=limit
    )
    return {"mappings": [m.to_dict() for m in mappings], "count": len(mappings)}


@router.post("/admin/mappings/{shop_id}/{platform_order_id}/resubmit")
async def resubmit_mapping(
    shop_id: str, platform_order_id: int, services: Services = Depends(get_services)
):
    """Resubmit a Failed order from its newest dead-letter payload, or release a stale Pending one."""
    try:
        outcome = await services.order_sync.resubmit(shop_id, platform_order_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    mapping = await asyncio.to_thread(services.mappings.get, shop_id, platform_order_id)
    return {
        "outcome": outcome.value,
        "mapping": mapping.to_dict() if mapping else None,
    }


@router.post("/admin/install")
async def install_carrier_service(
    shop: str = Query(..., min_length=1), services: Services = Depends(get_services)
):
    """Register the checkout rate callback with a shop."""
    settings = services.settings
    if not settings.shopify_app_url:
        raise HTTPException(status_code=409, detail="SHOPIFY_APP_URL is not configured")
    callback_url = f"{settings.shopify_app_url.rstrip('/')}/carrier/rates"
    client = services.sessions.client_for(shop)
    try:
        service = await client.register_carrier_service(settings.carrier_service_name, callback_url)
    except SyncError as exc:
        logger.error("Carrier service registration failed for %s: %s", shop, exc)
        return JSONResponse({"success": False, "code": exc.code}, status_code=502)
    if service is None:
        return JSONResponse({"success": False, "code": "user_errors"}, status_code=422)
    return {"success": True, "carrier_service": service, "callback_url": callback_url}


@router.get("/webhooks/status")
async def webhook_status(services: Services = Depends(get_services)):
    """Per-channel webhook counters since process start."""
    return {
        "counts": dict(services.webhook_counts),
        "deduplication": services.deduplicator is not None,
    }
