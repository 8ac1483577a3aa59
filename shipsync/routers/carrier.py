"""Carrier-service callback — Shopify asks for shipping rates at checkout."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from shipsync.routers.deps import get_services
from shipsync.services import Services
from shipsync.webhooks.verification import verify_shopify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/carrier", tags=["carrier"])


@router.post("/rates")
async def carrier_rates(request: Request, services: Services = Depends(get_services)):
    """Return live rates, or one fallback rate. Never fails after verification."""
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    if not verify_shopify(body, headers, services.settings.shopify_api_secret):
        logger.warning("Rejected rate request with invalid signature")
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None

    quotes = await services.rates.get_rates(payload)
    return {"rates": [quote.to_dict() for quote in quotes]}


@router.get("/rates")
async def carrier_service_info(services: Services = Depends(get_services)):
    """Service discovery response for the registered carrier service."""
    return {
        "service": {
            "name": services.settings.carrier_service_name,
            "service_discovery": True,
        }
    }
