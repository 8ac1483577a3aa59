"""Webhook HTTP handlers — FastAPI routes for both inbound channels.

Each handler:
1. Reads raw body (needed for HMAC verification)
2. Verifies the channel signature over those exact bytes
3. Parses JSON and checks required routing data
4. Hands off to its orchestrator

Security contract:
- Never return internal error details to webhook callers
- Return 401 only for signature failures, 400 only for malformed requests
- Everything past verification is acknowledged with 200, so the sender's
  own redelivery never amplifies a downstream outage
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import JSONResponse

from shipsync.errors import InvalidPayload, InvalidReference, NoOpenFulfillment, SyncError
from shipsync.routers.deps import get_services
from shipsync.services import Services
from shipsync.webhooks.verification import verify_scan2ship, verify_shopify

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

ORDERS_CREATE_TOPIC = "orders/create"


def _audit(services: Services, channel: str, shop: str, ref: str, status: str) -> None:
    """Audit log for webhook activity."""
    count = services.count_webhook(channel)
    logger.info(
        "WEBHOOK_AUDIT channel=%s shop=%s ref=%s status=%s count=%d",
        channel,
        shop or "-",
        ref or "-",
        status,
        count,
    )


def _parse_object(body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


@router.post("/webhooks/shopify/orders-create")
async def shopify_orders_create(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """Receive Shopify orders/create (signature-verified, synced in background)."""
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    shop = headers.get("x-shopify-shop-domain", "")

    if not verify_shopify(body, headers, services.settings.shopify_api_secret):
        _audit(services, "shopify", shop, "", "signature_failed")
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    payload = _parse_object(body)
    if payload is None or not shop:
        _audit(services, "shopify", shop, "", "malformed")
        return JSONResponse({"error": "Bad request"}, status_code=400)

    ref = str(payload.get("id", ""))
    topic = headers.get("x-shopify-topic", ORDERS_CREATE_TOPIC)
    if topic != ORDERS_CREATE_TOPIC:
        _audit(services, "shopify", shop, ref, f"ignored_topic:{topic}")
        return Response(status_code=200)

    dedup = services.deduplicator
    if dedup is not None and dedup.is_duplicate("shopify", headers.get("x-shopify-webhook-id")):
        _audit(services, "shopify", shop, ref, "duplicate")
        return Response(status_code=200)

    # Runs after the response is sent; the orchestrator never raises
    background_tasks.add_task(services.order_sync.on_order_created, shop, payload)
    _audit(services, "shopify", shop, ref, "accepted")
    return Response(status_code=200)


@router.post("/webhooks/scan2ship/order-ready")
async def scan2ship_order_ready(request: Request, services: Services = Depends(get_services)):
    """Receive Scan2Ship order-ready and write the fulfillment back to Shopify."""
    start = time.time()
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    shop = headers.get("x-shopify-shop-domain", "")

    if not shop:
        _audit(services, "scan2ship", "", "", "missing_shop")
        return JSONResponse({"error": "Missing shop domain"}, status_code=400)

    if not verify_scan2ship(body, headers, services.settings.scan2ship_webhook_secret):
        _audit(services, "scan2ship", shop, "", "signature_failed")
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    payload = _parse_object(body)
    if payload is None:
        _audit(services, "scan2ship", shop, "", "invalid_json")
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    ref = str(payload.get("orderRef") or "")
    try:
        result = await services.write_back.on_order_ready(shop, payload)
    except (InvalidPayload, InvalidReference) as exc:
        _audit(services, "scan2ship", shop, ref, exc.code)
        return JSONResponse({"error": str(exc)}, status_code=400)
    except NoOpenFulfillment:
        _audit(services, "scan2ship", shop, ref, "no_open_fulfillment")
        return JSONResponse(
            {"success": True, "message": f"No open fulfillment for order {ref}; nothing to do"}
        )
    except SyncError as exc:
        logger.error("Fulfillment write-back failed for %s/%s: %s", shop, ref, exc)
        _audit(services, "scan2ship", shop, ref, exc.code)
        return JSONResponse(
            {
                "success": False,
                "message": f"Fulfillment could not be created for order {ref}",
                "code": exc.code,
            }
        )
    except Exception:
        logger.exception("Unexpected error in order-ready write-back for %s/%s", shop, ref)
        _audit(services, "scan2ship", shop, ref, "error")
        return JSONResponse(
            {"success": False, "message": f"Fulfillment could not be created for order {ref}"}
        )

    _audit(services, "scan2ship", shop, ref, "fulfilled")
    logger.debug("Order-ready processed in %.1fms", (time.time() - start) * 1000)
    return JSONResponse(
        {
            "success": True,
            "message": f"Fulfillment created for order {ref}",
            "fulfillmentId": result.fulfillment_id,
        }
    )


@router.get("/webhooks/scan2ship/order-ready")
async def scan2ship_order_ready_probe():
    """Liveness probe for Scan2Ship's webhook configuration screen."""
    return {"message": "Scan2Ship webhook endpoint is active", "timestamp": time.time()}
