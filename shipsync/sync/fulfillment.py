"""Fulfillment write-back: Scan2Ship order-ready -> Shopify fulfillment.

Steps:
1. Validate orderRef / trackingNumber / carrier (InvalidPayload)
2. Parse the order number out of "SHOPIFY-<n>" (InvalidReference)
3. Resolve the Shopify order id via the mapping store
4. Fetch open fulfillment orders (NoOpenFulfillment when none)
5. Fulfill every remaining line item of the first open one
6. Mapping -> Fulfilled with fulfillment id and tracking info

Step 4 re-checks Shopify on every call, so a redelivered webhook for an
order that was already fulfilled ends in NoOpenFulfillment instead of a
duplicate fulfillment. The mutation itself is never retried here.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from shipsync import retry
from shipsync.clients.shopify import PlatformSessions
from shipsync.errors import InvalidPayload, NoOpenFulfillment
from shipsync.models import FulfillmentResult, OrderReadyPayload
from shipsync.store.mappings import MappingStore
from shipsync.sync.transform import parse_reference

logger = logging.getLogger(__name__)


class FulfillmentWriteBack:
    """Turns carrier order-ready notifications into Shopify fulfillments."""

    def __init__(
        self,
        sessions: PlatformSessions,
        mappings: MappingStore,
        *,
        reference_prefix: str = "SHOPIFY",
        max_retries: int = 3,
        base_delay: float = 1.0,
        jitter: float = 0.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._sessions = sessions
        self._mappings = mappings
        self._prefix = reference_prefix
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._jitter = jitter
        self._sleep = sleep

    async def resolve_order_id(self, shop_id: str, order_number: int) -> int:
        """Shopify order id for an order number.

        Orders synced by this service are found through the mapping store;
        anything else falls back to treating the number as the order id.
        """
        mapping = await asyncio.to_thread(self._mappings.find_by_order_number, shop_id, order_number)
        if mapping is not None:
            return mapping.platform_order_id
        return order_number

    async def on_order_ready(self, shop_id: str, payload: OrderReadyPayload | dict[str, Any]) -> FulfillmentResult:
        """Create the Shopify fulfillment for an order-ready notification.

        Raises:
            InvalidPayload, InvalidReference, NoOpenFulfillment,
            FulfillmentRejected, RetryExhausted, BackendRequestRejected
        """
        if not isinstance(payload, OrderReadyPayload):
            payload = OrderReadyPayload.model_validate(payload)
        missing = payload.missing_fields()
        if missing:
            raise InvalidPayload(f"Missing required fields: {', '.join(missing)}")

        order_number = parse_reference(payload.orderRef, self._prefix)
        platform_order_id = await self.resolve_order_id(shop_id, order_number)
        client = self._sessions.client_for(shop_id)

        fulfillment_orders = await retry.execute(
            lambda: client.fetch_fulfillment_orders(platform_order_id),
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            jitter=self._jitter,
            sleep=self._sleep,
            label=f"fetch_fulfillment_orders[{platform_order_id}]",
        )
        open_orders = [fo for fo in fulfillment_orders if fo.is_open]
        if not open_orders:
            logger.info(
                "No open fulfillment orders for %s/%s (ref=%s) — already fulfilled?",
                shop_id,
                platform_order_id,
                payload.orderRef,
            )
            raise NoOpenFulfillment(f"No open fulfillment orders found for order {platform_order_id}")

        tracking_url = payload.url or None
        result = await client.create_fulfillment(
            open_orders[0],
            tracking_company=payload.carrier,
            tracking_number=payload.trackingNumber,
            tracking_url=tracking_url,
            notify_customer=True,
        )
        await asyncio.to_thread(
            self._mappings.mark_fulfilled,
            shop_id,
            platform_order_id,
            result.fulfillment_id,
            tracking_number=payload.trackingNumber,
            tracking_company=payload.carrier,
            tracking_url=tracking_url,
            waybill=payload.waybill,
        )
        logger.info(
            "Fulfillment %s created for %s/%s (ref=%s, tracking=%s)",
            result.fulfillment_id,
            shop_id,
            platform_order_id,
            payload.orderRef,
            payload.trackingNumber,
        )
        return result
