"""Shopify GraphQL Admin API client.

REST API is deprecated — using GraphQL exclusively. Covers the three
operations the core needs: fulfillment-order lookup, fulfillment creation
and carrier-service registration at install time.

Token acquisition and refresh belong to the app's session layer; this
module only consumes an already-authenticated access token per shop.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from shipsync.errors import (
    RETRYABLE_STATUS_CODES,
    BackendRequestRejected,
    FulfillmentRejected,
    TransientBackendFailure,
)
from shipsync.models import (
    FulfillmentOrder,
    FulfillmentOrderLineItem,
    FulfillmentResult,
)

logger = logging.getLogger(__name__)


FULFILLMENT_ORDERS_QUERY = """
query getFulfillmentOrders($orderId: ID!) {
  order(id: $orderId) {
    id
    fulfillmentOrders(first: 10) {
      edges {
        node {
          id
          status
          lineItems(first: 50) {
            edges {
              node {
                id
                sku
                totalQuantity
                remainingQuantity
              }
            }
          }
        }
      }
    }
  }
}
"""

FULFILLMENT_CREATE_MUTATION = """
mutation fulfillmentCreate($fulfillment: FulfillmentInput!) {
  fulfillmentCreate(fulfillment: $fulfillment) {
    fulfillment {
      id
      status
      trackingInfo {
        company
        number
        url
      }
    }
    userErrors {
      field
      message
    }
  }
}
"""

CARRIER_SERVICE_CREATE_MUTATION = """
mutation carrierServiceCreate($input: DeliveryCarrierServiceCreateInput!) {
  carrierServiceCreate(input: $input) {
    carrierService {
      id
      name
      callbackUrl
      active
      supportsServiceDiscovery
    }
    userErrors {
      field
      message
    }
  }
}
"""


def order_gid(order_id: int | str) -> str:
    return f"gid://shopify/Order/{order_id}"


@runtime_checkable
class PlatformClient(Protocol):
    """Authenticated per-shop Shopify handle."""

    async def fetch_fulfillment_orders(self, order_id: int) -> list[FulfillmentOrder]:
        ...

    async def create_fulfillment(
        self,
        fulfillment_order: FulfillmentOrder,
        *,
        tracking_company: str,
        tracking_number: str,
        tracking_url: str | None = None,
        notify_customer: bool = True,
    ) -> FulfillmentResult:
        ...

    async def register_carrier_service(self, name: str, callback_url: str) -> dict[str, Any] | None:
        ...


@runtime_checkable
class PlatformSessions(Protocol):
    """Hands out an authenticated client for a shop."""

    def client_for(self, shop_id: str) -> PlatformClient:
        ...


class ShopifyAdminClient:
    """GraphQL Admin API client for one shop."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: str = "2025-07",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.shop_domain = shop_domain
        self._endpoint = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"
        self._access_token = access_token
        self._timeout = timeout
        self._transport = transport

    async def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute a GraphQL Admin API request and return its ``data``."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._endpoint,
                    json={"query": query, "variables": variables or {}},
                    headers={
                        "X-Shopify-Access-Token": self._access_token,
                        "Content-Type": "application/json",
                    },
                )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientBackendFailure(
                f"Shopify GraphQL request to {self.shop_domain} failed: {type(exc).__name__}"
            ) from exc

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientBackendFailure(
                f"Shopify GraphQL returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise BackendRequestRejected(
                f"Shopify GraphQL returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise BackendRequestRejected("Shopify GraphQL returned non-JSON body") from exc
        if not isinstance(body, dict):
            raise BackendRequestRejected("Shopify GraphQL returned an unexpected body")
        errors = body.get("errors")
        if errors:
            if any((e.get("extensions") or {}).get("code") == "THROTTLED" for e in errors):
                raise TransientBackendFailure("Shopify GraphQL throttled")
            messages = "; ".join(str(e.get("message", "")) for e in errors)
            raise BackendRequestRejected(f"Shopify GraphQL errors: {messages}")
        return body.get("data") or {}

    async def fetch_fulfillment_orders(self, order_id: int) -> list[FulfillmentOrder]:
        data = await self.graphql(FULFILLMENT_ORDERS_QUERY, {"orderId": order_gid(order_id)})
        order = data.get("order")
        if not order:
            return []
        return [
            FulfillmentOrder(
                id=edge["node"]["id"],
                order_id=order["id"],
                status=edge["node"]["status"],
                line_items=[
                    FulfillmentOrderLineItem(
                        id=item["node"]["id"],
                        sku=item["node"].get("sku"),
                        quantity=item["node"].get("totalQuantity", 0),
                        remaining_quantity=item["node"].get("remainingQuantity", 0),
                    )
                    for item in edge["node"]["lineItems"]["edges"]
                ],
            )
            for edge in order["fulfillmentOrders"]["edges"]
        ]

    async def create_fulfillment(
        self,
        fulfillment_order: FulfillmentOrder,
        *,
        tracking_company: str,
        tracking_number: str,
        tracking_url: str | None = None,
        notify_customer: bool = True,
    ) -> FulfillmentResult:
        """Fulfill every remaining line item of one fulfillment order."""
        tracking: dict[str, Any] = {"company": tracking_company, "number": tracking_number}
        if tracking_url:
            tracking["url"] = tracking_url
        variables = {
            "fulfillment": {
                "notifyCustomer": notify_customer,
                "trackingInfo": tracking,
                "lineItemsByFulfillmentOrder": [
                    {
                        "fulfillmentOrderId": fulfillment_order.id,
                        "fulfillmentOrderLineItems": [
                            {"id": li.id, "quantity": li.remaining_quantity}
                            for li in fulfillment_order.line_items
                            if li.remaining_quantity > 0
                        ],
                    }
                ],
            }
        }
        data = await self.graphql(FULFILLMENT_CREATE_MUTATION, variables)
        payload = data.get("fulfillmentCreate") or {}
        user_errors = payload.get("userErrors") or []
        if user_errors:
            raise FulfillmentRejected(user_errors)
        fulfillment = payload.get("fulfillment")
        if not fulfillment:
            raise FulfillmentRejected([{"message": "No fulfillment returned from GraphQL mutation"}])
        return FulfillmentResult(
            fulfillment_id=fulfillment["id"],
            platform_order_id=int(fulfillment_order.order_id.rsplit("/", 1)[-1]),
            status=fulfillment.get("status"),
            tracking_info=list(fulfillment.get("trackingInfo") or []),
        )

    async def register_carrier_service(self, name: str, callback_url: str) -> dict[str, Any] | None:
        """Register the rate callback. Returns the carrier service or None on userErrors."""
        data = await self.graphql(
            CARRIER_SERVICE_CREATE_MUTATION,
            {
                "input": {
                    "name": name,
                    "callbackUrl": callback_url,
                    "supportsServiceDiscovery": True,
                    "active": True,
                }
            },
        )
        payload = data.get("carrierServiceCreate") or {}
        if payload.get("userErrors"):
            logger.error("Carrier service creation errors: %s", payload["userErrors"])
            return None
        service = payload.get("carrierService")
        logger.info("Carrier service registered: %s", service)
        return service


class StaticTokenSessions:
    """Single access token for every shop (custom-app installs).

    OAuth-installed apps plug in their own PlatformSessions that reads the
    per-shop offline token from the session store.
    """

    def __init__(self, access_token: str, *, api_version: str = "2025-07"):
        self._access_token = access_token
        self._api_version = api_version

    def client_for(self, shop_id: str) -> PlatformClient:
        return ShopifyAdminClient(shop_id, self._access_token, api_version=self._api_version)
