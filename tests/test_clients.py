"""Tests for the Scan2Ship and Shopify HTTP clients (httpx.MockTransport)."""

from __future__ import annotations

import json

import httpx
import pytest

from shipsync.clients.carrier import Scan2ShipClient
from shipsync.clients.shopify import ShopifyAdminClient, StaticTokenSessions, order_gid
from shipsync.errors import (
    BackendRequestRejected,
    FulfillmentRejected,
    TransientBackendFailure,
)
from shipsync.models import (
    CarrierAddress,
    CarrierOrderRequest,
    FulfillmentOrder,
    FulfillmentOrderLineItem,
)

SHOP = "demo-store.myshopify.com"


def _scan2ship(handler) -> Scan2ShipClient:
    return Scan2ShipClient("https://scan2ship.test/", "s2s-key", transport=httpx.MockTransport(handler))


def _shopify(handler) -> ShopifyAdminClient:
    return ShopifyAdminClient(SHOP, "shpat_test", api_version="2025-07", transport=httpx.MockTransport(handler))


class TestScan2ShipClient:
    @pytest.mark.asyncio
    async def test_credit_balance_with_bearer_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["path"] = request.url.path
            return httpx.Response(200, json={"balance": 42})

        assert await _scan2ship(handler).get_credit_balance() == 42
        assert seen == {"auth": "Bearer s2s-key", "path": "/api/credits"}

    @pytest.mark.asyncio
    async def test_courier_services_keep_enabled_only(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "services": [
                        {"id": "1", "name": "Express", "code": "EXP", "enabled": True, "estimatedDeliveryDays": 2},
                        {"id": "2", "name": "Freight", "code": "FRT", "enabled": False},
                        {"id": "3", "name": "Nameless", "code": "", "enabled": True},
                    ]
                },
            )

        services = await _scan2ship(handler).list_courier_services()
        assert [s.code for s in services] == ["EXP"]
        assert services[0].estimated_delivery_days == 2

    @pytest.mark.asyncio
    async def test_create_order_posts_camel_case(self):
        captured = {}

        def handler(request):
            captured.update(json.loads(request.content))
            return httpx.Response(201, json={"orderId": "S2S-77", "waybill": "WB-77"})

        request = CarrierOrderRequest(
            reference="SHOPIFY-1001",
            recipient_name="Ada Lovelace",
            address=CarrierAddress(city="London", postal_code="N1 9GU"),
        )
        result = await _scan2ship(handler).create_order(request)
        assert result.order_id == "S2S-77"
        assert result.waybill == "WB-77"
        assert captured["reference"] == "SHOPIFY-1001"
        assert captured["recipientName"] == "Ada Lovelace"
        assert captured["address"]["postalCode"] == "N1 9GU"

    @pytest.mark.asyncio
    async def test_create_order_missing_id_rejected(self):
        client = _scan2ship(lambda request: httpx.Response(200, json={"status": "ok"}))
        request = CarrierOrderRequest(reference="SHOPIFY-1", recipient_name="A", address=CarrierAddress())
        with pytest.raises(BackendRequestRejected):
            await client.create_order(request)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    async def test_retryable_status(self, status):
        client = _scan2ship(lambda request: httpx.Response(status, headers={"Retry-After": "3"}))
        with pytest.raises(TransientBackendFailure) as info:
            await client.get_credit_balance()
        assert info.value.status_code == status
        assert info.value.retry_after == 3.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    async def test_terminal_status(self, status):
        client = _scan2ship(lambda request: httpx.Response(status, text="nope"))
        with pytest.raises(BackendRequestRejected) as info:
            await client.get_credit_balance()
        assert info.value.status_code == status

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientBackendFailure):
            await _scan2ship(handler).get_credit_balance()

    @pytest.mark.asyncio
    async def test_non_json_body_rejected(self):
        client = _scan2ship(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(BackendRequestRejected):
            await client.get_credit_balance()

    @pytest.mark.asyncio
    async def test_rates_and_analytics(self):
        calls = []

        def handler(request):
            calls.append((request.url.path, json.loads(request.content)))
            if request.url.path == "/api/rates":
                return httpx.Response(200, json={"rates": [{"serviceCode": "EXP"}]})
            return httpx.Response(204)

        client = _scan2ship(handler)
        assert await client.calculate_rates({"weight": 1}) == [{"serviceCode": "EXP"}]
        await client.track_event("rate_requested", {"currency": "USD"})
        assert calls[1] == ("/api/analytics/track", {"event": "rate_requested", "properties": {"currency": "USD"}})

    @pytest.mark.asyncio
    async def test_env_check(self):
        assert await _scan2ship(lambda r: httpx.Response(200, json={"ok": True})).env_check() is True
        assert await _scan2ship(lambda r: httpx.Response(503)).env_check() is False


def _fulfillment_order() -> FulfillmentOrder:
    return FulfillmentOrder(
        id="gid://shopify/FulfillmentOrder/9",
        order_id="gid://shopify/Order/5001",
        status="OPEN",
        line_items=[
            FulfillmentOrderLineItem(id="gid://shopify/FulfillmentOrderLineItem/1", quantity=2, remaining_quantity=1),
            FulfillmentOrderLineItem(id="gid://shopify/FulfillmentOrderLineItem/2", quantity=1, remaining_quantity=0),
        ],
    )


class TestShopifyAdminClient:
    @pytest.mark.asyncio
    async def test_fetch_fulfillment_orders(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["token"] = request.headers["x-shopify-access-token"]
            seen["variables"] = json.loads(request.content)["variables"]
            return httpx.Response(
                200,
                json={
                    "data": {
                        "order": {
                            "id": "gid://shopify/Order/5001",
                            "fulfillmentOrders": {
                                "edges": [
                                    {
                                        "node": {
                                            "id": "gid://shopify/FulfillmentOrder/9",
                                            "status": "OPEN",
                                            "lineItems": {
                                                "edges": [
                                                    {
                                                        "node": {
                                                            "id": "gid://shopify/FulfillmentOrderLineItem/1",
                                                            "sku": "G-1",
                                                            "totalQuantity": 2,
                                                            "remainingQuantity": 2,
                                                        }
                                                    }
                                                ]
                                            },
                                        }
                                    }
                                ]
                            },
                        }
                    }
                },
            )

        orders = await _shopify(handler).fetch_fulfillment_orders(5001)
        assert seen["url"] == f"https://{SHOP}/admin/api/2025-07/graphql.json"
        assert seen["token"] == "shpat_test"
        assert seen["variables"] == {"orderId": order_gid(5001)}
        assert len(orders) == 1
        assert orders[0].is_open
        assert orders[0].line_items[0].remaining_quantity == 2

    @pytest.mark.asyncio
    async def test_missing_order_returns_empty(self):
        client = _shopify(lambda request: httpx.Response(200, json={"data": {"order": None}}))
        assert await client.fetch_fulfillment_orders(1) == []

    @pytest.mark.asyncio
    async def test_create_fulfillment_sends_remaining_items(self):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content)["variables"]["fulfillment"])
            return httpx.Response(
                200,
                json={
                    "data": {
                        "fulfillmentCreate": {
                            "fulfillment": {
                                "id": "gid://shopify/Fulfillment/3",
                                "status": "SUCCESS",
                                "trackingInfo": [{"company": "DHL", "number": "TRK", "url": None}],
                            },
                            "userErrors": [],
                        }
                    }
                },
            )

        result = await _shopify(handler).create_fulfillment(
            _fulfillment_order(), tracking_company="DHL", tracking_number="TRK"
        )
        assert result.fulfillment_id == "gid://shopify/Fulfillment/3"
        assert result.platform_order_id == 5001
        assert sent["notifyCustomer"] is True
        assert sent["trackingInfo"] == {"company": "DHL", "number": "TRK"}
        assert sent["lineItemsByFulfillmentOrder"] == [
            {
                "fulfillmentOrderId": "gid://shopify/FulfillmentOrder/9",
                "fulfillmentOrderLineItems": [{"id": "gid://shopify/FulfillmentOrderLineItem/1", "quantity": 1}],
            }
        ]

    @pytest.mark.asyncio
    async def test_create_fulfillment_user_errors(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "data": {
                        "fulfillmentCreate": {
                            "fulfillment": None,
                            "userErrors": [{"field": ["trackingInfo"], "message": "Tracking number invalid"}],
                        }
                    }
                },
            )

        with pytest.raises(FulfillmentRejected) as info:
            await _shopify(handler).create_fulfillment(
                _fulfillment_order(), tracking_company="DHL", tracking_number="?"
            )
        assert str(info.value) == "Fulfillment creation failed: Tracking number invalid"

    @pytest.mark.asyncio
    async def test_throttled_is_transient(self):
        client = _shopify(
            lambda request: httpx.Response(
                200, json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}
            )
        )
        with pytest.raises(TransientBackendFailure):
            await client.fetch_fulfillment_orders(1)

    @pytest.mark.asyncio
    async def test_graphql_errors_rejected(self):
        client = _shopify(lambda request: httpx.Response(200, json={"errors": [{"message": "Field 'x' missing"}]}))
        with pytest.raises(BackendRequestRejected):
            await client.fetch_fulfillment_orders(1)

    @pytest.mark.asyncio
    async def test_http_errors(self):
        with pytest.raises(TransientBackendFailure):
            await _shopify(lambda request: httpx.Response(502)).fetch_fulfillment_orders(1)
        with pytest.raises(BackendRequestRejected):
            await _shopify(lambda request: httpx.Response(401)).fetch_fulfillment_orders(1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [b"<html>maintenance</html>", b"[1, 2]"])
    async def test_unexpected_body_rejected(self, content):
        client = _shopify(lambda request: httpx.Response(200, content=content))
        with pytest.raises(BackendRequestRejected):
            await client.fetch_fulfillment_orders(1)

    @pytest.mark.asyncio
    async def test_register_carrier_service(self):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content)["variables"]["input"])
            return httpx.Response(
                200,
                json={
                    "data": {
                        "carrierServiceCreate": {
                            "carrierService": {"id": "gid://shopify/DeliveryCarrierService/1", "name": "Scan2Ship"},
                            "userErrors": [],
                        }
                    }
                },
            )

        service = await _shopify(handler).register_carrier_service("Scan2Ship", "https://app.test/carrier/rates")
        assert service["id"] == "gid://shopify/DeliveryCarrierService/1"
        assert sent["callbackUrl"] == "https://app.test/carrier/rates"
        assert sent["supportsServiceDiscovery"] is True

    @pytest.mark.asyncio
    async def test_register_carrier_service_user_errors(self):
        client = _shopify(
            lambda request: httpx.Response(
                200,
                json={"data": {"carrierServiceCreate": {"carrierService": None, "userErrors": [{"message": "taken"}]}}},
            )
        )
        assert await client.register_carrier_service("Scan2Ship", "https://app.test/carrier/rates") is None

    def test_static_token_sessions(self):
        client = StaticTokenSessions("shpat_x", api_version="2025-07").client_for(SHOP)
        assert isinstance(client, ShopifyAdminClient)
        assert client.shop_domain == SHOP
