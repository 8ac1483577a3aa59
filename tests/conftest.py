"""Shared fixtures for the shipsync test suite.

Provides in-process doubles for the two remote systems:
- FakeCarrier: Scan2Ship backend (credits, services, orders, rates, analytics)
- FakeSessions / FakePlatformClient: Shopify Admin API per shop
plus settings, stores and an app/TestClient wired with all of them.
"""

from __future__ import annotations

import copy
from typing import Any

import pytest
from fastapi.testclient import TestClient

from shipsync.config import Settings
from shipsync.errors import FulfillmentRejected
from shipsync.models import (
    CarrierOrderRequest,
    CarrierOrderResult,
    CourierService,
    FulfillmentOrder,
    FulfillmentOrderLineItem,
    FulfillmentResult,
)
from shipsync.serve import create_app
from shipsync.services import build_services
from shipsync.store import InMemoryDeadLetterStore, InMemoryMappingStore

SHOP = "demo-store.myshopify.com"


class Scripted:
    """Successive results for one fake call; the last one repeats."""

    def __init__(self, *results: Any) -> None:
        self._results = list(results)

    def next(self) -> Any:
        return self._results.pop(0) if len(self._results) > 1 else self._results[0]


def _next(value: Any) -> Any:
    if isinstance(value, Scripted):
        value = value.next()
    if isinstance(value, BaseException):
        raise value
    return value


class FakeCarrier:
    """Scripted Scan2Ship backend."""

    def __init__(self) -> None:
        self.balance: Any = 10
        self.create_results: Any = CarrierOrderResult(order_id="S2S-1", waybill="WB-1")
        self.services: Any = [CourierService(id="1", name="Express", code="EXP")]
        self.rates: Any = [
            {
                "serviceName": "Express",
                "serviceCode": "EXP",
                "totalPrice": 1299,
                "currency": "USD",
                "minDeliveryDays": 1,
                "maxDeliveryDays": 2,
            }
        ]
        self.track_error: BaseException | None = None
        self.env_ok = True
        self.created: list[CarrierOrderRequest] = []
        self.balance_calls = 0
        self.rate_payloads: list[dict[str, Any]] = []
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def get_credit_balance(self) -> int:
        self.balance_calls += 1
        return _next(self.balance)

    async def list_courier_services(self) -> list[CourierService]:
        return _next(self.services)

    async def create_order(self, request: CarrierOrderRequest) -> CarrierOrderResult:
        self.created.append(request)
        return _next(self.create_results)

    async def calculate_rates(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        self.rate_payloads.append(payload)
        return _next(self.rates)

    async def track_event(self, event: str, properties: dict[str, Any]) -> None:
        self.events.append((event, properties))
        if self.track_error is not None:
            raise self.track_error

    async def env_check(self) -> bool:
        return self.env_ok


def open_fulfillment_order(order_id: int, remaining: int = 1) -> FulfillmentOrder:
    return FulfillmentOrder(
        id=f"gid://shopify/FulfillmentOrder/{order_id}0",
        order_id=f"gid://shopify/Order/{order_id}",
        status="OPEN",
        line_items=[
            FulfillmentOrderLineItem(
                id=f"gid://shopify/FulfillmentOrderLineItem/{order_id}1",
                quantity=remaining,
                remaining_quantity=remaining,
                sku="SKU-1",
            )
        ],
    )


class FakePlatformClient:
    """Shopify for one shop: fulfilling an order consumes its remaining quantity."""

    def __init__(self) -> None:
        self.fulfillment_orders: dict[int, list[FulfillmentOrder]] = {}
        self.fetch_errors: list[BaseException] = []
        self.user_errors: list[dict[str, Any]] = []
        self.fulfillments: list[dict[str, Any]] = []
        self.carrier_services: list[tuple[str, str]] = []

    async def fetch_fulfillment_orders(self, order_id: int) -> list[FulfillmentOrder]:
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return copy.deepcopy(self.fulfillment_orders.get(order_id, []))

    async def create_fulfillment(
        self,
        fulfillment_order: FulfillmentOrder,
        *,
        tracking_company: str,
        tracking_number: str,
        tracking_url: str | None = None,
        notify_customer: bool = True,
    ) -> FulfillmentResult:
        if self.user_errors:
            raise FulfillmentRejected(self.user_errors)
        order_id = int(fulfillment_order.order_id.rsplit("/", 1)[-1])
        for fo in self.fulfillment_orders.get(order_id, []):
            if fo.id == fulfillment_order.id:
                for li in fo.line_items:
                    li.remaining_quantity = 0
                fo.status = "CLOSED"
        self.fulfillments.append(
            {
                "fulfillment_order_id": fulfillment_order.id,
                "company": tracking_company,
                "number": tracking_number,
                "url": tracking_url,
                "notify_customer": notify_customer,
            }
        )
        return FulfillmentResult(
            fulfillment_id=f"gid://shopify/Fulfillment/{len(self.fulfillments)}",
            platform_order_id=order_id,
            status="SUCCESS",
            tracking_info=[{"company": tracking_company, "number": tracking_number}],
        )

    async def register_carrier_service(self, name: str, callback_url: str) -> dict[str, Any] | None:
        self.carrier_services.append((name, callback_url))
        return {"id": "gid://shopify/DeliveryCarrierService/1", "name": name, "callbackUrl": callback_url}


class FakeSessions:
    def __init__(self) -> None:
        self.clients: dict[str, FakePlatformClient] = {}

    def client_for(self, shop_id: str) -> FakePlatformClient:
        return self.clients.setdefault(shop_id, FakePlatformClient())


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_order(order_id: int = 5001, order_number: int = 1001, **overrides: Any) -> dict[str, Any]:
    order: dict[str, Any] = {
        "id": order_id,
        "order_number": order_number,
        "name": f"#{order_number}",
        "financial_status": "paid",
        "total_price": "49.90",
        "currency": "USD",
        "customer": {"first_name": "Ada", "last_name": "Lovelace", "phone": "+15550001"},
        "shipping_address": {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "address1": "1 Analytical Way",
            "city": "London",
            "province": "",
            "zip": "N1 9GU",
            "country": "United Kingdom",
            "country_code": "GB",
            "phone": "+15550002",
        },
        "line_items": [
            {"title": "Gear", "sku": "G-1", "quantity": 2, "price": "19.95", "grams": 250},
            {"title": "Gift card", "sku": "GC", "quantity": 1, "price": "10.00", "requires_shipping": False},
        ],
    }
    order.update(overrides)
    return order


@pytest.fixture()
def carrier() -> FakeCarrier:
    return FakeCarrier()


@pytest.fixture()
def sessions() -> FakeSessions:
    return FakeSessions()


@pytest.fixture()
def mappings() -> InMemoryMappingStore:
    return InMemoryMappingStore()


@pytest.fixture()
def dead_letters() -> InMemoryDeadLetterStore:
    return InMemoryDeadLetterStore()


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        shopify_api_secret="shopify-test-secret",
        scan2ship_webhook_secret="scan2ship-test-secret",
        admin_api_token="admin-test-token",
        shopify_app_url="https://sync.example.com",
        database_url="",
        redis_url="",
        sync_base_delay_seconds=0.0,
        retry_jitter=0.0,
    )


@pytest.fixture()
def services(settings, carrier, sessions, mappings, dead_letters):
    return build_services(
        settings,
        mappings=mappings,
        dead_letters=dead_letters,
        carrier=carrier,
        sessions=sessions,
    )


@pytest.fixture()
def client(services):
    with TestClient(create_app(services=services)) as test_client:
        yield test_client
