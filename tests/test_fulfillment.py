"""Tests for the fulfillment write-back (Scan2Ship order-ready -> Shopify)."""

from __future__ import annotations

import pytest

from conftest import SHOP, open_fulfillment_order
from shipsync.errors import (
    FulfillmentRejected,
    InvalidPayload,
    InvalidReference,
    NoOpenFulfillment,
    RetryExhausted,
    TransientBackendFailure,
)
from shipsync.models import OrderReadyPayload
from shipsync.store import MappingStatus
from shipsync.sync.fulfillment import FulfillmentWriteBack

READY = {
    "orderRef": "SHOPIFY-1001",
    "trackingNumber": "TRK123",
    "carrier": "DHL",
    "url": "https://track.example/TRK123",
    "waybill": "WB-1",
}


@pytest.fixture()
def write_back(sessions, mappings, recording_sleep):
    return FulfillmentWriteBack(sessions, mappings, max_retries=3, base_delay=1.0, sleep=recording_sleep)


@pytest.fixture()
def shop_client(sessions):
    client = sessions.client_for(SHOP)
    client.fulfillment_orders[5001] = [open_fulfillment_order(5001, remaining=1)]
    return client


@pytest.fixture()
def synced_mapping(mappings):
    mappings.claim(SHOP, 5001, order_number=1001)
    mappings.mark_created(SHOP, 5001, "S2S-1", "WB-1")


class TestOrderReady:
    @pytest.mark.asyncio
    @pytest.mark.usefixtures("synced_mapping")
    async def test_fulfills_open_order(self, write_back, shop_client, mappings):
        result = await write_back.on_order_ready(SHOP, READY)
        assert result.fulfillment_id == "gid://shopify/Fulfillment/1"
        assert result.platform_order_id == 5001

        sent = shop_client.fulfillments[0]
        assert sent["company"] == "DHL"
        assert sent["number"] == "TRK123"
        assert sent["url"] == "https://track.example/TRK123"
        assert sent["notify_customer"] is True

        mapping = mappings.get(SHOP, 5001)
        assert mapping.status is MappingStatus.FULFILLED
        assert mapping.fulfillment_id == result.fulfillment_id
        assert mapping.tracking_number == "TRK123"
        assert mapping.tracking_company == "DHL"

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("synced_mapping")
    async def test_second_delivery_finds_nothing_open(self, write_back, shop_client):
        await write_back.on_order_ready(SHOP, READY)
        with pytest.raises(NoOpenFulfillment):
            await write_back.on_order_ready(SHOP, READY)
        assert len(shop_client.fulfillments) == 1

    @pytest.mark.asyncio
    async def test_unmapped_order_number_used_as_order_id(self, write_back, sessions, mappings):
        client = sessions.client_for(SHOP)
        client.fulfillment_orders[1001] = [open_fulfillment_order(1001)]
        result = await write_back.on_order_ready(SHOP, READY)
        assert result.platform_order_id == 1001
        assert mappings.get(SHOP, 1001).status is MappingStatus.FULFILLED

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("synced_mapping")
    async def test_accepts_model_payload(self, write_back, shop_client):
        result = await write_back.on_order_ready(SHOP, OrderReadyPayload(**READY))
        assert result.platform_order_id == 5001

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("synced_mapping")
    async def test_closed_fulfillment_orders_skipped(self, write_back, shop_client):
        closed = open_fulfillment_order(5001)
        closed.status = "CLOSED"
        shop_client.fulfillment_orders[5001] = [closed]
        with pytest.raises(NoOpenFulfillment):
            await write_back.on_order_ready(SHOP, READY)

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("synced_mapping")
    async def test_no_remaining_quantity_is_not_open(self, write_back, shop_client):
        shop_client.fulfillment_orders[5001] = [open_fulfillment_order(5001, remaining=0)]
        with pytest.raises(NoOpenFulfillment):
            await write_back.on_order_ready(SHOP, READY)


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["orderRef", "trackingNumber", "carrier"])
    async def test_missing_required_field(self, write_back, field):
        payload = {**READY, field: ""}
        with pytest.raises(InvalidPayload) as info:
            await write_back.on_order_ready(SHOP, payload)
        assert field in str(info.value)

    @pytest.mark.asyncio
    async def test_bad_reference(self, write_back, sessions):
        with pytest.raises(InvalidReference):
            await write_back.on_order_ready(SHOP, {**READY, "orderRef": "ORDER-1001"})
        assert sessions.clients == {}


class TestFailures:
    @pytest.mark.asyncio
    @pytest.mark.usefixtures("synced_mapping")
    async def test_user_errors_raise_rejected(self, write_back, shop_client, mappings):
        shop_client.user_errors = [{"field": ["trackingInfo"], "message": "Invalid tracking"}]
        with pytest.raises(FulfillmentRejected) as info:
            await write_back.on_order_ready(SHOP, READY)
        assert "Invalid tracking" in str(info.value)
        assert mappings.get(SHOP, 5001).status is MappingStatus.CREATED

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("synced_mapping")
    async def test_fetch_retried_on_transient_failure(self, write_back, shop_client, recording_sleep):
        shop_client.fetch_errors = [TransientBackendFailure("throttled")]
        result = await write_back.on_order_ready(SHOP, READY)
        assert result.platform_order_id == 5001
        assert recording_sleep.delays == [1.0]

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("synced_mapping")
    async def test_fetch_exhaustion(self, write_back, shop_client):
        shop_client.fetch_errors = [TransientBackendFailure("down") for _ in range(4)]
        with pytest.raises(RetryExhausted):
            await write_back.on_order_ready(SHOP, READY)
        assert shop_client.fulfillments == []
