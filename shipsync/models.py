"""Wire and domain models shared by the orchestrators and clients.

Pydantic models validate inbound payloads and shape outbound requests;
plain dataclasses carry results between layers.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Scan2Ship order creation
# ---------------------------------------------------------------------------


class CarrierAddress(_CamelModel):
    address1: str = ""
    address2: str = ""
    city: str = ""
    province: str = ""
    postal_code: str = ""
    country: str = ""
    country_code: str = ""


class CarrierLineItem(_CamelModel):
    name: str
    sku: str = ""
    quantity: int = 1
    price: Decimal = Decimal("0")
    weight: int = 0  # grams


class CarrierOrderRequest(_CamelModel):
    """Normalized shipment request derived from a Shopify order."""

    reference: str
    recipient_name: str
    phones: list[str] = Field(default_factory=list)
    address: CarrierAddress
    cod: bool = False
    line_items: list[CarrierLineItem] = Field(default_factory=list)
    declared_value: Decimal = Decimal("0")
    currency: str = "USD"

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class CarrierOrderResult:
    order_id: str
    waybill: str | None = None


@dataclass
class CourierService:
    id: str
    name: str
    code: str
    enabled: bool = True
    supported_countries: list[str] = field(default_factory=list)
    estimated_delivery_days: int | None = None


# ---------------------------------------------------------------------------
# Scan2Ship order-ready webhook
# ---------------------------------------------------------------------------


class OrderReadyPayload(BaseModel):
    """Body of the Scan2Ship order-ready webhook."""

    model_config = ConfigDict(extra="ignore")

    orderRef: str = ""
    trackingNumber: str = ""
    carrier: str = ""
    url: str | None = None
    status: str | None = None
    waybill: str | None = None
    timestamp: str | None = None

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in ("orderRef", "trackingNumber", "carrier")
            if not str(getattr(self, name) or "").strip()
        ]


# ---------------------------------------------------------------------------
# Shopify fulfillment
# ---------------------------------------------------------------------------


@dataclass
class FulfillmentOrderLineItem:
    id: str
    quantity: int
    remaining_quantity: int
    sku: str | None = None


@dataclass
class FulfillmentOrder:
    id: str
    order_id: str
    status: str
    line_items: list[FulfillmentOrderLineItem] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status == "OPEN" and any(li.remaining_quantity > 0 for li in self.line_items)


@dataclass
class FulfillmentResult:
    fulfillment_id: str
    platform_order_id: int
    status: str | None = None
    tracking_info: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Checkout rates
# ---------------------------------------------------------------------------


class RateAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    country: str | None = None
    postal_code: str | None = None
    province: str | None = None
    city: str | None = None
    address1: str | None = None


class RateItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    sku: str | None = None
    quantity: int = 1
    grams: int = 0
    price: int = 0  # minor units
    requires_shipping: bool = True


class RateDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    origin: RateAddress = Field(default_factory=RateAddress)
    destination: RateAddress = Field(default_factory=RateAddress)
    items: list[RateItem] = Field(default_factory=list)
    currency: str | None = None


class RateRequest(BaseModel):
    """Shopify carrier-service callback body: {"rate": {...}}."""

    model_config = ConfigDict(extra="ignore")

    rate: RateDetails


@dataclass
class RateQuote:
    service_name: str
    service_code: str
    total_price: str  # major units, two decimals
    currency: str
    min_delivery_date: str
    max_delivery_date: str
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data["description"] is None:
            del data["description"]
        return data
