"""Shopify order -> Scan2Ship order request.

Pure functions, no I/O. Rules:
- Address: shipping address, else billing address, else MissingAddress
- Phones: customer phone first, address phone appended if distinct
- COD: financial_status is pending or partially_paid
- Line items: only those requiring shipping; missing weight -> 0
- Reference: "<PREFIX>-<order_number>", stable across resubmissions
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

from shipsync.errors import InvalidPayload, InvalidReference, MissingAddress
from shipsync.models import CarrierAddress, CarrierLineItem, CarrierOrderRequest

COD_FINANCIAL_STATUSES = {"pending", "partially_paid"}


def _decimal(value: Any, default: str = "0") -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal(default)
    except InvalidOperation:
        return Decimal(default)


def _clean(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def order_id_of(raw_order: dict[str, Any]) -> int:
    """Return the Shopify order id or raise InvalidPayload."""
    try:
        return int(raw_order["id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidPayload("Order payload has no usable 'id'") from exc


def order_number_of(raw_order: dict[str, Any]) -> int:
    """Return the shop-facing order number ("#1001" -> 1001)."""
    value = raw_order.get("order_number")
    if value in (None, ""):
        value = _clean(raw_order.get("name")).lstrip("#")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidPayload("Order payload has no usable 'order_number'") from exc


def build_reference(order_number: int, prefix: str = "SHOPIFY") -> str:
    return f"{prefix}-{order_number}"


def parse_reference(reference: str, prefix: str = "SHOPIFY") -> int:
    """Extract the order number from "<PREFIX>-<digits>"."""
    match = re.fullmatch(rf"{re.escape(prefix)}-(\d+)", (reference or "").strip())
    if not match:
        raise InvalidReference(f"Invalid order reference format: {reference!r}")
    return int(match.group(1))


def _full_name(source: dict[str, Any] | None) -> str:
    if not source:
        return ""
    name = _clean(source.get("name"))
    if name:
        return name
    parts = [_clean(source.get("first_name")), _clean(source.get("last_name"))]
    return " ".join(p for p in parts if p)


def collect_phones(customer: dict[str, Any] | None, address: dict[str, Any]) -> list[str]:
    phones: list[str] = []
    for candidate in ((customer or {}).get("phone"), address.get("phone")):
        phone = _clean(candidate)
        if phone and phone not in phones:
            phones.append(phone)
    return phones


def build_carrier_order_request(raw_order: dict[str, Any], prefix: str = "SHOPIFY") -> CarrierOrderRequest:
    """Derive the Scan2Ship request for a Shopify order payload."""
    address = raw_order.get("shipping_address") or raw_order.get("billing_address")
    if not address:
        raise MissingAddress(f"Order {raw_order.get('id')} has no shipping or billing address")

    customer = raw_order.get("customer") or {}
    line_items = [
        CarrierLineItem(
            name=_clean(item.get("title") or item.get("name")),
            sku=_clean(item.get("sku")),
            quantity=int(item.get("quantity") or 0),
            price=_decimal(item.get("price")),
            weight=int(item.get("grams") or 0),
        )
        for item in raw_order.get("line_items") or []
        if item.get("requires_shipping", True)
    ]

    return CarrierOrderRequest(
        reference=build_reference(order_number_of(raw_order), prefix),
        recipient_name=_full_name(address) or _full_name(customer),
        phones=collect_phones(customer, address),
        address=CarrierAddress(
            address1=_clean(address.get("address1")),
            address2=_clean(address.get("address2")),
            city=_clean(address.get("city")),
            province=_clean(address.get("province")),
            postal_code=_clean(address.get("zip")),
            country=_clean(address.get("country")),
            country_code=_clean(address.get("country_code")),
        ),
        cod=_clean(raw_order.get("financial_status")).lower() in COD_FINANCIAL_STATUSES,
        line_items=line_items,
        declared_value=_decimal(raw_order.get("total_price")),
        currency=_clean(raw_order.get("currency")) or "USD",
    )
