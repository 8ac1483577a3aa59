"""Checkout-time rate quotes with a guaranteed static fallback.

Shopify calls the carrier-service callback synchronously during checkout.
The live path (courier services -> rate calculation -> transform) runs
under a hard timeout shorter than Shopify's own deadline; any failure on
that path, including the timeout, returns a single static rate instead.
get_rates() never raises.

Analytics events ("rate_requested", "fallback_used") are best-effort: they
run as background tasks, bounded by their own short timeout, after the
quotes have been returned.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

from pydantic import ValidationError

from shipsync.clients.carrier import CarrierBackend
from shipsync.errors import BackendRequestRejected, TransientBackendFailure
from shipsync.models import RateDetails, RateQuote, RateRequest

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

FALLBACK_SERVICE_CODE = "SCAN2SHIP_STANDARD_FALLBACK"


def minor_to_major(amount: Any) -> str:
    """1299 -> "12.99"."""
    return str((Decimal(str(amount)) / 100).quantize(_CENT, rounding=ROUND_HALF_UP))


class RateQuoteResponder:
    """Answers Shopify carrier-service rate requests."""

    def __init__(
        self,
        carrier: CarrierBackend,
        *,
        timeout: float = 4.0,
        analytics_timeout: float = 1.0,
        fallback_price: Decimal = Decimal("9.99"),
        fallback_currency: str = "USD",
        fallback_min_days: int = 3,
        fallback_max_days: int = 7,
        service_name: str = "Scan2Ship",
        today: Callable[[], date] | None = None,
    ):
        self._carrier = carrier
        self._timeout = timeout
        self._analytics_timeout = analytics_timeout
        self._fallback_price = Decimal(fallback_price).quantize(_CENT)
        self._fallback_currency = fallback_currency
        self._fallback_min_days = fallback_min_days
        self._fallback_max_days = fallback_max_days
        self._service_name = service_name
        self._today = today
        self._pending: set[asyncio.Task] = set()

    async def get_rates(self, body: Any) -> list[RateQuote]:
        """Return live rates, or exactly one fallback rate on any failure."""
        try:
            details = RateRequest.model_validate(body).rate
        except ValidationError:
            logger.warning("Malformed rate request — using fallback rate")
            self._emit("fallback_used", {"reason": "malformed_request"})
            return [self.fallback_rate(None)]

        currency = details.currency or self._fallback_currency
        try:
            rates = await asyncio.wait_for(self._live_rates(details, currency), timeout=self._timeout)
        except Exception as exc:
            reason = "timeout" if isinstance(exc, asyncio.TimeoutError) else type(exc).__name__
            logger.warning("Live rates unavailable (%s) — using fallback rate", reason)
            self._emit("fallback_used", {"reason": reason, "currency": currency})
            return [self.fallback_rate(currency)]

        self._emit(
            "rate_requested",
            {
                "currency": currency,
                "destination_country": details.destination.country,
                "rate_count": len(rates),
            },
        )
        return rates

    async def _live_rates(self, details: RateDetails, currency: str) -> list[RateQuote]:
        services = await self._carrier.list_courier_services()
        if not services:
            raise TransientBackendFailure("No enabled courier services")

        shippable = [item for item in details.items if item.requires_shipping]
        weight = sum(item.grams * item.quantity for item in shippable)
        declared_minor = sum(item.price * item.quantity for item in shippable)
        payload = {
            "origin": _address(details.origin),
            "destination": _address(details.destination),
            "weight": weight,
            "declaredValue": minor_to_major(declared_minor),
            "currency": currency,
            "services": [s.code for s in services],
        }
        raw_rates = await self._carrier.calculate_rates(payload)
        quotes = [self._to_quote(raw, currency) for raw in raw_rates]
        if not quotes:
            raise BackendRequestRejected("Carrier returned no rates")
        return quotes

    def _to_quote(self, raw: dict[str, Any], currency: str) -> RateQuote:
        try:
            min_days = int(raw.get("minDeliveryDays", self._fallback_min_days))
            max_days = int(raw.get("maxDeliveryDays", max(min_days, self._fallback_max_days)))
            return RateQuote(
                service_name=str(raw["serviceName"]),
                service_code=str(raw["serviceCode"]),
                total_price=minor_to_major(raw["totalPrice"]),
                currency=str(raw.get("currency") or currency),
                min_delivery_date=self._in_days(min_days),
                max_delivery_date=self._in_days(max_days),
                description=raw.get("description"),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise BackendRequestRejected(f"Malformed rate entry: {raw!r}") from exc

    def fallback_rate(self, currency: str | None) -> RateQuote:
        return RateQuote(
            service_name=f"{self._service_name} Standard",
            service_code=FALLBACK_SERVICE_CODE,
            total_price=str(self._fallback_price),
            currency=currency or self._fallback_currency,
            min_delivery_date=self._in_days(self._fallback_min_days),
            max_delivery_date=self._in_days(self._fallback_max_days),
            description=f"Standard delivery in {self._fallback_min_days}-{self._fallback_max_days} days",
        )

    def _in_days(self, days: int) -> str:
        today = self._today() if self._today else date.today()
        return (today + timedelta(days=days)).isoformat()

    def _emit(self, event: str, properties: dict[str, Any]) -> None:
        task = asyncio.create_task(self._track(event, properties))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight analytics events."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _track(self, event: str, properties: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(
                self._carrier.track_event(event, properties), timeout=self._analytics_timeout
            )
        except Exception:
            logger.debug("Analytics event %s dropped", event, exc_info=True)


def _address(address: Any) -> dict[str, Any]:
    return {
        "country": address.country,
        "postalCode": address.postal_code,
        "province": address.province,
        "city": address.city,
    }
