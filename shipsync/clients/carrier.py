"""Scan2Ship REST client.

Wraps the carrier backend endpoints the core needs: credit balance,
courier services, order creation, rate calculation, analytics and the
environment check. Every call is bearer-token authenticated.

HTTP failures are translated into the sync error taxonomy here so the
orchestrators only ever see SyncError subclasses:
- timeouts, connection errors, 429, 5xx  -> TransientBackendFailure
- other 4xx, non-JSON bodies              -> BackendRequestRejected
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

import httpx

from shipsync.errors import (
    RETRYABLE_STATUS_CODES,
    BackendRequestRejected,
    TransientBackendFailure,
)
from shipsync.models import CarrierOrderRequest, CarrierOrderResult, CourierService

logger = logging.getLogger(__name__)


@runtime_checkable
class CarrierBackend(Protocol):
    """Operations the core needs from the carrier backend."""

    async def get_credit_balance(self) -> int:
        ...

    async def list_courier_services(self) -> list[CourierService]:
        ...

    async def create_order(self, request: CarrierOrderRequest) -> CarrierOrderResult:
        ...

    async def calculate_rates(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        ...

    async def track_event(self, event: str, properties: dict[str, Any]) -> None:
        ...

    async def env_check(self) -> bool:
        ...


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class Scan2ShipClient:
    """Async httpx client for the Scan2Ship API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        kwargs: dict[str, Any] = {"json": json}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientBackendFailure(f"Scan2Ship {method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientBackendFailure(
                f"Scan2Ship {method} {path} connection error: {type(exc).__name__}"
            ) from exc

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            raise TransientBackendFailure(
                f"Scan2Ship {method} {path} returned HTTP {status}",
                status_code=status,
                retry_after=_retry_after(response),
            )
        if status >= 400:
            raise BackendRequestRejected(
                f"Scan2Ship {method} {path} returned HTTP {status}: {response.text[:200]}",
                status_code=status,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise BackendRequestRejected(f"Scan2Ship {method} {path} returned non-JSON body") from exc

    async def get_credit_balance(self) -> int:
        data = await self._request("GET", "/api/credits")
        try:
            return int(data["balance"])
        except (KeyError, TypeError, ValueError) as exc:
            raise BackendRequestRejected("Malformed credit balance response") from exc

    async def list_courier_services(self) -> list[CourierService]:
        """Return the enabled courier services."""
        data = await self._request("GET", "/api/courier-services")
        services = []
        for raw in data.get("services") or []:
            service = CourierService(
                id=str(raw.get("id", "")),
                name=str(raw.get("name", "")),
                code=str(raw.get("code", "")),
                enabled=bool(raw.get("enabled", False)),
                supported_countries=list(raw.get("supportedCountries") or []),
                estimated_delivery_days=raw.get("estimatedDeliveryDays"),
            )
            if service.enabled and service.code:
                services.append(service)
        return services

    async def create_order(self, request: CarrierOrderRequest) -> CarrierOrderResult:
        data = await self._request("POST", "/api/orders", json=request.to_payload())
        order_id = data.get("orderId") or data.get("id")
        if not order_id:
            raise BackendRequestRejected("Scan2Ship order response missing orderId")
        logger.info("Scan2Ship order created: %s (ref=%s)", order_id, request.reference)
        return CarrierOrderResult(order_id=str(order_id), waybill=data.get("waybill") or None)

    async def calculate_rates(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        data = await self._request("POST", "/api/rates", json=payload)
        rates = data.get("rates")
        if not isinstance(rates, list):
            raise BackendRequestRejected("Scan2Ship rates response missing 'rates' list")
        return rates

    async def track_event(self, event: str, properties: dict[str, Any]) -> None:
        body = {"event": event, "properties": _jsonable(properties)}
        await self._request("POST", "/api/analytics/track", json=body)

    async def env_check(self) -> bool:
        try:
            await self._request("GET", "/api/env-check", timeout=5.0)
        except (TransientBackendFailure, BackendRequestRejected):
            logger.warning("Scan2Ship environment check failed", exc_info=True)
            return False
        return True


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
