"""Service graph: settings -> stores -> clients -> orchestrators.

Without DATABASE_URL the stores are in-memory (development only). Every
collaborator can be injected, which is how tests swap in doubles.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from shipsync.clients.carrier import CarrierBackend, Scan2ShipClient
from shipsync.clients.shopify import PlatformSessions, StaticTokenSessions
from shipsync.config import Settings
from shipsync.rates import RateQuoteResponder
from shipsync.store import (
    DeadLetterStore,
    InMemoryDeadLetterStore,
    InMemoryMappingStore,
    MappingStore,
    PostgresDeadLetterStore,
    PostgresMappingStore,
)
from shipsync.sync.fulfillment import FulfillmentWriteBack
from shipsync.sync.orders import OrderSyncOrchestrator
from shipsync.webhooks.idempotency import WebhookDeduplicator


@dataclass
class Services:
    """Everything a request handler needs, built once per app."""

    settings: Settings
    mappings: MappingStore
    dead_letters: DeadLetterStore
    carrier: CarrierBackend
    sessions: PlatformSessions
    order_sync: OrderSyncOrchestrator
    write_back: FulfillmentWriteBack
    rates: RateQuoteResponder
    deduplicator: WebhookDeduplicator | None = None
    webhook_counts: dict[str, int] = field(default_factory=dict)

    def count_webhook(self, channel: str) -> int:
        self.webhook_counts[channel] = self.webhook_counts.get(channel, 0) + 1
        return self.webhook_counts[channel]


def build_services(
    settings: Settings,
    *,
    mappings: MappingStore | None = None,
    dead_letters: DeadLetterStore | None = None,
    carrier: CarrierBackend | None = None,
    sessions: PlatformSessions | None = None,
    deduplicator: WebhookDeduplicator | None = None,
) -> Services:
    """Build the service graph; any collaborator may be injected."""
    if mappings is None:
        mappings = (
            PostgresMappingStore(settings.database_url)
            if settings.database_url
            else InMemoryMappingStore()
        )
    if dead_letters is None:
        dead_letters = (
            PostgresDeadLetterStore(settings.database_url)
            if settings.database_url
            else InMemoryDeadLetterStore()
        )
    if carrier is None:
        carrier = Scan2ShipClient(settings.scan2ship_api_url, settings.scan2ship_api_key)
    if sessions is None:
        sessions = StaticTokenSessions(
            settings.shopify_access_token, api_version=settings.shopify_api_version
        )
    if deduplicator is None and settings.redis_url:
        deduplicator = WebhookDeduplicator(settings.redis_url)

    order_sync = OrderSyncOrchestrator(
        carrier,
        mappings,
        dead_letters,
        required_credits=settings.required_credits_per_order,
        max_retries=settings.sync_max_retries,
        base_delay=settings.sync_base_delay_seconds,
        jitter=settings.retry_jitter,
        reference_prefix=settings.order_reference_prefix,
        stale_pending_after=settings.stale_pending_seconds,
    )
    write_back = FulfillmentWriteBack(
        sessions,
        mappings,
        reference_prefix=settings.order_reference_prefix,
        max_retries=settings.sync_max_retries,
        base_delay=settings.sync_base_delay_seconds,
        jitter=settings.retry_jitter,
    )
    rates = RateQuoteResponder(
        carrier,
        timeout=settings.rates_timeout_seconds,
        analytics_timeout=settings.analytics_timeout_seconds,
        fallback_price=settings.fallback_rate_price,
        fallback_currency=settings.fallback_currency,
        fallback_min_days=settings.fallback_min_days,
        fallback_max_days=settings.fallback_max_days,
        service_name=settings.carrier_service_name,
    )
    return Services(
        settings=settings,
        mappings=mappings,
        dead_letters=dead_letters,
        carrier=carrier,
        sessions=sessions,
        order_sync=order_sync,
        write_back=write_back,
        rates=rates,
        deduplicator=deduplicator,
    )
