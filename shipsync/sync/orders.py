"""Order sync: Shopify orders/create -> Scan2Ship order.

Flow per delivery (at-least-once, must be idempotent):
1. Atomic claim on (shop_id, platform_order_id) — duplicates stop here
2. Admission control: carrier credit balance >= required credits
3. Transform the Shopify order into a CarrierOrderRequest
4. Create the carrier order through the retry engine
5. Success -> mapping Created; any failure -> dead letter + mapping Failed

Nothing raised here reaches the webhook transport: failures are recorded
in the dead-letter store and the webhook is always acknowledged.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from shipsync import retry
from shipsync.clients.carrier import CarrierBackend
from shipsync.errors import (
    InsufficientCredits,
    InvalidPayload,
    RetryExhausted,
    SyncError,
)
from shipsync.store.dead_letters import DeadLetterEntry, DeadLetterStore
from shipsync.store.mappings import MappingStatus, MappingStore
from shipsync.sync.transform import build_carrier_order_request, order_id_of, order_number_of

logger = logging.getLogger(__name__)


class SyncOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    DEAD_LETTERED = "dead_lettered"
    REJECTED = "rejected"  # payload unusable, nothing to key a mapping on
    RELEASED = "released"  # stale Pending row reopened, next delivery syncs it


class OrderSyncOrchestrator:
    """Consumes orders/create deliveries and syncs them to Scan2Ship."""

    def __init__(
        self,
        carrier: CarrierBackend,
        mappings: MappingStore,
        dead_letters: DeadLetterStore,
        *,
        required_credits: int = 1,
        max_retries: int = 3,
        base_delay: float = 1.0,
        jitter: float = 0.0,
        reference_prefix: str = "SHOPIFY",
        stale_pending_after: float = 900.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._carrier = carrier
        self._mappings = mappings
        self._dead_letters = dead_letters
        self._required_credits = required_credits
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._jitter = jitter
        self._prefix = reference_prefix
        self._stale_pending_after = stale_pending_after
        self._sleep = sleep

    async def on_order_created(self, shop_id: str, raw_order: dict[str, Any]) -> SyncOutcome:
        """Sync one order delivery. Never raises."""
        try:
            platform_order_id = order_id_of(raw_order)
        except InvalidPayload as exc:
            logger.error("Rejected orders/create payload from %s: %s", shop_id, exc)
            return SyncOutcome.REJECTED

        try:
            order_number = order_number_of(raw_order)
        except InvalidPayload:
            order_number = None
        claim = await asyncio.to_thread(self._mappings.claim, shop_id, platform_order_id, order_number)
        if not claim.acquired:
            logger.info(
                "Duplicate orders/create for %s/%s (mapping status=%s) — skipping",
                shop_id,
                platform_order_id,
                claim.mapping.status.value,
            )
            return SyncOutcome.DUPLICATE

        try:
            await self._sync(shop_id, platform_order_id, raw_order)
        except RetryExhausted as exc:
            await self._quarantine(shop_id, platform_order_id, raw_order, exc.last_error, exc.retry_count)
            return SyncOutcome.DEAD_LETTERED
        except SyncError as exc:
            await self._quarantine(shop_id, platform_order_id, raw_order, exc, 0)
            return SyncOutcome.DEAD_LETTERED
        except Exception as exc:
            logger.exception("Unexpected error syncing order %s/%s", shop_id, platform_order_id)
            await self._quarantine(shop_id, platform_order_id, raw_order, exc, 0)
            return SyncOutcome.DEAD_LETTERED
        return SyncOutcome.CREATED

    async def _sync(self, shop_id: str, platform_order_id: int, raw_order: dict[str, Any]) -> None:
        balance = await self._with_retry(self._carrier.get_credit_balance, "get_credit_balance")
        if balance < self._required_credits:
            raise InsufficientCredits(balance=balance, required=self._required_credits)

        request = build_carrier_order_request(raw_order, self._prefix)
        result = await self._with_retry(
            lambda: self._carrier.create_order(request), f"create_order[{request.reference}]"
        )
        mapping = await asyncio.to_thread(
            self._mappings.mark_created, shop_id, platform_order_id, result.order_id, result.waybill
        )
        if mapping.status is not MappingStatus.CREATED:
            logger.warning(
                "Order %s/%s already %s; carrier order %s not recorded on the mapping",
                shop_id,
                platform_order_id,
                mapping.status.value,
                result.order_id,
            )
            return
        logger.info(
            "Order %s/%s synced: carrier_order_id=%s waybill=%s",
            shop_id,
            platform_order_id,
            result.order_id,
            result.waybill,
        )

    async def _with_retry(self, operation: Callable[[], Awaitable[Any]], label: str) -> Any:
        return await retry.execute(
            operation,
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            jitter=self._jitter,
            sleep=self._sleep,
            label=label,
        )

    async def _quarantine(
        self,
        shop_id: str,
        platform_order_id: int,
        raw_order: dict[str, Any],
        error: BaseException,
        retry_count: int,
    ) -> None:
        code = error.code if isinstance(error, SyncError) else type(error).__name__
        try:
            entry = await asyncio.to_thread(
                self._dead_letters.add,
                DeadLetterEntry(
                    shop_id=shop_id,
                    platform_order_id=platform_order_id,
                    error_message=str(error) or type(error).__name__,
                    error_code=code,
                    retry_count=retry_count,
                    payload=raw_order,
                ),
            )
            mapping = await asyncio.to_thread(self._mappings.mark_failed, shop_id, platform_order_id)
        except Exception:
            # Mapping stays Pending; an operator can release it once stale
            logger.exception("Could not record dead letter for %s/%s", shop_id, platform_order_id)
            return
        logger.error(
            "Order %s/%s dead-lettered (entry=%s, code=%s, retries=%d, mapping=%s): %s",
            shop_id,
            platform_order_id,
            entry.id,
            code,
            retry_count,
            mapping.status.value,
            error,
        )

    # ── Operator reprocessing ──────────────────────────────────────────

    async def replay_dead_letter(self, entry_id: int) -> SyncOutcome:
        """Re-run the sync for a dead-lettered order.

        On success (or when the order is already synced) every dead-letter
        entry for that order is removed. A failed replay keeps the entry
        and records a new one for the new attempt.

        Raises:
            LookupError: no entry with that id
        """
        entry = await asyncio.to_thread(self._dead_letters.get, entry_id)
        if entry is None:
            raise LookupError(f"Dead-letter entry {entry_id} not found")

        outcome = await self.on_order_created(entry.shop_id, entry.payload)
        mapping = await asyncio.to_thread(self._mappings.get, entry.shop_id, entry.platform_order_id)
        resolved = mapping is not None and mapping.status in (
            MappingStatus.CREATED,
            MappingStatus.FULFILLED,
        )
        if resolved:
            removed = await asyncio.to_thread(
                self._dead_letters.remove_for_order, entry.shop_id, entry.platform_order_id
            )
            logger.info(
                "Dead-letter replay resolved %s/%s (%d entries removed)",
                entry.shop_id,
                entry.platform_order_id,
                removed,
            )
        return outcome

    async def resubmit(self, shop_id: str, platform_order_id: int) -> SyncOutcome:
        """Resubmit a Failed mapping from its newest dead-letter entry.

        A mapping stuck in Pending for longer than ``stale_pending_after``
        seconds (the worker died between claim and outcome) is first
        released to Failed. With no dead-letter payload to replay, the
        release itself is the outcome and the next delivery syncs it.

        Raises:
            LookupError: no mapping, mapping neither Failed nor stale
                Pending, or a Failed mapping with no stored payload
        """
        mapping = await asyncio.to_thread(self._mappings.get, shop_id, platform_order_id)
        if mapping is None:
            raise LookupError(f"No mapping for {shop_id}/{platform_order_id}")

        released = False
        if mapping.status is MappingStatus.PENDING:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._stale_pending_after)
            released = (
                await asyncio.to_thread(self._mappings.release_stale, shop_id, platform_order_id, cutoff)
                is not None
            )
            if not released:
                raise LookupError(f"Mapping {shop_id}/{platform_order_id} is pending and not yet stale")
            logger.warning("Released stale pending mapping %s/%s", shop_id, platform_order_id)
        elif mapping.status is not MappingStatus.FAILED:
            raise LookupError(f"No failed mapping for {shop_id}/{platform_order_id}")

        entries = await asyncio.to_thread(self._dead_letters.list_for_order, shop_id, platform_order_id)
        if not entries:
            if released:
                return SyncOutcome.RELEASED
            raise LookupError(f"No dead-letter entry for {shop_id}/{platform_order_id}")
        return await self.replay_dead_letter(entries[0].id)
