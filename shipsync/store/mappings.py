"""Order mapping store: Shopify order <-> Scan2Ship order correspondence.

One row per (shop_id, platform_order_id). The store is the single source
of truth for sync idempotency; ``claim()`` is the atomic compare-and-set
that decides which webhook delivery gets to talk to the carrier:

- no row          -> insert Pending, acquired
- row is Failed   -> flip to Pending, acquired (resubmission)
- anything else   -> not acquired (duplicate delivery)

The sync path never overrides the write-back: mark_created only moves rows
that are still Pending or Failed, and mark_failed leaves Fulfilled rows
alone. A row the guard skips is returned unchanged.

Invariants kept by every write:
- carrier_order_id present  => status in {created, fulfilled}
- fulfillment_id present    => status == fulfilled
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import psycopg

from shipsync.store.db import connect

logger = logging.getLogger(__name__)


class MappingStatus(str, Enum):
    """Order mapping lifecycle states."""

    PENDING = "pending"
    CREATED = "created"
    FULFILLED = "fulfilled"
    FAILED = "failed"


@dataclass
class OrderMapping:
    shop_id: str
    platform_order_id: int
    status: MappingStatus = MappingStatus.PENDING
    order_number: int | None = None
    carrier_order_id: str | None = None
    waybill: str | None = None
    fulfillment_id: str | None = None
    tracking_number: str | None = None
    tracking_company: str | None = None
    tracking_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data

    @staticmethod
    def from_row(row: dict[str, Any]) -> OrderMapping:
        fields = {k: v for k, v in row.items() if k in OrderMapping.__dataclass_fields__}
        fields["status"] = MappingStatus(fields["status"])
        return OrderMapping(**fields)


@dataclass
class ClaimResult:
    """Outcome of an atomic claim on a mapping key."""

    mapping: OrderMapping
    acquired: bool


@runtime_checkable
class MappingStore(Protocol):
    """Durable keyed store of order mappings."""

    def claim(self, shop_id: str, platform_order_id: int, order_number: int | None = None) -> ClaimResult:
        ...

    def mark_created(
        self, shop_id: str, platform_order_id: int, carrier_order_id: str, waybill: str | None = None
    ) -> OrderMapping:
        ...

    def mark_failed(self, shop_id: str, platform_order_id: int) -> OrderMapping:
        ...

    def mark_fulfilled(
        self,
        shop_id: str,
        platform_order_id: int,
        fulfillment_id: str,
        *,
        tracking_number: str | None = None,
        tracking_company: str | None = None,
        tracking_url: str | None = None,
        waybill: str | None = None,
    ) -> OrderMapping:
        ...

    def release_stale(self, shop_id: str, platform_order_id: int, older_than: datetime) -> OrderMapping | None:
        ...

    def get(self, shop_id: str, platform_order_id: int) -> OrderMapping | None:
        ...

    def find_by_order_number(self, shop_id: str, order_number: int) -> OrderMapping | None:
        ...

    def list_mappings(
        self, shop_id: str | None = None, status: MappingStatus | None = None, limit: int = 100
    ) -> list[OrderMapping]:
        ...

    def ping(self) -> bool:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


_SYNC_WRITABLE = (MappingStatus.PENDING, MappingStatus.FAILED)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryMappingStore:
    """Lock-guarded dict store with the same semantics as the Postgres store.

    Used when no DATABASE_URL is configured and as the test double.
    """

    def __init__(self) -> None:
        self._rows: dict[tuple[str, int], OrderMapping] = {}
        self._lock = threading.Lock()

    def claim(self, shop_id: str, platform_order_id: int, order_number: int | None = None) -> ClaimResult:
        key = (shop_id, platform_order_id)
        with self._lock:
            existing = self._rows.get(key)
            now = _now()
            if existing is None:
                mapping = OrderMapping(
                    shop_id=shop_id,
                    platform_order_id=platform_order_id,
                    order_number=order_number,
                    created_at=now,
                    updated_at=now,
                )
                self._rows[key] = mapping
                return ClaimResult(replace(mapping), acquired=True)
            if existing.status is MappingStatus.FAILED:
                existing.status = MappingStatus.PENDING
                existing.order_number = order_number or existing.order_number
                existing.updated_at = now
                return ClaimResult(replace(existing), acquired=True)
            return ClaimResult(replace(existing), acquired=False)

    def mark_created(
        self, shop_id: str, platform_order_id: int, carrier_order_id: str, waybill: str | None = None
    ) -> OrderMapping:
        with self._lock:
            existing = self._rows.get((shop_id, platform_order_id))
            if existing is not None and existing.status not in _SYNC_WRITABLE:
                return replace(existing)
            mapping = self._upsert(shop_id, platform_order_id)
            mapping.status = MappingStatus.CREATED
            mapping.carrier_order_id = carrier_order_id
            mapping.waybill = waybill
            return replace(mapping)

    def mark_failed(self, shop_id: str, platform_order_id: int) -> OrderMapping:
        with self._lock:
            existing = self._rows.get((shop_id, platform_order_id))
            if existing is not None and existing.status is MappingStatus.FULFILLED:
                return replace(existing)
            mapping = self._upsert(shop_id, platform_order_id)
            mapping.status = MappingStatus.FAILED
            mapping.carrier_order_id = None
            return replace(mapping)

    def release_stale(self, shop_id: str, platform_order_id: int, older_than: datetime) -> OrderMapping | None:
        """Flip a Pending row last touched before ``older_than`` to Failed."""
        with self._lock:
            mapping = self._rows.get((shop_id, platform_order_id))
            if (
                mapping is None
                or mapping.status is not MappingStatus.PENDING
                or (mapping.updated_at is not None and mapping.updated_at >= older_than)
            ):
                return None
            mapping.status = MappingStatus.FAILED
            mapping.updated_at = _now()
            return replace(mapping)

    def mark_fulfilled(
        self,
        shop_id: str,
        platform_order_id: int,
        fulfillment_id: str,
        *,
        tracking_number: str | None = None,
        tracking_company: str | None = None,
        tracking_url: str | None = None,
        waybill: str | None = None,
    ) -> OrderMapping:
        with self._lock:
            mapping = self._upsert(shop_id, platform_order_id)
            mapping.status = MappingStatus.FULFILLED
            mapping.fulfillment_id = fulfillment_id
            mapping.tracking_number = tracking_number
            mapping.tracking_company = tracking_company
            mapping.tracking_url = tracking_url
            mapping.waybill = waybill or mapping.waybill
            return replace(mapping)

    def get(self, shop_id: str, platform_order_id: int) -> OrderMapping | None:
        with self._lock:
            mapping = self._rows.get((shop_id, platform_order_id))
            return replace(mapping) if mapping else None

    def find_by_order_number(self, shop_id: str, order_number: int) -> OrderMapping | None:
        with self._lock:
            for mapping in self._rows.values():
                if mapping.shop_id == shop_id and mapping.order_number == order_number:
                    return replace(mapping)
        return None

    def list_mappings(
        self, shop_id: str | None = None, status: MappingStatus | None = None, limit: int = 100
    ) -> list[OrderMapping]:
        with self._lock:
            rows = [
                replace(m)
                for m in self._rows.values()
                if (shop_id is None or m.shop_id == shop_id) and (status is None or m.status is status)
            ]
        rows.sort(key=lambda m: m.updated_at or _now(), reverse=True)
        return rows[:limit]

    def ping(self) -> bool:
        return True

    def _upsert(self, shop_id: str, platform_order_id: int) -> OrderMapping:
        # Caller holds the lock
        key = (shop_id, platform_order_id)
        now = _now()
        mapping = self._rows.get(key)
        if mapping is None:
            mapping = OrderMapping(
                shop_id=shop_id, platform_order_id=platform_order_id, created_at=now
            )
            self._rows[key] = mapping
        mapping.updated_at = now
        return mapping


# ---------------------------------------------------------------------------
# Postgres implementation
# ---------------------------------------------------------------------------

_COLUMNS = """shop_id, platform_order_id, status, order_number, carrier_order_id,
              waybill, fulfillment_id, tracking_number, tracking_company,
              tracking_url, created_at, updated_at"""


class PostgresMappingStore:
    """psycopg-backed mapping store; ON CONFLICT provides the atomic claim."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    def init_tables(self) -> None:
        """Create the order_mappings table if it doesn't exist.  Idempotent."""
        with connect(self._database_url) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS order_mappings (
                    shop_id           TEXT NOT NULL,
                    platform_order_id BIGINT NOT NULL,
                    status            TEXT NOT NULL DEFAULT 'pending',
                    order_number      BIGINT,
                    carrier_order_id  TEXT,
                    waybill           TEXT,
                    fulfillment_id    TEXT,
                    tracking_number   TEXT,
                    tracking_company  TEXT,
                    tracking_url      TEXT,
                    created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (shop_id, platform_order_id),
                    CHECK (status IN ('pending', 'created', 'fulfilled', 'failed')),
                    CHECK (carrier_order_id IS NULL OR status IN ('created', 'fulfilled')),
                    CHECK (fulfillment_id IS NULL OR status = 'fulfilled')
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS order_mappings_order_number_idx
                ON order_mappings (shop_id, order_number)
            """)
        logger.info("Order mapping table initialized")

    def claim(self, shop_id: str, platform_order_id: int, order_number: int | None = None) -> ClaimResult:
        with connect(self._database_url) as conn:
            row = conn.execute(
                f"""INSERT INTO order_mappings (shop_id, platform_order_id, order_number, status)
                    VALUES (%s, %s, %s, 'pending')
                    ON CONFLICT (shop_id, platform_order_id) DO UPDATE
                       SET status = 'pending',
                           order_number = COALESCE(EXCLUDED.order_number, order_mappings.order_number),
                           updated_at = now()
                     WHERE order_mappings.status = 'failed'
                    RETURNING {_COLUMNS}""",
                (shop_id, platform_order_id, order_number),
            ).fetchone()
            if row is not None:
                return ClaimResult(OrderMapping.from_row(row), acquired=True)
            existing = self._select(conn, shop_id, platform_order_id)
        return ClaimResult(OrderMapping.from_row(existing), acquired=False)

    def mark_created(
        self, shop_id: str, platform_order_id: int, carrier_order_id: str, waybill: str | None = None
    ) -> OrderMapping:
        with connect(self._database_url) as conn:
            row = conn.execute(
                f"""INSERT INTO order_mappings
                        (shop_id, platform_order_id, status, carrier_order_id, waybill)
                    VALUES (%s, %s, 'created', %s, %s)
                    ON CONFLICT (shop_id, platform_order_id) DO UPDATE
                       SET status = 'created',
                           carrier_order_id = EXCLUDED.carrier_order_id,
                           waybill = EXCLUDED.waybill,
                           updated_at = now()
                     WHERE order_mappings.status IN ('pending', 'failed')
                    RETURNING {_COLUMNS}""",
                (shop_id, platform_order_id, carrier_order_id, waybill),
            ).fetchone()
            if row is None:
                row = self._select(conn, shop_id, platform_order_id)
        return OrderMapping.from_row(row)

    def mark_failed(self, shop_id: str, platform_order_id: int) -> OrderMapping:
        with connect(self._database_url) as conn:
            row = conn.execute(
                f"""INSERT INTO order_mappings (shop_id, platform_order_id, status)
                    VALUES (%s, %s, 'failed')
                    ON CONFLICT (shop_id, platform_order_id) DO UPDATE
                       SET status = 'failed',
                           carrier_order_id = NULL,
                           updated_at = now()
                     WHERE order_mappings.status <> 'fulfilled'
                    RETURNING {_COLUMNS}""",
                (shop_id, platform_order_id),
            ).fetchone()
            if row is None:
                row = self._select(conn, shop_id, platform_order_id)
        return OrderMapping.from_row(row)

    def release_stale(self, shop_id: str, platform_order_id: int, older_than: datetime) -> OrderMapping | None:
        with connect(self._database_url) as conn:
            row = conn.execute(
                f"""UPDATE order_mappings
                       SET status = 'failed', updated_at = now()
                     WHERE shop_id = %s AND platform_order_id = %s
                       AND status = 'pending' AND updated_at < %s
                    RETURNING {_COLUMNS}""",
                (shop_id, platform_order_id, older_than),
            ).fetchone()
        return OrderMapping.from_row(row) if row else None

    @staticmethod
    def _select(conn: psycopg.Connection, shop_id: str, platform_order_id: int) -> dict[str, Any] | None:
        return conn.execute(
            f"""SELECT {_COLUMNS} FROM order_mappings
                WHERE shop_id = %s AND platform_order_id = %s""",
            (shop_id, platform_order_id),
        ).fetchone()

    def mark_fulfilled(
        self,
        shop_id: str,
        platform_order_id: int,
        fulfillment_id: str,
        *,
        tracking_number: str | None = None,
        tracking_company: str | None = None,
        tracking_url: str | None = None,
        waybill: str | None = None,
    ) -> OrderMapping:
        with connect(self._database_url) as conn:
            row = conn.execute(
                f"""INSERT INTO order_mappings
                        (shop_id, platform_order_id, status, fulfillment_id,
                         tracking_number, tracking_company, tracking_url, waybill)
                    VALUES (%s, %s, 'fulfilled', %s, %s, %s, %s, %s)
                    ON CONFLICT (shop_id, platform_order_id) DO UPDATE
                       SET status = 'fulfilled',
                           fulfillment_id = EXCLUDED.fulfillment_id,
                           tracking_number = EXCLUDED.tracking_number,
                           tracking_company = EXCLUDED.tracking_company,
                           tracking_url = EXCLUDED.tracking_url,
                           waybill = COALESCE(EXCLUDED.waybill, order_mappings.waybill),
                           updated_at = now()
                    RETURNING {_COLUMNS}""",
                (
                    shop_id,
                    platform_order_id,
                    fulfillment_id,
                    tracking_number,
                    tracking_company,
                    tracking_url,
                    waybill,
                ),
            ).fetchone()
        return OrderMapping.from_row(row)

    def get(self, shop_id: str, platform_order_id: int) -> OrderMapping | None:
        with connect(self._database_url) as conn:
            row = self._select(conn, shop_id, platform_order_id)
        return OrderMapping.from_row(row) if row else None

    def find_by_order_number(self, shop_id: str, order_number: int) -> OrderMapping | None:
        with connect(self._database_url) as conn:
            row = conn.execute(
                f"""SELECT {_COLUMNS} FROM order_mappings
                    WHERE shop_id = %s AND order_number = %s
                    ORDER BY updated_at DESC LIMIT 1""",
                (shop_id, order_number),
            ).fetchone()
        return OrderMapping.from_row(row) if row else None

    def list_mappings(
        self, shop_id: str | None = None, status: MappingStatus | None = None, limit: int = 100
    ) -> list[OrderMapping]:
        clauses: list[str] = []
        params: list[Any] = []
        if shop_id is not None:
            clauses.append("shop_id = %s")
            params.append(shop_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with connect(self._database_url) as conn:
            rows = conn.execute(
                f"""SELECT {_COLUMNS} FROM order_mappings {where}
                    ORDER BY updated_at DESC LIMIT %s""",
                params,
            ).fetchall()
        return [OrderMapping.from_row(r) for r in rows]

    def ping(self) -> bool:
        try:
            with connect(self._database_url) as conn:
                conn.execute("SELECT 1")
            return True
        except psycopg.Error:
            logger.warning("Mapping store unreachable", exc_info=True)
            return False
