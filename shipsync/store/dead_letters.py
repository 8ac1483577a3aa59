"""Dead-letter store: quarantine for order syncs that could not complete.

An entry is written exactly once per failed sync attempt (retries
exhausted or a terminal error) and is never edited. The only way out is
an operator replay that succeeds, which removes the entries for that
order. The raw order payload is kept so the replay needs nothing else.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from shipsync.store.db import connect

logger = logging.getLogger(__name__)


@dataclass
class DeadLetterEntry:
    shop_id: str
    platform_order_id: int
    error_message: str
    retry_count: int = 0
    error_code: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime | None = None
    id: int | None = None

    def to_dict(self, include_payload: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "shop_id": self.shop_id,
            "platform_order_id": self.platform_order_id,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }
        if include_payload:
            data["payload"] = self.payload
        return data

    @staticmethod
    def from_row(row: dict[str, Any]) -> DeadLetterEntry:
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        return DeadLetterEntry(
            id=row["id"],
            shop_id=row["shop_id"],
            platform_order_id=row["platform_order_id"],
            error_message=row["error_message"],
            error_code=row.get("error_code") or "",
            retry_count=row["retry_count"],
            payload=payload,
            occurred_at=row["occurred_at"],
        )


@runtime_checkable
class DeadLetterStore(Protocol):
    def add(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        ...

    def get(self, entry_id: int) -> DeadLetterEntry | None:
        ...

    def list_entries(self, shop_id: str | None = None, limit: int = 100) -> list[DeadLetterEntry]:
        ...

    def list_for_order(self, shop_id: str, platform_order_id: int) -> list[DeadLetterEntry]:
        ...

    def remove(self, entry_id: int) -> bool:
        ...

    def remove_for_order(self, shop_id: str, platform_order_id: int) -> int:
        ...


class InMemoryDeadLetterStore:
    """Process-local dead-letter list; development and tests only."""

    def __init__(self) -> None:
        self._entries: dict[int, DeadLetterEntry] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        with self._lock:
            stored = replace(
                entry,
                id=next(self._ids),
                occurred_at=entry.occurred_at or datetime.now(timezone.utc),
            )
            self._entries[stored.id] = stored
            return replace(stored)

    def get(self, entry_id: int) -> DeadLetterEntry | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return replace(entry) if entry else None

    def list_entries(self, shop_id: str | None = None, limit: int = 100) -> list[DeadLetterEntry]:
        with self._lock:
            entries = [
                replace(e) for e in self._entries.values() if shop_id is None or e.shop_id == shop_id
            ]
        entries.sort(key=lambda e: e.id or 0, reverse=True)
        return entries[:limit]

    def list_for_order(self, shop_id: str, platform_order_id: int) -> list[DeadLetterEntry]:
        with self._lock:
            entries = [
                replace(e)
                for e in self._entries.values()
                if e.shop_id == shop_id and e.platform_order_id == platform_order_id
            ]
        entries.sort(key=lambda e: e.id or 0, reverse=True)
        return entries

    def remove(self, entry_id: int) -> bool:
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    def remove_for_order(self, shop_id: str, platform_order_id: int) -> int:
        with self._lock:
            doomed = [
                k
                for k, e in self._entries.items()
                if e.shop_id == shop_id and e.platform_order_id == platform_order_id
            ]
            for k in doomed:
                del self._entries[k]
        return len(doomed)


_COLUMNS = "id, shop_id, platform_order_id, error_message, error_code, retry_count, payload, occurred_at"


class PostgresDeadLetterStore:
    """psycopg-backed dead-letter queue."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    def init_tables(self) -> None:
        """Create the dead_letters table if it doesn't exist.  Idempotent."""
        with connect(self._database_url) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS dead_letters (
                    id                SERIAL PRIMARY KEY,
                    shop_id           TEXT NOT NULL,
                    platform_order_id BIGINT NOT NULL,
                    error_message     TEXT NOT NULL,
                    error_code        TEXT NOT NULL DEFAULT '',
                    retry_count       INT NOT NULL DEFAULT 0,
                    payload           JSONB NOT NULL DEFAULT '{}',
                    occurred_at       TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS dead_letters_order_idx
                ON dead_letters (shop_id, platform_order_id)
            """)
        logger.info("Dead-letter table initialized")

    def add(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        with connect(self._database_url) as conn:
            row = conn.execute(
                f"""INSERT INTO dead_letters
                        (shop_id, platform_order_id, error_message, error_code, retry_count, payload)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_COLUMNS}""",
                (
                    entry.shop_id,
                    entry.platform_order_id,
                    entry.error_message,
                    entry.error_code,
                    entry.retry_count,
                    json.dumps(entry.payload, default=str),
                ),
            ).fetchone()
        return DeadLetterEntry.from_row(row)

    def get(self, entry_id: int) -> DeadLetterEntry | None:
        with connect(self._database_url) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM dead_letters WHERE id = %s",
                (entry_id,),
            ).fetchone()
        return DeadLetterEntry.from_row(row) if row else None

    def list_entries(self, shop_id: str | None = None, limit: int = 100) -> list[DeadLetterEntry]:
        with connect(self._database_url) as conn:
            if shop_id:
                rows = conn.execute(
                    f"""SELECT {_COLUMNS} FROM dead_letters
                        WHERE shop_id = %s ORDER BY id DESC LIMIT %s""",
                    (shop_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM dead_letters ORDER BY id DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [DeadLetterEntry.from_row(r) for r in rows]

    def list_for_order(self, shop_id: str, platform_order_id: int) -> list[DeadLetterEntry]:
        with connect(self._database_url) as conn:
            rows = conn.execute(
                f"""SELECT {_COLUMNS} FROM dead_letters
                    WHERE shop_id = %s AND platform_order_id = %s
                    ORDER BY id DESC""",
                (shop_id, platform_order_id),
            ).fetchall()
        return [DeadLetterEntry.from_row(r) for r in rows]

    def remove(self, entry_id: int) -> bool:
        with connect(self._database_url) as conn:
            result = conn.execute("DELETE FROM dead_letters WHERE id = %s", (entry_id,))
            return result.rowcount > 0

    def remove_for_order(self, shop_id: str, platform_order_id: int) -> int:
        with connect(self._database_url) as conn:
            result = conn.execute(
                "DELETE FROM dead_letters WHERE shop_id = %s AND platform_order_id = %s",
                (shop_id, platform_order_id),
            )
            return result.rowcount
