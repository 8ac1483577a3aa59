"""Webhook delivery dedup — Redis-based pre-filter.

Security contract:
- Tracks delivery IDs in Redis with 24h TTL
- Duplicate deliveries are acknowledged with 200 (provider retries on errors)
- Key pattern: webhook:seen:{channel}:{delivery_id}
- If Redis is down, falls back to allowing (fail-open for availability)

The order mapping store stays the authoritative idempotency check; this
only saves work on obvious redeliveries.
"""

from __future__ import annotations

import logging

import redis

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "webhook:seen"


class WebhookDeduplicator:
    """SET NX based delivery dedup."""

    def __init__(self, redis_url: str | None = None, client: redis.Redis | None = None):
        if client is None:
            client = redis.from_url(redis_url or "redis://localhost:6379/0", decode_responses=True)
        self._redis = client

    def is_duplicate(self, channel: str, delivery_id: str | None) -> bool:
        """Atomically check-and-mark a delivery.

        Returns:
            True if this delivery has already been seen
        """
        if not delivery_id:
            return False  # No ID = can't dedup, allow through

        key = f"{_KEY_PREFIX}:{channel}:{delivery_id}"
        try:
            was_set = self._redis.set(key, "1", nx=True, ex=_DEDUP_TTL_SECONDS)
        except redis.RedisError:
            logger.warning(
                "Redis unavailable for webhook dedup — allowing %s/%s",
                channel,
                delivery_id,
                exc_info=True,
            )
            return False
        if not was_set:
            logger.info("Duplicate webhook delivery: %s/%s", channel, delivery_id)
            return True
        return False
