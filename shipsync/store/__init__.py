"""Durable stores: order mappings and the dead-letter queue."""

from shipsync.store.dead_letters import (
    DeadLetterEntry,
    DeadLetterStore,
    InMemoryDeadLetterStore,
    PostgresDeadLetterStore,
)
from shipsync.store.mappings import (
    ClaimResult,
    InMemoryMappingStore,
    MappingStatus,
    MappingStore,
    OrderMapping,
    PostgresMappingStore,
)

__all__ = [
    "ClaimResult",
    "DeadLetterEntry",
    "DeadLetterStore",
    "InMemoryDeadLetterStore",
    "InMemoryMappingStore",
    "MappingStatus",
    "MappingStore",
    "OrderMapping",
    "PostgresDeadLetterStore",
    "PostgresMappingStore",
]
