"""
Storage Layer for the Credential Registry

Provides:
- LedgerStore abstraction (InMemory for dev, JSON Lines file for durability)
- AccumulatorStore abstraction for the Merkle tree dump
- Environment-based configuration
"""

from .store import (
    LedgerStore,
    InMemoryLedgerStore,
    FileLedgerStore,
    LedgerStoreError,
    ChainIntegrityError,
    ChainHead,
    verify_event_chain,
)
from .accumulator_store import (
    AccumulatorStore,
    InMemoryAccumulatorStore,
    FileAccumulatorStore,
)
from .config import RegistryConfig, StoreDriver

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "FileLedgerStore",
    "LedgerStoreError",
    "ChainIntegrityError",
    "ChainHead",
    "verify_event_chain",
    "AccumulatorStore",
    "InMemoryAccumulatorStore",
    "FileAccumulatorStore",
    "RegistryConfig",
    "StoreDriver",
]
