"""
Registry Configuration

Handles storage drivers, sync policy, and environment-based configuration.

Environment Variables:
    CREDREGISTRY_AUTHORITY: Address of the registry authority (required to serve)
    CREDREGISTRY_MAX_NAME_LENGTH: Longest credential type name in bytes (default 100)

    CREDREGISTRY_LEDGER_DRIVER: Which ledger store to use
        - "memory" (default if no path configured)
        - "file" (JSON Lines, default if CREDREGISTRY_LEDGER_PATH is set)
    CREDREGISTRY_LEDGER_PATH: Ledger file path (default ledger.jsonl)

    CREDREGISTRY_ACCUMULATOR_DRIVER: "memory" or "file" (default file)
    CREDREGISTRY_ACCUMULATOR_PATH: Tree dump path (default merkleTree.json)

    CREDREGISTRY_SYNC_MAX_ATTEMPTS: Attempts per sync phase (default 3)
    CREDREGISTRY_SYNC_RETRY_DELAY_SECONDS: Base delay between attempts (default 0)
    CREDREGISTRY_SYNC_BACKOFF: "fixed" or "exponential" (default fixed)
    CREDREGISTRY_RECONCILE_ON_START: Reconcile on load if out of sync (default true)
"""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from ..core.sync import BackoffStrategy, SyncPolicy
from .accumulator_store import (
    AccumulatorStore,
    FileAccumulatorStore,
    InMemoryAccumulatorStore,
)
from .store import FileLedgerStore, InMemoryLedgerStore, LedgerStore


class StoreDriver(str, Enum):
    """Supported storage drivers."""
    MEMORY = "memory"
    FILE = "file"


DEFAULT_LEDGER_PATH = "ledger.jsonl"
DEFAULT_ACCUMULATOR_PATH = "merkleTree.json"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes")


def _parse_driver(variable: str, value: str) -> StoreDriver:
    try:
        return StoreDriver(value.lower())
    except ValueError:
        valid = ", ".join(d.value for d in StoreDriver)
        raise ValueError(f"Unknown {variable}: {value}. Valid values: {valid}") from None


def get_ledger_driver() -> StoreDriver:
    """
    Get the ledger driver to use.

    Checks CREDREGISTRY_LEDGER_DRIVER, then falls back to:
    - file if CREDREGISTRY_LEDGER_PATH is set
    - memory otherwise
    """
    explicit = os.getenv("CREDREGISTRY_LEDGER_DRIVER", "")
    if explicit:
        return _parse_driver("CREDREGISTRY_LEDGER_DRIVER", explicit)

    if os.getenv("CREDREGISTRY_LEDGER_PATH"):
        return StoreDriver.FILE

    return StoreDriver.MEMORY


def get_accumulator_driver() -> StoreDriver:
    """Get the accumulator driver to use (default file)."""
    explicit = os.getenv("CREDREGISTRY_ACCUMULATOR_DRIVER", "")
    if explicit:
        return _parse_driver("CREDREGISTRY_ACCUMULATOR_DRIVER", explicit)
    return StoreDriver.FILE


@dataclass
class RegistryConfig:
    """Registry runtime configuration."""
    authority: Optional[str] = None
    max_name_length: int = 100

    ledger_driver: StoreDriver = StoreDriver.MEMORY
    ledger_path: str = DEFAULT_LEDGER_PATH
    accumulator_driver: StoreDriver = StoreDriver.FILE
    accumulator_path: str = DEFAULT_ACCUMULATOR_PATH

    sync_max_attempts: int = 3
    sync_retry_delay_seconds: float = 0.0
    sync_backoff: BackoffStrategy = BackoffStrategy.FIXED
    reconcile_on_start: bool = True

    @classmethod
    def from_env(cls) -> "RegistryConfig":
        """
        Load configuration from environment variables.

        Raises:
            ValueError: On unknown driver names or malformed numbers
        """
        backoff = os.getenv("CREDREGISTRY_SYNC_BACKOFF", "fixed").lower()
        try:
            sync_backoff = BackoffStrategy(backoff)
        except ValueError:
            raise ValueError(
                f"Unknown CREDREGISTRY_SYNC_BACKOFF: {backoff}. Valid values: fixed, exponential"
            ) from None

        return cls(
            authority=os.getenv("CREDREGISTRY_AUTHORITY") or None,
            max_name_length=int(os.getenv("CREDREGISTRY_MAX_NAME_LENGTH", "100")),
            ledger_driver=get_ledger_driver(),
            ledger_path=os.getenv("CREDREGISTRY_LEDGER_PATH", DEFAULT_LEDGER_PATH),
            accumulator_driver=get_accumulator_driver(),
            accumulator_path=os.getenv("CREDREGISTRY_ACCUMULATOR_PATH", DEFAULT_ACCUMULATOR_PATH),
            sync_max_attempts=int(os.getenv("CREDREGISTRY_SYNC_MAX_ATTEMPTS", "3")),
            sync_retry_delay_seconds=float(os.getenv("CREDREGISTRY_SYNC_RETRY_DELAY_SECONDS", "0")),
            sync_backoff=sync_backoff,
            reconcile_on_start=_env_bool("CREDREGISTRY_RECONCILE_ON_START", True),
        )

    def require_authority(self) -> str:
        """
        Raises:
            ValueError: If no authority address is configured
        """
        if not self.authority:
            raise ValueError(
                "CREDREGISTRY_AUTHORITY is not set. "
                "The registry needs an authority address to accept writes."
            )
        return self.authority

    def sync_policy(self) -> SyncPolicy:
        return SyncPolicy(
            max_attempts=self.sync_max_attempts,
            retry_delay_seconds=self.sync_retry_delay_seconds,
            backoff_strategy=self.sync_backoff,
        )

    def create_ledger_store(self) -> LedgerStore:
        authority = self.require_authority()
        if self.ledger_driver == StoreDriver.FILE:
            return FileLedgerStore(authority, Path(self.ledger_path))
        return InMemoryLedgerStore(authority)

    def create_accumulator_store(self) -> AccumulatorStore:
        if self.accumulator_driver == StoreDriver.FILE:
            return FileAccumulatorStore(Path(self.accumulator_path))
        return InMemoryAccumulatorStore()
