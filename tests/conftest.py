"""Shared fixtures for the credential registry tests."""

import pytest

from credregistry.core.errors import AccumulatorIOError, RootPublishError
from credregistry.core.service import RegistryService
from credregistry.db.accumulator_store import InMemoryAccumulatorStore
from credregistry.db.store import InMemoryLedgerStore
from credregistry.observability import MetricsCollector

AUTHORITY = "0x" + "a" * 40


class FlakyAccumulatorStore(InMemoryAccumulatorStore):
    """Fails the first `failures` saves."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.save_calls = 0

    def save(self, dump):
        self.save_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise AccumulatorIOError("accumulator storage unavailable")
        super().save(dump)


class FlakyLedgerStore(InMemoryLedgerStore):
    """Fails the first `publish_failures` root publications."""

    def __init__(self, owner: str, publish_failures: int = 0):
        super().__init__(owner)
        self.publish_failures = publish_failures
        self.publish_calls = 0

    def publish_root(self, root, caller, leaf_count):
        self.publish_calls += 1
        if self.publish_failures > 0:
            self.publish_failures -= 1
            raise RootPublishError("ledger unavailable")
        return super().publish_root(root, caller, leaf_count)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def store():
    return InMemoryLedgerStore(AUTHORITY)


@pytest.fixture
def accumulator_store():
    return InMemoryAccumulatorStore()


@pytest.fixture
def service(store, accumulator_store, metrics):
    return RegistryService(
        store,
        AUTHORITY,
        accumulator_store=accumulator_store,
        metrics=metrics,
    )


@pytest.fixture
def flaky_accumulator_store():
    """Factory: flaky_accumulator_store(failures=n)."""
    return FlakyAccumulatorStore


@pytest.fixture
def flaky_ledger_store():
    """Factory: flaky_ledger_store(publish_failures=n)."""
    def make(publish_failures: int = 0) -> FlakyLedgerStore:
        return FlakyLedgerStore(AUTHORITY, publish_failures=publish_failures)
    return make
