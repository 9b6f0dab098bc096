"""
Tests for accumulator sync under failure

The ledger record is never rolled back. A failed sync leaves the
assignment recorded and unverifiable until reconcile() runs.
"""

import pytest

from credregistry.core import (
    BackoffStrategy,
    MerkleAccumulator,
    SyncCoordinator,
    SyncPendingError,
    SyncPolicy,
)
from credregistry.core.service import RegistryService
from credregistry.db import InMemoryAccumulatorStore, InMemoryLedgerStore
from credregistry.schemas import AssignmentRecord

AUTHORITY = "0x" + "a" * 40
ALICE = "0x" + "1" * 40
BOB = "0x" + "2" * 40


class TestSyncPolicy:

    def test_fixed_delay(self):
        policy = SyncPolicy(retry_delay_seconds=0.5)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 0.5, 0.5]

    def test_exponential_delay(self):
        policy = SyncPolicy(retry_delay_seconds=1.0, backoff_strategy=BackoffStrategy.EXPONENTIAL)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_delay_is_capped(self):
        policy = SyncPolicy(
            retry_delay_seconds=10.0,
            backoff_strategy=BackoffStrategy.EXPONENTIAL,
            max_delay_seconds=15.0,
        )
        assert policy.delay_for(3) == 15.0

    def test_at_least_one_attempt(self):
        with pytest.raises(ValueError):
            SyncPolicy(max_attempts=0)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            SyncPolicy(retry_delay_seconds=-1)


class TestSyncCoordinator:
    """Retry budget and backoff, one phase at a time."""

    @pytest.fixture
    def records(self):
        return [
            AssignmentRecord(user=ALICE, credential_type_id=0),
            AssignmentRecord(user=BOB, credential_type_id=0),
        ]

    def make_coordinator(self, accumulator_store, store, metrics, sleeps, **policy):
        return SyncCoordinator(
            MerkleAccumulator(accumulator_store),
            store,
            AUTHORITY,
            policy=SyncPolicy(**policy),
            metrics=metrics,
            sleep=sleeps.append,
        )

    def test_clean_sync_publishes(self, records, metrics):
        store = InMemoryLedgerStore(AUTHORITY)
        coordinator = self.make_coordinator(InMemoryAccumulatorStore(), store, metrics, [])

        root = coordinator.on_assigned(records, records[-1])
        assert root == store.get_published_root()
        assert coordinator.is_in_sync(len(records))
        assert metrics.sync_retries == 0

    def test_backoff_between_attempts(self, records, metrics, flaky_accumulator_store):
        sleeps = []
        coordinator = self.make_coordinator(
            flaky_accumulator_store(failures=2),
            InMemoryLedgerStore(AUTHORITY),
            metrics,
            sleeps,
            max_attempts=3,
            retry_delay_seconds=0.25,
            backoff_strategy=BackoffStrategy.EXPONENTIAL,
        )
        coordinator.on_assigned(records)
        assert sleeps == [0.25, 0.5]
        assert metrics.sync_retries == 2

    def test_zero_delay_does_not_sleep(self, records, metrics, flaky_accumulator_store):
        sleeps = []
        coordinator = self.make_coordinator(
            flaky_accumulator_store(failures=1),
            InMemoryLedgerStore(AUTHORITY),
            metrics,
            sleeps,
        )
        coordinator.on_assigned(records)
        assert sleeps == []

    def test_exhausted_attempts(self, records, metrics, flaky_accumulator_store):
        accumulator_store = flaky_accumulator_store(failures=5)
        store = InMemoryLedgerStore(AUTHORITY)
        coordinator = self.make_coordinator(accumulator_store, store, metrics, [], max_attempts=2)

        with pytest.raises(SyncPendingError) as exc_info:
            coordinator.on_assigned(records, records[-1])

        assert exc_info.value.attempts == 2
        assert exc_info.value.record == records[-1]
        assert accumulator_store.save_calls == 2
        assert store.get_published_root() is None
        assert metrics.sync_failures == 1

    def test_publish_retried_without_rebuilding(self, records, metrics, flaky_ledger_store):
        accumulator_store = InMemoryAccumulatorStore()
        store = flaky_ledger_store(publish_failures=2)
        coordinator = self.make_coordinator(accumulator_store, store, metrics, [])

        calls = []
        original_save = accumulator_store.save
        accumulator_store.save = lambda dump: (calls.append(dump), original_save(dump))

        root = coordinator.on_assigned(records)
        assert root == store.get_published_root()
        assert store.publish_calls == 3
        assert len(calls) == 1

    def test_empty_record_list_skips_publish(self, metrics, flaky_ledger_store):
        store = flaky_ledger_store()
        coordinator = self.make_coordinator(InMemoryAccumulatorStore(), store, metrics, [])
        assert coordinator.reconcile([]) is None
        assert store.publish_calls == 0
        assert metrics.reconciliations == 1


class TestSyncFailureThroughService:
    """What a caller sees when sync cannot complete."""

    def make_service(self, store, accumulator_store, metrics):
        return RegistryService(
            store,
            AUTHORITY,
            accumulator_store=accumulator_store,
            sync_policy=SyncPolicy(max_attempts=3),
            metrics=metrics,
        )

    def test_transient_failure_is_absorbed(self, metrics, flaky_accumulator_store):
        accumulator_store = flaky_accumulator_store(failures=2)
        service = self.make_service(InMemoryLedgerStore(AUTHORITY), accumulator_store, metrics)
        service.create_credential_type(AUTHORITY, "Gold")

        service.assign_credential(AUTHORITY, ALICE, 0)
        assert service.verify_credential(ALICE, 0, service.get_proof(ALICE, 0))
        assert metrics.sync_retries == 2

    def test_assignment_survives_persist_failure(self, metrics, flaky_accumulator_store):
        accumulator_store = flaky_accumulator_store(failures=3)
        service = self.make_service(InMemoryLedgerStore(AUTHORITY), accumulator_store, metrics)
        service.create_credential_type(AUTHORITY, "Gold")

        with pytest.raises(SyncPendingError) as exc_info:
            service.assign_credential(AUTHORITY, ALICE, 0)

        assert exc_info.value.record.key == (ALICE, 0)
        assert service.assignments.has(ALICE, 0)
        assert service.get_merkle_root() is None
        assert service.verify_credential(ALICE, 0, []) is False
        assert not service.is_in_sync()

        service.reconcile(AUTHORITY)
        assert service.is_in_sync()
        assert service.verify_credential(ALICE, 0, service.get_proof(ALICE, 0)) is True

    def test_assignment_survives_publish_failure(self, metrics, flaky_ledger_store):
        store = flaky_ledger_store()
        service = self.make_service(store, InMemoryAccumulatorStore(), metrics)
        service.create_credential_type(AUTHORITY, "Gold")
        service.assign_credential(AUTHORITY, ALICE, 0)
        old_root = service.get_merkle_root()
        old_proof = service.get_proof(ALICE, 0)

        store.publish_failures = 3
        with pytest.raises(SyncPendingError):
            service.assign_credential(AUTHORITY, BOB, 0)

        # Proofs fetched before the failure still match the published root.
        # A fresh proof comes from the unpublished tree and fails until reconcile.
        assert service.get_merkle_root() == old_root
        assert service.verify_credential(ALICE, 0, old_proof) is True
        assert service.verify_credential(ALICE, 0, service.get_proof(ALICE, 0)) is False
        assert service.verify_credential(BOB, 0, service.get_proof(BOB, 0)) is False

        service.reconcile(AUTHORITY)
        assert service.get_merkle_root() != old_root
        assert service.verify_credential(BOB, 0, service.get_proof(BOB, 0)) is True
        assert service.verify_credential(ALICE, 0, old_proof) is False

    def test_reconcile_failure_has_no_record(self, metrics, flaky_ledger_store):
        store = flaky_ledger_store()
        service = self.make_service(store, InMemoryAccumulatorStore(), metrics)
        service.create_credential_type(AUTHORITY, "Gold")
        service.assign_credential(AUTHORITY, ALICE, 0)

        store.publish_failures = 3
        with pytest.raises(SyncPendingError) as exc_info:
            service.reconcile(AUTHORITY)
        assert exc_info.value.record is None

    def test_load_recovers_after_failed_sync(self, metrics, flaky_accumulator_store):
        store = InMemoryLedgerStore(AUTHORITY)
        accumulator_store = flaky_accumulator_store(failures=3)
        service = self.make_service(store, accumulator_store, metrics)
        service.create_credential_type(AUTHORITY, "Gold")
        with pytest.raises(SyncPendingError):
            service.assign_credential(AUTHORITY, ALICE, 0)

        restarted = RegistryService.load(
            store,
            AUTHORITY,
            accumulator_store=accumulator_store,
            metrics=metrics,
        )
        assert restarted.is_in_sync()
        assert restarted.verify_credential(ALICE, 0, restarted.get_proof(ALICE, 0))
