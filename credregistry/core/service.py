"""
Registry Service - The Front Door

Wires the registry components together and exposes the operations the
HTTP layer and the operator tools call.

    create_credential_type  -> CredentialTypeRegistry
    assign_credential       -> AssignmentLedger, then SyncCoordinator
    get_proof               -> MerkleAccumulator
    verify_credential       -> VerificationService
    reconcile               -> SyncCoordinator over the ledger's records

CONCURRENCY:
Single writer. Every mutating operation runs under one lock, so no two
assign -> rebuild -> publish sequences ever interleave. Reads take no lock
and may see a root that is about to be superseded.

LIFECYCLE:
    service = RegistryService.load(store, accumulator_store, authority)
    # ledger replayed, accumulator dump loaded, reconciled if stale
"""

from threading import Lock
from typing import Any, Optional

from ..db.accumulator_store import AccumulatorStore, InMemoryAccumulatorStore
from ..db.store import LedgerStore
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import AssignmentRecord, CredentialType
from .accumulator import MerkleAccumulator
from .assignments import AssignmentLedger
from .errors import AccumulatorIOError, SyncPendingError, UnknownLeaf
from .registry import DEFAULT_MAX_NAME_LENGTH, CredentialTypeRegistry, require_authority
from .sync import SyncCoordinator, SyncPolicy
from .verification import VerificationService

logger = get_logger(__name__)


class RegistryService:
    """Facade over the registry, the accumulator and their sync."""

    def __init__(
        self,
        store: LedgerStore,
        authority: str,
        accumulator_store: Optional[AccumulatorStore] = None,
        max_name_length: int = DEFAULT_MAX_NAME_LENGTH,
        sync_policy: Optional[SyncPolicy] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._metrics = metrics or get_metrics()
        self._lock = Lock()

        self.registry = CredentialTypeRegistry(store, authority, max_name_length)
        self.assignments = AssignmentLedger(store, self.registry)
        self.accumulator = MerkleAccumulator(accumulator_store or InMemoryAccumulatorStore())
        self.sync = SyncCoordinator(
            self.accumulator,
            store,
            self.registry.authority,
            policy=sync_policy,
            metrics=self._metrics,
        )
        self.verification = VerificationService(self.assignments, store, metrics=self._metrics)

    @property
    def store(self) -> LedgerStore:
        return self._store

    @classmethod
    def load(
        cls,
        store: LedgerStore,
        authority: str,
        accumulator_store: Optional[AccumulatorStore] = None,
        max_name_length: int = DEFAULT_MAX_NAME_LENGTH,
        sync_policy: Optional[SyncPolicy] = None,
        reconcile_on_start: bool = True,
        metrics: Optional[MetricsCollector] = None,
    ) -> "RegistryService":
        """
        Build a service from existing state.

        1. Verify and replay the ledger into the registry projections
        2. Load the accumulator dump, if any
        3. If the dump does not match the ledger, reconcile (when allowed)

        A corrupt dump is logged and treated as stale: the ledger is the
        source of truth and the accumulator is rebuilt from it.

        Raises:
            ChainIntegrityError: If the ledger chain is broken
        """
        service = cls(
            store,
            authority,
            accumulator_store=accumulator_store,
            max_name_length=max_name_length,
            sync_policy=sync_policy,
            metrics=metrics,
        )
        store.verify_chain()
        type_count = service.registry.load_from_store()
        assignment_count = service.assignments.load_from_store()

        try:
            loaded = service.accumulator.load()
        except AccumulatorIOError as e:
            logger.warning("Discarding unreadable accumulator dump", error=str(e))
            loaded = False

        records = service.assignments.list_all_records()
        if loaded and not service.accumulator.matches(records):
            logger.warning(
                "Accumulator dump does not match ledger",
                leaf_count=service.accumulator.leaf_count,
                record_count=len(records),
            )
            loaded = False
        if not loaded:
            # Serve proofs for the ledger's records even before anything is published
            service.accumulator.rebuild(records)

        in_sync = loaded and service.sync.is_in_sync(len(records))
        logger.info(
            "Registry loaded",
            credential_type_count=type_count,
            assignment_count=assignment_count,
            merkle_root=service.accumulator.root,
            in_sync=in_sync,
        )

        if not in_sync and reconcile_on_start:
            try:
                service.sync.reconcile(records)
            except SyncPendingError as e:
                logger.error("Reconcile on start failed", error=str(e.last_error))

        return service

    # ================================================================
    # Credential types
    # ================================================================

    def create_credential_type(self, caller: str, name: str) -> CredentialType:
        with self._lock:
            credential_type = self.registry.create(caller, name)
        self._metrics.record_type_created()
        return credential_type

    def get_credential_types(self) -> list[CredentialType]:
        return self.registry.list()

    def get_number_of_credential_types(self) -> int:
        return self.registry.count()

    def get_credential_type(self, credential_type_id: int) -> CredentialType:
        return self.registry.get(credential_type_id)

    # ================================================================
    # Assignments
    # ================================================================

    def get_user_credential_types(self, user: str) -> list[CredentialType]:
        return self.assignments.list_for_user(user)

    def assign_credential(self, caller: str, user: str, credential_type_id: int) -> AssignmentRecord:
        """
        Assign, then sync the accumulator and published root.

        Raises:
            Unauthorized, UnknownCredentialType, DuplicateAssignment: nothing recorded
            SyncPendingError: recorded, but not yet verifiable
        """
        with self._lock:
            record = self.assignments.assign(caller, user, credential_type_id)
            self._metrics.record_assignment()
            self.sync.on_assigned(self.assignments.list_all_records(), record)
        return record

    # ================================================================
    # Proofs and verification
    # ================================================================

    def get_proof(self, user: str, credential_type_id: int) -> list[str]:
        """
        Raises:
            UnknownLeaf: If the assignment is not in the accumulator
        """
        if not self.assignments.has(user, credential_type_id):
            raise UnknownLeaf(
                f"No leaf for credential type {credential_type_id} and user {user}"
            )
        return self.accumulator.proof_for(user, credential_type_id)

    def verify_credential(self, user: str, credential_type_id: int, proof: Any) -> bool:
        return self.verification.verify(user, credential_type_id, proof)

    def get_merkle_root(self) -> Optional[str]:
        """The published root verifiers trust."""
        return self._store.get_published_root()

    def get_authority(self) -> str:
        return self.registry.authority

    # ================================================================
    # Repair
    # ================================================================

    def reconcile(self, caller: str) -> Optional[str]:
        """
        Rebuild from the ledger's own record list and republish.

        Raises:
            Unauthorized: If caller is not the authority
            SyncPendingError: If a step still fails after all attempts
        """
        require_authority(caller, self.registry.authority)
        with self._lock:
            return self.sync.reconcile(self._store.list_all_records())

    def is_in_sync(self) -> bool:
        return self.sync.is_in_sync(self.assignments.count())
