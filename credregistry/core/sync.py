"""
Sync Coordinator

Keeps the Merkle accumulator and the published root in step with the
authoritative assignment list.

Every sync runs three steps:
    1. rebuild the accumulator from the full record list
    2. persist the accumulator
    3. publish the new root to the ledger

Steps 1-2 are retried together from the same record list. Rebuilding is
idempotent, so there is no incremental patching to undo. Once 1-2 succeed,
only step 3 is retried, with the already-computed root.

When attempts run out the coordinator raises SyncPendingError. The ledger
record stays: the accumulator can always be recovered with reconcile().
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence, TYPE_CHECKING

from ..schemas import AssignmentRecord
from .accumulator import MerkleAccumulator
from .errors import AccumulatorIOError, RootPublishError, SyncPendingError
from ..observability import MetricsCollector, get_logger, get_metrics

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = get_logger(__name__)


class BackoffStrategy(str, Enum):
    """Delay growth between sync attempts."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass
class SyncPolicy:
    """Bounded retry settings for one sync phase."""
    max_attempts: int = 3
    retry_delay_seconds: float = 0.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.FIXED
    max_delay_seconds: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("Sync max attempts must be at least 1")
        if self.retry_delay_seconds < 0:
            raise ValueError("Sync retry delay cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt after `attempt` (1-based)."""
        if self.backoff_strategy == BackoffStrategy.EXPONENTIAL:
            delay = self.retry_delay_seconds * (2 ** (attempt - 1))
        else:
            delay = self.retry_delay_seconds
        return min(delay, self.max_delay_seconds)


class SyncCoordinator:
    """
    Owns the accumulator's save-on-mutate lifecycle and root publication.

    Not thread-safe by itself. RegistryService calls it under its write lock.
    """

    def __init__(
        self,
        accumulator: MerkleAccumulator,
        store: "LedgerStore",
        authority: str,
        policy: Optional[SyncPolicy] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._accumulator = accumulator
        self._store = store
        self._authority = authority
        self._policy = policy or SyncPolicy()
        self._metrics = metrics or get_metrics()
        self._sleep = sleep

    @property
    def accumulator(self) -> MerkleAccumulator:
        return self._accumulator

    @property
    def policy(self) -> SyncPolicy:
        return self._policy

    def on_assigned(
        self,
        all_records: Sequence[AssignmentRecord],
        record: Optional[AssignmentRecord] = None,
    ) -> Optional[str]:
        """
        Sync after a successful assignment.

        Args:
            all_records: Every assignment in append order, including the new one
            record: The assignment that triggered this sync

        Returns:
            The new published root

        Raises:
            SyncPendingError: If a step still fails after all attempts
        """
        return self._sync(all_records, record)

    def reconcile(self, all_records: Sequence[AssignmentRecord]) -> Optional[str]:
        """
        Unconditional rebuild, persist and publish.

        Safe at any time. When already in sync, republishes the same root.

        Returns:
            The published root, or None if there are no assignments yet
        """
        root = self._sync(all_records, None)
        self._metrics.record_reconciliation()
        logger.info("Reconciled accumulator", merkle_root=root, leaf_count=len(all_records))
        return root

    def is_in_sync(self, record_count: int) -> bool:
        """Published root matches the accumulator, which covers every record."""
        return (
            self._accumulator.leaf_count == record_count
            and self._store.get_published_root() == self._accumulator.root
        )

    # ================================================================
    # Internals
    # ================================================================

    def _sync(
        self,
        all_records: Sequence[AssignmentRecord],
        record: Optional[AssignmentRecord],
    ) -> Optional[str]:
        start = time.perf_counter()
        try:
            root = self._retry("rebuild", record, lambda: self._rebuild_and_persist(all_records))
            if root is None:
                logger.debug("No assignments yet, skipping root publication")
                return None
            self._retry("publish", record, lambda: self._publish(root, len(all_records)))
        except SyncPendingError:
            self._metrics.record_sync((time.perf_counter() - start) * 1000, success=False)
            raise

        self._metrics.record_sync((time.perf_counter() - start) * 1000, success=True)
        return root

    def _rebuild_and_persist(self, all_records: Sequence[AssignmentRecord]) -> Optional[str]:
        root = self._accumulator.rebuild(all_records)
        self._accumulator.persist()
        return root

    def _publish(self, root: str, leaf_count: int) -> str:
        self._store.publish_root(root, self._authority, leaf_count)
        logger.info("Merkle root published", merkle_root=root, leaf_count=leaf_count)
        return root

    def _retry(self, phase: str, record: Optional[AssignmentRecord], step: Callable):
        last_error: Optional[Exception] = None

        for attempt in range(1, self._policy.max_attempts + 1):
            try:
                return step()
            except (AccumulatorIOError, RootPublishError) as e:
                last_error = e

            if attempt < self._policy.max_attempts:
                delay = self._policy.delay_for(attempt)
                self._metrics.record_sync_retry()
                logger.warning(
                    "Sync step failed, retrying",
                    phase=phase,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(last_error),
                )
                if delay > 0:
                    self._sleep(delay)

        logger.error(
            "Sync step failed, verification pending until reconcile",
            phase=phase,
            attempts=self._policy.max_attempts,
            error=str(last_error),
        )
        raise SyncPendingError(record, last_error, self._policy.max_attempts)
