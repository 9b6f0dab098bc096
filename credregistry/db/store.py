"""
Ledger Store Abstraction

This module defines the LedgerStore interface and provides two implementations:
- InMemoryLedgerStore: For development and testing
- FileLedgerStore: Durable JSON Lines file, one event per line

The LedgerStore is the authoritative ledger collaborator. It is responsible for:
- Atomic append with sequence number and previous hash assignment
- Ordering and durability guarantees
- Chain head management (single source of truth for sequence/hash)
- The published-root slot that verifiers trust

The registry components retain responsibility for:
- Business rule validation (names, authority, duplicates)
- Projections (catalog, per-user assignments)

TRANSACTION CONTRACT:
All append operations MUST use the begin_append() context manager:

    with store.begin_append() as ctx:
        seq, prev_hash = ctx.head.next_sequence, ctx.head.last_event_hash
        # ... compute hash ...
        ctx.commit(event)

append_event() wraps that flow for callers that only have a payload.
"""

import json
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Generator, Optional
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from ..core.errors import RootPublishError
from ..core.hasher import Hasher
from ..schemas import (
    AssignmentRecord,
    CredentialAssignedPayload,
    EventType,
    LedgerEvent,
    MerkleRootPublishedPayload,
    is_address,
    normalize_address,
)


# ============================================================
# EXCEPTIONS
# ============================================================

class LedgerStoreError(Exception):
    """Base exception for ledger store errors."""
    pass


class ChainIntegrityError(LedgerStoreError):
    """Raised when chain integrity validation fails."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """
    Current state of the chain head.

    This is what gets locked during atomic append.
    """
    last_sequence: int  # -1 means empty ledger
    last_event_hash: Optional[str]  # None means empty ledger

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1


@dataclass
class AppendContext:
    """
    Transaction context for atomic append operations.

    Holds the chain head observed under the store lock. commit() and
    rollback() release that same lock, exactly once.

    Usage:
        with store.begin_append() as ctx:
            event = build_event(ctx.head.next_sequence, ctx.head.last_event_hash, ...)
            ctx.commit(event)
    """
    head: ChainHead
    _store: "LedgerStore"
    _held: bool = field(default=False)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(self, event: LedgerEvent) -> LedgerEvent:
        """
        Commit the event within this transaction context.

        Returns:
            The persisted event
        """
        if self._committed:
            raise LedgerStoreError("Transaction already committed")
        if self._rolled_back:
            raise LedgerStoreError("Transaction already rolled back")

        result = self._store._do_commit(self, event)
        self._committed = True
        return result

    def rollback(self) -> None:
        """Explicitly rollback this transaction."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for the authoritative ledger.

    The LedgerStore is the single source of truth for:
    - Sequence numbers (monotonically increasing)
    - Previous event hashes (chain linkage)
    - Append ordering (concurrency safety)
    - The published Merkle root

    Implementations must ensure:
    1. Atomic append: begin_append context holds the lock until commit/rollback
    2. No gaps in sequence numbers
    3. No duplicate sequence numbers
    4. Chain linkage is always correct

    Only the owner may publish a root. Everyone may read it.
    """

    def __init__(self, owner: str):
        self._owner = normalize_address(owner)
        self._published_root: Optional[str] = None

    @property
    def owner(self) -> str:
        return self._owner

    @contextmanager
    @abstractmethod
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """
        Begin an atomic append operation.

        This context manager:
        1. Acquires the store lock
        2. Returns an AppendContext with the current head state
        3. Auto-rollbacks if the block exits without committing

        Yields:
            AppendContext with head state and commit method
        """
        pass

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, event: LedgerEvent) -> LedgerEvent:
        """Internal: commit within current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def list_all(self) -> list[LedgerEvent]:
        """
        List all events ordered by sequence number.

        Returns:
            List of all events, ordered by sequence_number ascending
        """
        pass

    @abstractmethod
    def get_head(self) -> ChainHead:
        """
        Get current chain head without locking.

        Use this for read-only operations.
        """
        pass

    @abstractmethod
    def get_event_count(self) -> int:
        """Get total number of events in the store."""
        pass

    def describe(self) -> str:
        """Short description for logs and health checks."""
        return type(self).__name__

    # ================================================================
    # Shared append logic
    # ================================================================

    def append_event(
        self,
        event_type: EventType,
        payload: BaseModel | dict[str, Any],
        created_by: str,
    ) -> LedgerEvent:
        """
        Hash, chain and commit one event.

        Sequence number and previous hash come from the locked head,
        never from a cached copy.
        """
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")

        with self.begin_append() as ctx:
            sequence_number = ctx.head.next_sequence
            previous_hash = None if sequence_number == 0 else ctx.head.last_event_hash
            if sequence_number > 0 and previous_hash is None:
                raise ChainIntegrityError(
                    f"Cannot create event with sequence {sequence_number}: "
                    "previous event hash is missing but this is not genesis"
                )

            event = LedgerEvent(
                event_id=uuid4(),
                sequence_number=sequence_number,
                event_type=event_type,
                payload=payload,
                previous_event_hash=previous_hash,
                event_hash=Hasher.hash_event(payload, previous_hash),
                created_by=created_by,
                created_at=datetime.now(timezone.utc),
            )
            event.validate_chain_rules()
            return ctx.commit(event)

    def _check_append(self, head: ChainHead, event: LedgerEvent) -> None:
        """
        Validate an event against the locked head.

        Raises:
            ChainIntegrityError: If sequence, linkage or hash is wrong
        """
        expected_sequence = head.last_sequence + 1

        if event.sequence_number != expected_sequence:
            raise ChainIntegrityError(
                f"Sequence mismatch: expected {expected_sequence}, "
                f"got {event.sequence_number}"
            )

        if expected_sequence == 0:
            if event.previous_event_hash is not None:
                raise ChainIntegrityError(
                    "Genesis event must have previous_event_hash=None"
                )
        elif event.previous_event_hash != head.last_event_hash:
            raise ChainIntegrityError(
                f"Previous hash mismatch: expected {head.last_event_hash}, "
                f"got {event.previous_event_hash}"
            )

        computed_hash = Hasher.hash_event(event.payload, event.previous_event_hash)
        if computed_hash != event.event_hash:
            raise ChainIntegrityError(
                f"Hash verification failed: computed {computed_hash[:16]}..., "
                f"claimed {event.event_hash[:16]}..."
            )

    def _track(self, event: LedgerEvent) -> None:
        """Update derived slots after an event is durably stored."""
        if event.event_type == EventType.MERKLE_ROOT_PUBLISHED:
            self._published_root = event.payload["merkle_root"]

    # ================================================================
    # Registry capabilities
    # ================================================================

    def list_all_records(self) -> list[AssignmentRecord]:
        """Every assignment in append order."""
        records = []
        for event in self.list_all():
            if event.event_type == EventType.CREDENTIAL_ASSIGNED:
                payload = CredentialAssignedPayload.model_validate(event.payload)
                records.append(
                    AssignmentRecord(
                        user=payload.user,
                        credential_type_id=payload.credential_type_id,
                    )
                )
        return records

    def publish_root(self, root: str, caller: str, leaf_count: int) -> LedgerEvent:
        """
        Set the published-root slot.

        Publishing the same root again is allowed and recorded again.

        Raises:
            RootPublishError: If the caller is not the owner or the append fails
        """
        if not is_address(caller) or normalize_address(caller) != self._owner:
            raise RootPublishError(f"Caller {caller} may not publish roots")

        try:
            payload = MerkleRootPublishedPayload(merkle_root=root, leaf_count=leaf_count)
        except ValidationError as e:
            raise RootPublishError(f"Invalid root publication: {e}") from e

        try:
            return self.append_event(
                EventType.MERKLE_ROOT_PUBLISHED,
                payload,
                created_by=normalize_address(caller),
            )
        except LedgerStoreError as e:
            raise RootPublishError(f"Failed to publish root: {e}") from e

    def get_published_root(self) -> Optional[str]:
        """The last published root, or None before the first publish."""
        return self._published_root

    def verify_chain(self) -> None:
        """
        Verify the complete stored chain.

        Raises:
            ChainIntegrityError: At the first broken event
        """
        verify_event_chain(self.list_all())


def verify_event_chain(events: list[LedgerEvent]) -> None:
    """
    Verify a complete event chain.

    Raises:
        ChainIntegrityError: If any validation fails
    """
    prev_hash = None

    for expected_sequence, event in enumerate(events):
        if event.sequence_number != expected_sequence:
            raise ChainIntegrityError(
                f"Sequence number gap or out-of-order event. "
                f"Expected {expected_sequence}, got {event.sequence_number}"
            )

        if event.previous_event_hash != prev_hash:
            raise ChainIntegrityError(
                f"Chain linkage broken at sequence {expected_sequence}. "
                f"Expected previous hash '{prev_hash[:16] if prev_hash else 'None'}...', "
                f"got '{event.previous_event_hash[:16] if event.previous_event_hash else 'None'}...'"
            )

        computed_hash = Hasher.hash_event(event.payload, prev_hash)
        if computed_hash != event.event_hash:
            raise ChainIntegrityError(
                f"Hash verification failed at sequence {expected_sequence}. "
                f"Computed: {computed_hash[:16]}..., "
                f"Stored: {event.event_hash[:16]}..."
            )

        try:
            event.validate_chain_rules()
        except ValueError as e:
            raise ChainIntegrityError(str(e)) from e

        prev_hash = event.event_hash


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    """

    def __init__(self, owner: str):
        super().__init__(owner)
        self._events: list[LedgerEvent] = []
        self._head = ChainHead(last_sequence=-1, last_event_hash=None)
        self._lock = Lock()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """Begin atomic append with thread lock."""
        self._lock.acquire()

        head = ChainHead(
            last_sequence=self._head.last_sequence,
            last_event_hash=self._head.last_event_hash,
        )
        ctx = AppendContext(head=head, _store=self, _held=True)

        try:
            yield ctx
        finally:
            if not ctx._committed and not ctx._rolled_back:
                ctx.rollback()

    def _do_commit(self, ctx: AppendContext, event: LedgerEvent) -> LedgerEvent:
        if not ctx._held:
            raise LedgerStoreError("_do_commit called outside transaction")

        try:
            self._check_append(self._head, event)

            self._events.append(event)
            self._head = ChainHead(
                last_sequence=event.sequence_number,
                last_event_hash=event.event_hash,
            )
            self._track(event)
            return event
        finally:
            ctx._held = False
            self._lock.release()

    def _do_rollback(self, ctx: AppendContext) -> None:
        """Release lock without committing."""
        if ctx._held:
            ctx._held = False
            self._lock.release()

    def list_all(self) -> list[LedgerEvent]:
        return list(self._events)

    def get_head(self) -> ChainHead:
        return ChainHead(
            last_sequence=self._head.last_sequence,
            last_event_hash=self._head.last_event_hash,
        )

    def get_event_count(self) -> int:
        return len(self._events)

    def clear(self) -> None:
        """Clear all events (for testing only)."""
        with self._lock:
            self._events.clear()
            self._head = ChainHead(last_sequence=-1, last_event_hash=None)
            self._published_root = None


# ============================================================
# JSON LINES FILE IMPLEMENTATION
# ============================================================

class FileLedgerStore(InMemoryLedgerStore):
    """
    Durable ledger backed by a JSON Lines file.

    Every committed event is written and fsynced before it becomes visible
    in memory. On open, the whole file is loaded and its chain verified:
    a tampered or truncated file refuses to open.

    Single process only. There is no cross-process file locking.
    """

    def __init__(self, owner: str, path: str | Path):
        super().__init__(owner)
        self._path = Path(path)
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def describe(self) -> str:
        return f"{type(self).__name__}({self._path})"

    def _load(self) -> None:
        if not self._path.exists():
            return

        events = []
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                for line_number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        events.append(LedgerEvent.model_validate_json(line))
                    except ValidationError as e:
                        raise ChainIntegrityError(
                            f"Unreadable event at {self._path}:{line_number}: {e}"
                        ) from e
        except OSError as e:
            raise LedgerStoreError(f"Failed to read ledger from {self._path}: {e}") from e

        verify_event_chain(events)

        for event in events:
            self._events.append(event)
            self._track(event)
        if events:
            self._head = ChainHead(
                last_sequence=events[-1].sequence_number,
                last_event_hash=events[-1].event_hash,
            )

    def _do_commit(self, ctx: AppendContext, event: LedgerEvent) -> LedgerEvent:
        if not ctx._held:
            raise LedgerStoreError("_do_commit called outside transaction")

        try:
            self._check_append(self._head, event)

            line = json.dumps(event.model_dump(mode="json"), sort_keys=True)
            self._append_line(line)

            self._events.append(event)
            self._head = ChainHead(
                last_sequence=event.sequence_number,
                last_event_hash=event.event_hash,
            )
            self._track(event)
            return event
        finally:
            ctx._held = False
            self._lock.release()

    def _append_line(self, line: str) -> None:
        """
        Append one line durably, or leave the file exactly as it was.

        A failed write or fsync truncates back to the previous end of file,
        so an uncommitted event never reaches disk.
        """
        data = memoryview((line + "\n").encode("utf-8"))
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            # Unbuffered, so nothing is left pending to be flushed after a truncate
            with open(self._path, "ab", buffering=0) as f:
                position = f.tell()
                try:
                    while data:
                        data = data[f.write(data):]
                    os.fsync(f.fileno())
                except OSError:
                    f.truncate(position)
                    os.fsync(f.fileno())
                    raise
        except OSError as e:
            raise LedgerStoreError(f"Failed to append to {self._path}: {e}") from e

    def clear(self) -> None:
        raise LedgerStoreError("FileLedgerStore is append-only and cannot be cleared")
