"""
Merkle Accumulator

The derived cryptographic index over every assignment in the ledger.

It has no identity of its own beyond its leaf set. It is always fully
rebuildable from the ledger's assignment records, and rebuilding from the
same record list always yields the same leaves and the same root.

LIFECYCLE:
    accumulator = MerkleAccumulator(store)
    accumulator.load()                 # on start
    root = accumulator.rebuild(records)
    accumulator.persist()              # after every mutation

KEY CAPABILITY:
    "Given (user, credential_type_id), prove it is in root R"
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Sequence

from ..schemas import AssignmentRecord, normalize_address
from .errors import AccumulatorIOError, UnknownLeaf
from .merkle import (
    LEAF_ENCODING,
    TREE_FORMAT,
    MerkleTree,
    from_hex,
    leaf_hash,
    to_hex,
)

if TYPE_CHECKING:
    from ..db.accumulator_store import AccumulatorStore


@dataclass(frozen=True)
class _Snapshot:
    """One consistent view of the accumulator. Replaced whole, never mutated."""
    tree: Optional[MerkleTree]
    values: tuple[tuple[str, int], ...]
    index: dict[tuple[str, int], int] = field(default_factory=dict)

    @property
    def root(self) -> Optional[str]:
        return to_hex(self.tree.root) if self.tree is not None else None


_EMPTY = _Snapshot(tree=None, values=())


class MerkleAccumulator:
    """
    Set-membership index over all (user, credential_type_id) pairs.

    Values are kept in append order. Leaf index N is the N-th record the
    accumulator was built over. Tree shape depends on the sorted leaf hashes,
    which are a pure function of the record list.

    Readers always see a complete snapshot: rebuild() builds the new tree
    off to the side and swaps it in with a single assignment.
    """

    def __init__(self, store: Optional["AccumulatorStore"] = None, sort_leaves: bool = True):
        self._store = store
        self._sort_leaves = sort_leaves
        self._snapshot: _Snapshot = _EMPTY

    @property
    def store(self) -> Optional["AccumulatorStore"]:
        return self._store

    @property
    def root(self) -> Optional[str]:
        """Current root as 0x-hex, or None when built over nothing."""
        return self._snapshot.root

    @property
    def leaf_count(self) -> int:
        return len(self._snapshot.values)

    @property
    def values(self) -> list[tuple[str, int]]:
        return list(self._snapshot.values)

    # ================================================================
    # Building
    # ================================================================

    def rebuild(self, records: Sequence[AssignmentRecord]) -> Optional[str]:
        """
        Rebuild the full leaf set from scratch.

        Args:
            records: Every assignment, in ledger append order

        Returns:
            The new root, or None if records is empty

        Raises:
            ValueError: If the same (user, credential_type_id) appears twice
        """
        values = tuple(r.key for r in records)
        self._snapshot = self._build_snapshot(values)
        return self._snapshot.root

    def _build_snapshot(self, values: tuple[tuple[str, int], ...]) -> _Snapshot:
        index: dict[tuple[str, int], int] = {}
        for i, value in enumerate(values):
            if value in index:
                raise ValueError(
                    f"Duplicate assignment in record list: {value[0]} / {value[1]}"
                )
            index[value] = i

        if not values:
            return _EMPTY

        leaves = [leaf_hash(user, type_id) for user, type_id in values]
        tree = MerkleTree(leaves, sort_leaves=self._sort_leaves)
        return _Snapshot(tree=tree, values=values, index=index)

    def matches(self, records: Sequence[AssignmentRecord]) -> bool:
        """True if the accumulator was built over exactly these records, in order."""
        return self._snapshot.values == tuple(r.key for r in records)

    # ================================================================
    # Proofs
    # ================================================================

    def index_of(self, user: str, credential_type_id: int) -> Optional[int]:
        try:
            key = (normalize_address(user), credential_type_id)
        except ValueError:
            return None
        return self._snapshot.index.get(key)

    def contains(self, user: str, credential_type_id: int) -> bool:
        return self.index_of(user, credential_type_id) is not None

    def proof(self, leaf_index: int) -> list[str]:
        """
        Inclusion proof for the leaf_index-th record.

        Raises:
            UnknownLeaf: If the accumulator was not built over that index
        """
        snapshot = self._snapshot
        if snapshot.tree is None or not 0 <= leaf_index < len(snapshot.values):
            raise UnknownLeaf(
                f"No leaf at index {leaf_index} "
                f"(accumulator holds {len(snapshot.values)} leaves)"
            )
        return [to_hex(h) for h in snapshot.tree.get_proof(leaf_index)]

    def proof_for(self, user: str, credential_type_id: int) -> list[str]:
        """
        Inclusion proof for an assignment.

        Raises:
            UnknownLeaf: If the assignment is not in the accumulator
        """
        snapshot = self._snapshot
        leaf_index = self.index_of(user, credential_type_id)
        if leaf_index is None or snapshot.tree is None:
            raise UnknownLeaf(
                f"No leaf for credential type {credential_type_id} and user {user}"
            )
        return [to_hex(h) for h in snapshot.tree.get_proof(leaf_index)]

    # ================================================================
    # Persistence
    # ================================================================

    def dump(self) -> dict[str, Any]:
        """Serialize the full tree in the standard-v1 format."""
        snapshot = self._snapshot
        tree = snapshot.tree
        return {
            "format": TREE_FORMAT,
            "leafEncoding": list(LEAF_ENCODING),
            "tree": [to_hex(n) for n in tree.nodes] if tree is not None else [],
            "values": [
                {
                    "value": [user, str(type_id)],
                    "treeIndex": tree.tree_index_of(i),
                }
                for i, (user, type_id) in enumerate(snapshot.values)
            ] if tree is not None else [],
        }

    @classmethod
    def _parse_dump(cls, data: dict[str, Any]) -> _Snapshot:
        if data.get("format") != TREE_FORMAT:
            raise ValueError(f"Unknown tree format: {data.get('format')!r}")
        if list(data.get("leafEncoding", [])) != list(LEAF_ENCODING):
            raise ValueError(f"Unexpected leaf encoding: {data.get('leafEncoding')!r}")

        raw_values = data.get("values", [])
        raw_tree = data.get("tree", [])
        if not raw_values and not raw_tree:
            return _EMPTY

        values = []
        tree_indices = []
        for entry in raw_values:
            user, type_id = entry["value"]
            values.append((normalize_address(user), int(type_id)))
            tree_indices.append(int(entry["treeIndex"]))

        nodes = [from_hex(n) for n in raw_tree]
        tree = MerkleTree.from_nodes(nodes, tree_indices)

        index: dict[tuple[str, int], int] = {}
        for i, (user, type_id) in enumerate(values):
            if tree.leaf_at(i) != leaf_hash(user, type_id):
                raise ValueError(f"Stored leaf {i} does not match its value")
            if (user, type_id) in index:
                raise ValueError(f"Duplicate value in stored tree: {user} / {type_id}")
            index[(user, type_id)] = i

        return _Snapshot(tree=tree, values=tuple(values), index=index)

    def persist(self) -> None:
        """
        Save the full tree to the accumulator store.

        Raises:
            AccumulatorIOError: If no store is configured or the write fails
        """
        if self._store is None:
            raise AccumulatorIOError("No accumulator store configured")
        self._store.save(self.dump())

    def load(self) -> bool:
        """
        Restore the tree from the accumulator store.

        Returns:
            True if a dump was loaded, False if the store was empty

        Raises:
            AccumulatorIOError: If the store is unreadable or the dump is corrupt
        """
        if self._store is None:
            raise AccumulatorIOError("No accumulator store configured")

        data = self._store.load()
        if data is None:
            return False

        try:
            snapshot = self._parse_dump(data)
        except (KeyError, TypeError, ValueError) as e:
            raise AccumulatorIOError(f"Corrupt accumulator dump: {e}") from e

        self._snapshot = snapshot
        return True
