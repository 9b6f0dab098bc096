"""
Merkle Tree for Credential Assignments

Every assignment (user, credential_type_id) becomes one leaf:

    leaf = H(H(encode(user) ++ encode(credential_type_id)))

where H is SHA-256 and encode is the fixed-width ABI word layout:
- user: 32 bytes, 12 zero bytes then the 20-byte address
- credential_type_id: 32 bytes, big-endian unsigned

The double hash keeps leaves from being confused with internal nodes
(second-preimage / leaf-extension).

The layout below is the one OpenZeppelin's StandardMerkleTree uses, but H
here is SHA-256, not keccak256. Roots and proofs are therefore NOT
interchangeable with keccak-based verifiers (Solidity MerkleProof, the
@openzeppelin/merkle-tree JS library). They only verify against this
package and tools/verify.py.

TREE LAYOUT (shared with tools/verify.py, do not reinterpret):
- Leaf hashes are sorted by byte value
- Nodes live in a flat array of size 2n-1, leaves at the end in reverse
- node[i] = hash_pair(node[2i+1], node[2i+2])
- hash_pair(a, b) = H(min(a, b) ++ max(a, b))
- root = node[0]

Because hash_pair is commutative, a proof is just the ordered list of
sibling hashes. No direction bits.
"""

import hashlib
import hmac
from typing import Iterable, Optional, Sequence

LEAF_ENCODING = ("address", "uint256")
TREE_FORMAT = "standard-v1"

WORD_SIZE = 32
ADDRESS_SIZE = 20


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def to_hex(node: bytes) -> str:
    """Render a 32-byte hash as 0x-prefixed lowercase hex."""
    return "0x" + node.hex()


def from_hex(value: str) -> bytes:
    """
    Parse a 0x-prefixed 32-byte hash.

    Raises:
        ValueError: If value is not a 32-byte hex string
    """
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ValueError(f"Hash must be 0x-prefixed hex, got {value!r}")
    raw = bytes.fromhex(value[2:])
    if len(raw) != WORD_SIZE:
        raise ValueError(f"Hash must be {WORD_SIZE} bytes, got {len(raw)}")
    return raw


def encode_address(user: str) -> bytes:
    """Encode a 0x-hex address as a left-padded 32-byte word."""
    raw = bytes.fromhex(user[2:])
    if len(raw) != ADDRESS_SIZE:
        raise ValueError(f"Address must be {ADDRESS_SIZE} bytes, got {len(raw)}")
    return raw.rjust(WORD_SIZE, b"\x00")


def encode_uint256(value: int) -> bytes:
    """Encode a non-negative integer as a 32-byte big-endian word."""
    if value < 0:
        raise ValueError(f"uint256 cannot be negative: {value}")
    return value.to_bytes(WORD_SIZE, "big")


def leaf_hash(user: str, credential_type_id: int) -> bytes:
    """Derive the leaf for one (user, credential_type_id) assignment."""
    encoded = encode_address(user) + encode_uint256(credential_type_id)
    return _sha256(_sha256(encoded))


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Commutative node hash: order the pair before hashing."""
    if a <= b:
        return _sha256(a + b)
    return _sha256(b + a)


def _left_child(i: int) -> int:
    return 2 * i + 1


def _parent(i: int) -> int:
    return (i - 1) // 2


def _sibling(i: int) -> int:
    return i + 1 if i % 2 == 1 else i - 1


class MerkleTree:
    """
    Complete binary Merkle tree over a list of leaf hashes.

    The tree owns the node array. Leaf positions inside the array are
    reported back to the caller through tree_index_of().
    """

    def __init__(self, leaves: Sequence[bytes], sort_leaves: bool = True):
        if not leaves:
            raise ValueError("Cannot create Merkle tree with no leaves")

        order = list(range(len(leaves)))
        if sort_leaves:
            order.sort(key=lambda i: leaves[i])

        size = 2 * len(leaves) - 1
        nodes: list[Optional[bytes]] = [None] * size
        self._tree_index: list[int] = [0] * len(leaves)

        for position, leaf_index in enumerate(order):
            tree_index = size - 1 - position
            nodes[tree_index] = leaves[leaf_index]
            self._tree_index[leaf_index] = tree_index

        for i in range(size - 1 - len(leaves), -1, -1):
            nodes[i] = hash_pair(nodes[_left_child(i)], nodes[_left_child(i) + 1])

        self._nodes: list[bytes] = nodes  # type: ignore[assignment]

    @classmethod
    def from_nodes(cls, nodes: Sequence[bytes], tree_indices: Sequence[int]) -> "MerkleTree":
        """
        Rebuild a tree from a stored node array.

        Validates that the array is a well-formed tree: every internal node
        is the hash of its children and every leaf index points at a leaf.

        Raises:
            ValueError: If the stored tree is inconsistent
        """
        size = len(nodes)
        if size == 0 or size % 2 == 0:
            raise ValueError(f"Invalid tree size: {size}")
        leaf_count = (size + 1) // 2
        if len(tree_indices) != leaf_count:
            raise ValueError(
                f"Tree with {size} nodes needs {leaf_count} values, got {len(tree_indices)}"
            )

        for i in range(size - leaf_count):
            if nodes[i] != hash_pair(nodes[_left_child(i)], nodes[_left_child(i) + 1]):
                raise ValueError(f"Merkle tree node {i} does not match its children")

        first_leaf = size - leaf_count
        if sorted(tree_indices) != list(range(first_leaf, size)):
            raise ValueError("Tree indices do not cover the leaf nodes exactly once")

        tree = cls.__new__(cls)
        tree._nodes = list(nodes)
        tree._tree_index = list(tree_indices)
        return tree

    @property
    def root(self) -> bytes:
        return self._nodes[0]

    @property
    def nodes(self) -> list[bytes]:
        return list(self._nodes)

    @property
    def leaf_count(self) -> int:
        return len(self._tree_index)

    def tree_index_of(self, leaf_index: int) -> int:
        """Position in the node array of the leaf_index-th input leaf."""
        return self._tree_index[leaf_index]

    def leaf_at(self, leaf_index: int) -> bytes:
        return self._nodes[self._tree_index[leaf_index]]

    def get_proof(self, leaf_index: int) -> list[bytes]:
        """
        Sibling hashes from the leaf up to (not including) the root.

        Raises:
            IndexError: If leaf_index is outside the tree
        """
        if leaf_index < 0 or leaf_index >= len(self._tree_index):
            raise IndexError(f"Leaf index {leaf_index} out of range")

        proof = []
        i = self._tree_index[leaf_index]
        while i > 0:
            proof.append(self._nodes[_sibling(i)])
            i = _parent(i)
        return proof

    @staticmethod
    def process_proof(leaf: bytes, proof: Iterable[bytes]) -> bytes:
        """Fold a proof into the root it implies."""
        current = leaf
        for sibling in proof:
            current = hash_pair(current, sibling)
        return current

    @staticmethod
    def verify_proof(leaf: bytes, proof: Iterable[bytes], expected_root: bytes) -> bool:
        """
        Verify a Merkle proof.

        Anyone can check inclusion with just the leaf, the proof, and the root.
        """
        computed = MerkleTree.process_proof(leaf, proof)
        return hmac.compare_digest(computed, expected_root)


def verify_hex_proof(
    user: str,
    credential_type_id: int,
    proof: Sequence[str],
    root: Optional[str],
) -> bool:
    """
    Check a 0x-hex proof for an assignment against a 0x-hex root.

    Returns False, never raises, on malformed input or a missing root.
    """
    if root is None:
        return False
    try:
        leaf = leaf_hash(user, credential_type_id)
        siblings = [from_hex(p) for p in proof]
        expected = from_hex(root)
    except (ValueError, TypeError, OverflowError):
        return False
    return MerkleTree.verify_proof(leaf, siblings, expected)
