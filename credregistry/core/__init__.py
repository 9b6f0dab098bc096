# Core registry services
from .errors import (
    RegistryError,
    Unauthorized,
    NameRejection,
    NameInvalid,
    UnknownCredentialType,
    DuplicateAssignment,
    UnknownLeaf,
    AccumulatorIOError,
    RootPublishError,
    SyncPendingError,
)
from .hasher import Hasher, CanonicalSerializationError
from .names import NameValidator
from .merkle import MerkleTree, leaf_hash, verify_hex_proof
from .accumulator import MerkleAccumulator
from .registry import CredentialTypeRegistry, is_authority, require_authority
from .assignments import AssignmentLedger
from .sync import SyncCoordinator, SyncPolicy, BackoffStrategy
from .verification import VerificationService

# RegistryService lives in .service and is imported from there: it depends
# on the db layer, which itself imports from this package.

__all__ = [
    "RegistryError",
    "Unauthorized",
    "NameRejection",
    "NameInvalid",
    "UnknownCredentialType",
    "DuplicateAssignment",
    "UnknownLeaf",
    "AccumulatorIOError",
    "RootPublishError",
    "SyncPendingError",
    "Hasher",
    "CanonicalSerializationError",
    "NameValidator",
    "MerkleTree",
    "leaf_hash",
    "verify_hex_proof",
    "MerkleAccumulator",
    "CredentialTypeRegistry",
    "is_authority",
    "require_authority",
    "AssignmentLedger",
    "SyncCoordinator",
    "SyncPolicy",
    "BackoffStrategy",
    "VerificationService",
]
