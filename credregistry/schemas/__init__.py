# Canonical schemas for the credential registry.

from .credential import (
    AssignmentRecord,
    CredentialType,
    MAX_CREDENTIAL_TYPE_ID,
    is_address,
    normalize_address,
)
from .events import (
    CredentialAssignedPayload,
    CredentialTypeCreatedPayload,
    EventType,
    LedgerEvent,
    MerkleRootPublishedPayload,
)

__all__ = [
    # Records
    "AssignmentRecord",
    "CredentialType",
    "MAX_CREDENTIAL_TYPE_ID",
    "is_address",
    "normalize_address",
    # Events
    "LedgerEvent",
    "EventType",
    "CredentialTypeCreatedPayload",
    "CredentialAssignedPayload",
    "MerkleRootPublishedPayload",
]
