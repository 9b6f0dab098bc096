"""
Registry error taxonomy.

Authorization and validation errors surface to the caller unchanged.
Sync-phase errors (AccumulatorIOError, RootPublishError) are retried by the
SyncCoordinator and, once attempts run out, surface as SyncPendingError.
Verification never raises; a failed proof is just False.
"""

from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ..schemas import AssignmentRecord


class RegistryError(Exception):
    """Base exception for registry errors."""
    pass


class Unauthorized(RegistryError):
    """Raised when the caller is not the registry authority."""
    
    def __init__(self, caller: str):
        self.caller = caller
        super().__init__(f"Caller {caller} is not the registry authority")


class NameRejection(str, Enum):
    """Why a credential type name was refused, in check order."""
    EMPTY = "Credential name cannot be empty"
    NOT_ASCII = "Credential name must be ASCII"
    TOO_LONG = "Credential name exceeds character limit"
    NOT_UNIQUE = "Credential name must be unique"


class NameInvalid(RegistryError):
    """Raised when a candidate credential type name fails validation."""
    
    def __init__(self, reason: NameRejection):
        self.reason = reason
        super().__init__(reason.value)


class UnknownCredentialType(RegistryError):
    """Raised when a credential type id does not exist in the catalog."""
    
    def __init__(self, credential_type_id: int):
        self.credential_type_id = credential_type_id
        super().__init__(f"Invalid credential type ID: {credential_type_id}")


class DuplicateAssignment(RegistryError):
    """
    Raised when a user already holds the credential type.
    
    Callers may treat this as success-equivalent: the end state
    already matches their intent.
    """
    
    def __init__(self, user: str, credential_type_id: int):
        self.user = user
        self.credential_type_id = credential_type_id
        super().__init__(
            f"Credential already assigned: {credential_type_id} to {user}"
        )


class UnknownLeaf(RegistryError):
    """Raised when a proof is requested for a leaf the accumulator does not hold."""
    pass


class AccumulatorIOError(RegistryError):
    """Raised when accumulator state cannot be persisted or loaded."""
    pass


class RootPublishError(RegistryError):
    """Raised when the ledger refuses or fails to publish a Merkle root."""
    pass


class SyncPendingError(RegistryError):
    """
    The assignment is recorded, but verification is temporarily unavailable.
    
    The ledger record is NOT rolled back. The accumulator can always be
    recovered from it with reconcile().
    """
    
    def __init__(
        self,
        record: Optional["AssignmentRecord"],
        last_error: Exception,
        attempts: int,
    ):
        self.record = record
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            "Assignment recorded, verification temporarily unavailable "
            f"(sync failed after {attempts} attempts: {last_error})"
        )
