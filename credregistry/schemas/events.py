"""
Ledger Event Schema

The authoritative ledger is an append-only event log.
Nothing is edited. Things happen.

Each event:
- Produces a new immutable record
- Is hashed
- Is chained to its predecessor
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from .credential import MAX_CREDENTIAL_TYPE_ID, normalize_address


class EventType(str, Enum):
    """
    All possible event types.
    You can add more later, never remove.
    """
    CREDENTIAL_TYPE_CREATED = "CREDENTIAL_TYPE_CREATED"
    CREDENTIAL_ASSIGNED = "CREDENTIAL_ASSIGNED"
    MERKLE_ROOT_PUBLISHED = "MERKLE_ROOT_PUBLISHED"


# ============================================================
# Event Payloads
# ============================================================

class CredentialTypeCreatedPayload(BaseModel):
    """Payload for CREDENTIAL_TYPE_CREATED."""
    credential_type_id: int = Field(..., ge=0, le=MAX_CREDENTIAL_TYPE_ID)
    name: str = Field(..., min_length=1)
    
    schema_version: int = 1


class CredentialAssignedPayload(BaseModel):
    """Payload for CREDENTIAL_ASSIGNED."""
    user: str
    credential_type_id: int = Field(..., ge=0, le=MAX_CREDENTIAL_TYPE_ID)
    
    schema_version: int = 1
    
    @field_validator("user")
    @classmethod
    def _normalize_user(cls, value: str) -> str:
        return normalize_address(value)


class MerkleRootPublishedPayload(BaseModel):
    """
    Payload for MERKLE_ROOT_PUBLISHED.
    
    Publishing the same root twice is allowed and recorded twice.
    The published-root slot is a set, not an increment.
    """
    merkle_root: str = Field(..., pattern=r"^0x[0-9a-f]{64}$")
    leaf_count: int = Field(..., ge=1)
    
    schema_version: int = 1


# ============================================================
# The Core Event Object
# ============================================================

class LedgerEvent(BaseModel):
    """
    The immutable event record.
    
    Chain Integrity Rules:
    - sequence_number must be monotonically increasing (0, 1, 2, ...)
    - previous_event_hash is None for genesis (sequence 0) and REQUIRED otherwise
    - event_hash must be verifiable from payload + previous_event_hash
    """
    event_id: UUID
    sequence_number: int = Field(..., ge=0)
    event_type: EventType
    payload: dict[str, Any]
    
    previous_event_hash: Optional[str] = Field(
        default=None,
        description="SHA-256 of the previous event. None for genesis only."
    )
    event_hash: str = Field(
        ...,
        description="SHA-256 of canonical payload + previous hash"
    )
    
    created_by: str = Field(..., description="Address of the caller")
    created_at: datetime
    
    @property
    def is_genesis(self) -> bool:
        return self.sequence_number == 0
    
    def validate_chain_rules(self) -> None:
        """
        Validate chain integrity rules.
        
        Raises ValueError if rules are violated.
        """
        if self.sequence_number == 0:
            if self.previous_event_hash is not None:
                raise ValueError(
                    f"Genesis event (sequence 0) must have previous_event_hash=None, "
                    f"got: {self.previous_event_hash}"
                )
        else:
            if self.previous_event_hash is None:
                raise ValueError(
                    f"Non-genesis event (sequence {self.sequence_number}) must have "
                    f"previous_event_hash set, got None"
                )
            if len(self.previous_event_hash) != 64:
                raise ValueError(
                    f"previous_event_hash must be 64 hex characters, "
                    f"got {len(self.previous_event_hash)}"
                )
