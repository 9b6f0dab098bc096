"""
Credential Registry Records

A credential type is a name plus a dense integer id.
An assignment grants one credential type to one user address.

Both are immutable once recorded. There is no update, no revocation.
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator


ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Credential type ids are encoded as uint256 in Merkle leaves
MAX_CREDENTIAL_TYPE_ID = 2**256 - 1


def normalize_address(value: str) -> str:
    """
    Normalize a user address to its canonical form.
    
    Addresses are 20 bytes written as 0x + 40 hex digits.
    Mixed-case (checksummed) spellings map to the same identity.
    
    Raises:
        ValueError: If value is not a well-formed address
    """
    if not isinstance(value, str) or not ADDRESS_PATTERN.match(value):
        raise ValueError(f"Invalid address: {value!r}")
    return value.lower()


def is_address(value: str) -> bool:
    """Check whether value is a well-formed address."""
    return isinstance(value, str) and ADDRESS_PATTERN.match(value) is not None


class CredentialType(BaseModel):
    """
    A named category of credential.
    
    id is the catalog size at creation time: dense, zero-based, never reused.
    """
    model_config = ConfigDict(frozen=True)
    
    id: int = Field(..., ge=0, le=MAX_CREDENTIAL_TYPE_ID)
    name: str = Field(..., min_length=1)


class AssignmentRecord(BaseModel):
    """A recorded grant of a credential type to a user."""
    model_config = ConfigDict(frozen=True)
    
    user: str = Field(..., description="20-byte address, lowercase 0x-hex")
    credential_type_id: int = Field(..., ge=0, le=MAX_CREDENTIAL_TYPE_ID)
    
    @field_validator("user")
    @classmethod
    def _normalize_user(cls, value: str) -> str:
        return normalize_address(value)
    
    @property
    def key(self) -> tuple[str, int]:
        """The (user, credential_type_id) pair identifying this record."""
        return (self.user, self.credential_type_id)
