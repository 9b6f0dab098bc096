"""
Credential Type Registry

The catalog of credential types. Append-only: a type, once created,
keeps its id and name forever.

Rules (enforced in code):
- Only the authority may create types
- Names pass NameValidator against the current catalog
- ids are dense and zero-based: the new id is the catalog size
"""

from typing import Optional, TYPE_CHECKING

from ..schemas import (
    CredentialType,
    CredentialTypeCreatedPayload,
    EventType,
    LedgerEvent,
    is_address,
    normalize_address,
)
from .errors import UnknownCredentialType, Unauthorized
from .names import NameValidator
from ..observability import get_logger

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = get_logger(__name__)

DEFAULT_MAX_NAME_LENGTH = 100


def is_authority(caller: Optional[str], authority: str) -> bool:
    """Capability check: does caller identify as the authority?"""
    return (
        caller is not None
        and is_address(caller)
        and normalize_address(caller) == authority
    )


def require_authority(caller: Optional[str], authority: str) -> str:
    """
    Return the normalized caller if it is the authority.

    Raises:
        Unauthorized: For any other caller, including malformed ones
    """
    if not is_authority(caller, authority):
        raise Unauthorized(str(caller))
    return authority


class CredentialTypeRegistry:
    """
    Projection of CREDENTIAL_TYPE_CREATED events plus the create operation.

    The ledger store is written first. The in-memory catalog only changes
    after the event is durably committed.
    """

    def __init__(
        self,
        store: "LedgerStore",
        authority: str,
        max_name_length: int = DEFAULT_MAX_NAME_LENGTH,
    ):
        if max_name_length <= 0:
            raise ValueError("Max name length must be greater than zero")

        self._store = store
        self._authority = normalize_address(authority)
        self._max_name_length = max_name_length
        self._types: list[CredentialType] = []
        self._names: set[str] = set()

    @property
    def authority(self) -> str:
        return self._authority

    @property
    def max_name_length(self) -> int:
        return self._max_name_length

    def create(self, caller: str, name: str) -> CredentialType:
        """
        Create a new credential type.

        Raises:
            Unauthorized: If caller is not the authority
            NameInvalid: If the name breaks a naming rule
        """
        caller = require_authority(caller, self._authority)
        NameValidator.validate(name, self._max_name_length, self._names)

        payload = CredentialTypeCreatedPayload(
            credential_type_id=len(self._types),
            name=name,
        )
        event = self._store.append_event(
            EventType.CREDENTIAL_TYPE_CREATED,
            payload,
            created_by=caller,
        )
        credential_type = self.apply(event)

        logger.info(
            "Credential type created",
            credential_type_id=credential_type.id,
            credential_type_name=credential_type.name,
            sequence_number=event.sequence_number,
        )
        return credential_type

    def get(self, credential_type_id: int) -> CredentialType:
        """
        Raises:
            UnknownCredentialType: If no type has that id
        """
        if not self.exists(credential_type_id):
            raise UnknownCredentialType(credential_type_id)
        return self._types[credential_type_id]

    def exists(self, credential_type_id: int) -> bool:
        return 0 <= credential_type_id < len(self._types)

    def count(self) -> int:
        return len(self._types)

    def list(self) -> list[CredentialType]:
        """All credential types in id order."""
        return list(self._types)

    def names(self) -> frozenset[str]:
        return frozenset(self._names)

    # ================================================================
    # Replay
    # ================================================================

    def apply(self, event: LedgerEvent) -> CredentialType:
        """
        Fold one CREDENTIAL_TYPE_CREATED event into the catalog.

        Raises:
            ValueError: If the event does not extend the catalog densely
        """
        payload = CredentialTypeCreatedPayload.model_validate(event.payload)
        if payload.credential_type_id != len(self._types):
            raise ValueError(
                f"Credential type id {payload.credential_type_id} does not "
                f"follow catalog of size {len(self._types)}"
            )
        if payload.name in self._names:
            raise ValueError(f"Duplicate credential type name in ledger: {payload.name!r}")

        credential_type = CredentialType(id=payload.credential_type_id, name=payload.name)
        self._types.append(credential_type)
        self._names.add(credential_type.name)
        return credential_type

    def load_from_store(self) -> int:
        """
        Rebuild the catalog by replaying the ledger.

        Returns:
            Number of credential types loaded
        """
        self._types.clear()
        self._names.clear()
        for event in self._store.list_all():
            if event.event_type == EventType.CREDENTIAL_TYPE_CREATED:
                self.apply(event)
        return len(self._types)
