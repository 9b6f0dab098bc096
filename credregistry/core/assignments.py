"""
Assignment Ledger

Projection of CREDENTIAL_ASSIGNED events plus the assign operation.

Each user's assignments are indexed by credential type id, so the
duplicate check costs O(1) against that user's own records and never
scans the whole ledger.
"""

from typing import TYPE_CHECKING

from ..schemas import (
    AssignmentRecord,
    CredentialAssignedPayload,
    CredentialType,
    EventType,
    LedgerEvent,
    is_address,
    normalize_address,
)
from .errors import DuplicateAssignment, UnknownCredentialType
from .registry import CredentialTypeRegistry, require_authority
from ..observability import get_logger

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = get_logger(__name__)


class AssignmentLedger:
    """Grants credential types to users. No revocation."""

    def __init__(self, store: "LedgerStore", registry: CredentialTypeRegistry):
        self._store = store
        self._registry = registry
        self._records: list[AssignmentRecord] = []
        # user -> {credential_type_id: record}, insertion ordered
        self._by_user: dict[str, dict[int, AssignmentRecord]] = {}

    def assign(self, caller: str, user: str, credential_type_id: int) -> AssignmentRecord:
        """
        Record that user holds credential_type_id.

        Raises:
            Unauthorized: If caller is not the authority
            UnknownCredentialType: If the type does not exist
            DuplicateAssignment: If the user already holds the type
            ValueError: If user is not a well-formed address
        """
        caller = require_authority(caller, self._registry.authority)

        if not self._registry.exists(credential_type_id):
            raise UnknownCredentialType(credential_type_id)

        user = normalize_address(user)
        if credential_type_id in self._by_user.get(user, {}):
            raise DuplicateAssignment(user, credential_type_id)

        payload = CredentialAssignedPayload(user=user, credential_type_id=credential_type_id)
        event = self._store.append_event(
            EventType.CREDENTIAL_ASSIGNED,
            payload,
            created_by=caller,
        )
        record = self.apply(event)

        logger.info(
            "Credential assigned",
            user=record.user,
            credential_type_id=record.credential_type_id,
            sequence_number=event.sequence_number,
        )
        return record

    def has(self, user: str, credential_type_id: int) -> bool:
        if not is_address(user):
            return False
        return credential_type_id in self._by_user.get(normalize_address(user), {})

    def list_for_user(self, user: str) -> list[CredentialType]:
        """The user's credential types, in assignment order."""
        if not is_address(user):
            return []
        held = self._by_user.get(normalize_address(user), {})
        # Copy the ids before reading them, since assign() may add to held meanwhile
        type_ids = list(held)
        return [self._registry.get(type_id) for type_id in type_ids]

    def list_all_records(self) -> list[AssignmentRecord]:
        """Every assignment in append order."""
        return list(self._records)

    def count(self) -> int:
        return len(self._records)

    # ================================================================
    # Replay
    # ================================================================

    def apply(self, event: LedgerEvent) -> AssignmentRecord:
        """
        Fold one CREDENTIAL_ASSIGNED event into the projection.

        Raises:
            ValueError: If the event names an unknown type or repeats an assignment
        """
        payload = CredentialAssignedPayload.model_validate(event.payload)
        if not self._registry.exists(payload.credential_type_id):
            raise ValueError(
                f"Assignment of unknown credential type {payload.credential_type_id} in ledger"
            )

        held = self._by_user.setdefault(payload.user, {})
        if payload.credential_type_id in held:
            raise ValueError(
                f"Duplicate assignment in ledger: {payload.credential_type_id} to {payload.user}"
            )

        record = AssignmentRecord(user=payload.user, credential_type_id=payload.credential_type_id)
        held[record.credential_type_id] = record
        self._records.append(record)
        return record

    def load_from_store(self) -> int:
        """
        Rebuild assignments by replaying the ledger.

        The registry must already be loaded: assignments reference its ids.

        Returns:
            Number of assignments loaded
        """
        self._records.clear()
        self._by_user.clear()
        for event in self._store.list_all():
            if event.event_type == EventType.CREDENTIAL_ASSIGNED:
                self.apply(event)
        return len(self._records)
