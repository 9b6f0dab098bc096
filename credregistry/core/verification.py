"""
Verification Service

A credential verifies only if BOTH hold:
- the authoritative ledger says the assignment exists, and
- the proof takes the assignment's leaf to the currently published root.

The proof alone only shows membership in some tree. The ledger check
ties it to the registry's present state.

Never raises. Unknown records, unset roots, stale proofs and malformed
input are all just False, so callers cannot tell them apart.
"""

from typing import Any, Optional, TYPE_CHECKING

from .assignments import AssignmentLedger
from .merkle import verify_hex_proof
from ..observability import MetricsCollector, get_logger, get_metrics

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = get_logger(__name__)


class VerificationService:
    """Read-only. Takes no locks."""

    def __init__(
        self,
        assignments: AssignmentLedger,
        store: "LedgerStore",
        metrics: Optional[MetricsCollector] = None,
    ):
        self._assignments = assignments
        self._store = store
        self._metrics = metrics or get_metrics()

    def verify(self, user: str, credential_type_id: int, proof: Any) -> bool:
        accepted = self._check(user, credential_type_id, proof)
        self._metrics.record_verification(accepted)
        logger.debug(
            "Credential verification",
            user=user,
            credential_type_id=credential_type_id,
            accepted=accepted,
        )
        return accepted

    def _check(self, user: str, credential_type_id: Any, proof: Any) -> bool:
        if not isinstance(credential_type_id, int) or isinstance(credential_type_id, bool):
            return False
        if not isinstance(proof, (list, tuple)):
            return False
        if not self._assignments.has(user, credential_type_id):
            return False

        root = self._store.get_published_root()
        return verify_hex_proof(user, credential_type_id, proof, root)
