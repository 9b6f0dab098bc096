"""
Ledger Event Hashing

Deterministic serialization and SHA-256 hashing of ledger event payloads.
Same payload + same previous hash -> same event hash. Always.

If this changes, every stored chain becomes unverifiable.
Changes must be versioned through SERIALIZATION_VERSION.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output
2. Dictionary keys: sorted recursively (Unicode codepoint order)
3. Nulls: omitted entirely
4. Empty strings, lists, dicts: preserved
5. Enums: string value (not name)
6. Integers: arbitrary precision, serialized as JSON integers
7. Floats, bytes, sets: BANNED
8. JSON output: no whitespace, sorted keys, ASCII only
9. Top-level: must be a dict

Merkle leaf hashing is NOT done here. See core/merkle.py.
"""

import hashlib
import hmac
import json
from enum import Enum
from typing import Any


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing for ledger events.

    FORMAT:
    - Genesis: SHA256(canonical_payload)
    - Chained: SHA256(previous_hash + ":" + canonical_payload)
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Floats are banned in canonical payloads. Use int or string."
            )

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        if isinstance(value, (bytes, set)):
            raise CanonicalSerializationError(
                f"Cannot serialize {type(value).__name__} at {path}. "
                "Convert to a hex string or sorted list first."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert a payload to its canonical JSON string.

        Raises:
            CanonicalSerializationError: If data cannot be serialized deterministically
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict, "
                f"got {type(data).__name__}."
            )

        canonical_dict = {
            "__canon_v": cls.SERIALIZATION_VERSION,
            **cls._to_canonical_dict(data),
        }

        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_event(
        cls,
        payload: dict[str, Any],
        previous_hash: str | None = None
    ) -> str:
        """
        Hash an event payload with chain linkage.

        Returns:
            Hex-encoded SHA-256 hash (64 characters, lowercase)
        """
        canonical_payload = cls.canonicalize(payload)

        if previous_hash is None:
            chain_input = canonical_payload
        else:
            if len(previous_hash) != 64 or not all(
                c in "0123456789abcdef" for c in previous_hash.lower()
            ):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash}. "
                    "Must be 64 hex characters."
                )
            chain_input = f"{previous_hash.lower()}:{canonical_payload}"

        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def verify_event_hash(
        cls,
        payload: dict[str, Any],
        expected_hash: str,
        previous_hash: str | None = None
    ) -> bool:
        """Check a payload against its recorded hash."""
        try:
            computed = cls.hash_event(payload, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())
