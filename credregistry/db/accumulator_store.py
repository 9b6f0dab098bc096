"""
Accumulator Storage

Durable home for the Merkle accumulator dump.

The FULL tree is stored, not only the root: issuing proofs needs every node.
The dump is plain JSON in the standard-v1 tree format, so it can be shipped to
and loaded by independent verifiers.

Implementations:
- InMemoryAccumulatorStore: development and testing
- FileAccumulatorStore: a single JSON file, replaced atomically on save
"""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from ..core.errors import AccumulatorIOError


class AccumulatorStore(ABC):
    """
    Abstract storage for accumulator dumps.

    save() must be all-or-nothing: after a failed save, load() returns the
    previous dump, never a partial one.
    """

    @abstractmethod
    def save(self, dump: dict[str, Any]) -> None:
        """
        Persist a dump, replacing any previous one.

        Raises:
            AccumulatorIOError: If the dump could not be written
        """
        pass

    @abstractmethod
    def load(self) -> Optional[dict[str, Any]]:
        """
        Load the last saved dump.

        Returns:
            The dump, or None if nothing has been saved yet

        Raises:
            AccumulatorIOError: If stored data exists but cannot be read
        """
        pass

    def describe(self) -> str:
        """Short description for logs and health checks."""
        return type(self).__name__


class InMemoryAccumulatorStore(AccumulatorStore):
    """
    In-memory accumulator store.

    Dumps are copied through JSON on the way in and out so callers can
    never mutate stored state by reference.
    """

    def __init__(self):
        self._data: Optional[str] = None
        self._lock = Lock()

    def save(self, dump: dict[str, Any]) -> None:
        try:
            encoded = json.dumps(dump, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise AccumulatorIOError(f"Accumulator dump is not serializable: {e}") from e
        with self._lock:
            self._data = encoded

    def load(self) -> Optional[dict[str, Any]]:
        with self._lock:
            data = self._data
        if data is None:
            return None
        return json.loads(data)

    def clear(self) -> None:
        """Drop the stored dump (for testing only)."""
        with self._lock:
            self._data = None


class FileAccumulatorStore(AccumulatorStore):
    """
    JSON file accumulator store.

    Writes go to a temporary file in the same directory, are fsynced, and
    then renamed over the target. A crash mid-save leaves the old dump intact.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def describe(self) -> str:
        return f"{type(self).__name__}({self._path})"

    def save(self, dump: dict[str, Any]) -> None:
        try:
            encoded = json.dumps(dump, indent=2, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise AccumulatorIOError(f"Accumulator dump is not serializable: {e}") from e

        with self._lock:
            tmp_name = None
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    prefix=f".{self._path.name}.",
                    suffix=".tmp",
                    dir=str(self._path.parent),
                )
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(encoded)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._path)
                tmp_name = None
            except OSError as e:
                raise AccumulatorIOError(
                    f"Failed to write accumulator to {self._path}: {e}"
                ) from e
            finally:
                if tmp_name is not None and os.path.exists(tmp_name):
                    os.unlink(tmp_name)

    def load(self) -> Optional[dict[str, Any]]:
        with self._lock:
            if not self._path.exists():
                return None
            try:
                with open(self._path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                raise AccumulatorIOError(
                    f"Failed to read accumulator from {self._path}: {e}"
                ) from e
