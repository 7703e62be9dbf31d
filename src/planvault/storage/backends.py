"""
Key-value storage adapters for persistence slots.

The persistence store never touches ambient global storage. It is given
an object implementing the KeyValueStore protocol:

    get(key) -> bytes | None
    set(key, value)
    delete(key)
    keys() -> list[str]

Two adapters ship with PlanVault:
    - MemoryKeyValueStore: process-local dict, for tests and ephemeral hosts
    - FileKeyValueStore: one file per key in a directory, atomic writes,
      owner-only permissions
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from planvault.errors import StorageIOError

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal byte-oriented key-value capability."""

    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryKeyValueStore:
    """In-memory key-value store."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class FileKeyValueStore:
    """
    Directory-backed key-value store.

    Each key is stored as ``<directory>/<key>.json``. Writes go to a
    temporary file in the same directory and are renamed into place, so a
    key is either fully written or untouched.

    Attributes:
        directory: Directory holding the slot files.
    """

    SUFFIX = ".json"

    def __init__(self, directory: Path | str) -> None:
        """
        Initialize the store, creating the directory if needed.

        Args:
            directory: Directory for slot files.

        Raises:
            StorageIOError: If the directory cannot be created.
        """
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create storage directory {self.directory}: {e}") from e
        try:
            # Owner-only access (Unix)
            os.chmod(self.directory, 0o700)
        except OSError:
            # Windows or permission error - continue anyway
            pass

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageIOError(f"Cannot read {path}: {e}") from e

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{key}.",
                suffix=".tmp",
                dir=str(self.directory),
            )
        except OSError as e:
            raise StorageIOError(f"Cannot write {path}: {e}") from e

        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                pass
            os.replace(temp_path, path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise StorageIOError(f"Cannot write {path}: {e}") from e

        logger.debug(f"Wrote {len(value):,} bytes to {path.name}")

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageIOError(f"Cannot delete {path}: {e}") from e

    def keys(self) -> list[str]:
        return sorted(
            path.name[: -len(self.SUFFIX)]
            for path in self.directory.glob(f"*{self.SUFFIX}")
            if not path.name.startswith(".")
        )

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}{self.SUFFIX}"
