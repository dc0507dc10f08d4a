"""Physical storage backends for the hybrid cache.

Two backends share one small interface:

- ``DirectoryBackend`` keeps one file per key under the cache root plus an
  ``index.json`` metadata sidecar.
- ``RecordBackend`` keeps payloads and metadata in the DuckDB record database.

Backend methods are blocking; ``HybridCache`` runs them in worker threads.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote

from pydantic import ValidationError

from ..errors import storage_error_from_os
from ..models.cache import CacheEntry
from .records import RecordStore

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
DATA_DIR = "data"


class StorageBackend(ABC):
    """Key/value storage with a persisted metadata index."""

    name: str = ""

    @property
    @abstractmethod
    def location(self) -> str:
        """Human readable path of the store."""

    @abstractmethod
    def read(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when the key is absent."""

    @abstractmethod
    def write(self, entry: CacheEntry, payload: bytes) -> None:
        """Store ``payload`` under ``entry.cache_key``, replacing any prior value."""

    @abstractmethod
    def remove(self, key: str) -> bool:
        """Delete a key. Returns False when it did not exist."""

    @abstractmethod
    def load_index(self) -> Dict[str, CacheEntry]:
        """Read the persisted metadata of every stored key."""

    @abstractmethod
    def clear(self) -> None:
        """Delete every key."""

    @abstractmethod
    def used_bytes(self) -> int:
        """Bytes occupied on disk by this backend."""


def _atomic_write(path: Path, data: bytes) -> None:
    """Write a file via tempfile, fsync and rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class DirectoryBackend(StorageBackend):
    """One file per key under ``<root>/data/<type>/``."""

    name = "directory"

    def __init__(self, root_dir: str):
        self.root = Path(root_dir).expanduser()
        self.index_path = self.root / INDEX_FILE
        self._index: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def location(self) -> str:
        return str(self.root)

    def probe(self) -> None:
        """Check that the root is writable and supports atomic rename.

        Raises:
            OSError: the directory backend cannot be used here
        """
        self.root.mkdir(parents=True, exist_ok=True)
        probe_path = self.root / ".probe"
        _atomic_write(probe_path, b"ok")
        try:
            if probe_path.read_bytes() != b"ok":
                raise OSError(f"Probe file in {self.root} read back incorrectly")
        finally:
            probe_path.unlink()

    def _path_for(self, entry_type: str, key: str) -> Path:
        return self.root / DATA_DIR / entry_type / (quote(key, safe="") + ".bin")

    def _find_path(self, key: str) -> Optional[Path]:
        entry = self._index.get(key)
        if entry is not None:
            return self._path_for(entry.type.value, key)
        # Not indexed by this process yet; search every type directory
        data_dir = self.root / DATA_DIR
        if not data_dir.is_dir():
            return None
        filename = quote(key, safe="") + ".bin"
        for type_dir in data_dir.iterdir():
            candidate = type_dir / filename
            if candidate.exists():
                return candidate
        return None

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            path = self._find_path(key)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise storage_error_from_os(e, key)

    def write(self, entry: CacheEntry, payload: bytes) -> None:
        path = self._path_for(entry.type.value, entry.cache_key)
        with self._lock:
            previous = self._index.get(entry.cache_key)
            try:
                _atomic_write(path, payload)
                if previous is not None and previous.type != entry.type:
                    self._path_for(previous.type.value, entry.cache_key).unlink(missing_ok=True)
                self._index[entry.cache_key] = entry
                self._flush_index()
            except OSError as e:
                raise storage_error_from_os(e, entry.cache_key)

    def remove(self, key: str) -> bool:
        with self._lock:
            path = self._find_path(key)
            existed = self._index.pop(key, None) is not None
            try:
                if path is not None and path.exists():
                    path.unlink()
                    existed = True
                if existed:
                    self._flush_index()
            except OSError as e:
                raise storage_error_from_os(e, key)
        return existed

    def load_index(self) -> Dict[str, CacheEntry]:
        """Load ``index.json``, dropping rows whose payload file is gone."""
        with self._lock:
            self._index = self._read_index_file()
            missing = [
                key
                for key, entry in self._index.items()
                if not self._path_for(entry.type.value, key).exists()
            ]
            for key in missing:
                del self._index[key]
            if missing:
                logger.debug("Dropped %d index rows without payload files", len(missing))
            return dict(self._index)

    def _read_index_file(self) -> Dict[str, CacheEntry]:
        if not self.index_path.exists():
            return {}
        try:
            raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning("Ignoring unreadable cache index %s: %s", self.index_path, e)
            return {}
        except OSError as e:
            raise storage_error_from_os(e)

        entries = {}
        for key, row in raw.get("entries", {}).items():
            try:
                entries[key] = CacheEntry(**row)
            except ValidationError as e:
                logger.warning("Skipping invalid index row for %s: %s", key, e)
        return entries

    def _flush_index(self) -> None:
        data = {
            "version": 1,
            "entries": {
                key: entry.model_dump(mode="json", exclude={"age_days"})
                for key, entry in self._index.items()
            },
        }
        _atomic_write(self.index_path, json.dumps(data, indent=1).encode("utf-8"))

    def clear(self) -> None:
        with self._lock:
            data_dir = self.root / DATA_DIR
            try:
                if data_dir.is_dir():
                    for type_dir in data_dir.iterdir():
                        if not type_dir.is_dir():
                            continue
                        for path in type_dir.iterdir():
                            path.unlink(missing_ok=True)
                self._index = {}
                self._flush_index()
            except OSError as e:
                raise storage_error_from_os(e)

    def used_bytes(self) -> int:
        total = 0
        for path in self.root.rglob("*"):
            try:
                if path.is_file():
                    total += path.stat().st_size
            except OSError:
                continue
        return total


class RecordBackend(StorageBackend):
    """Payloads stored as rows of the DuckDB ``cache_records`` table."""

    name = "records"

    def __init__(self, store: RecordStore):
        self.store = store

    @property
    def location(self) -> str:
        return self.store.location

    def read(self, key: str) -> Optional[bytes]:
        return self.store.get_record(key)

    def write(self, entry: CacheEntry, payload: bytes) -> None:
        self.store.put_record(entry, payload)

    def remove(self, key: str) -> bool:
        return self.store.delete_record(key)

    def load_index(self) -> Dict[str, CacheEntry]:
        return self.store.list_records()

    def clear(self) -> None:
        self.store.clear_records()

    def used_bytes(self) -> int:
        return self.store.size_bytes()


def select_backend(kind: str, root_dir: str, store: RecordStore) -> StorageBackend:
    """Build the configured backend.

    ``auto`` tries the directory backend first and falls back to the record
    backend when the root cannot be written or does not support atomic rename.

    Args:
        kind: "auto", "directory" or "records"
        root_dir: Cache root directory
        store: Shared record database

    Returns:
        The backend to use
    """
    if kind == "records":
        return RecordBackend(store)

    directory = DirectoryBackend(root_dir)
    if kind == "directory":
        return directory

    try:
        directory.probe()
    except OSError as e:
        logger.warning("Directory backend unavailable at %s (%s); using record backend", root_dir, e)
        return RecordBackend(store)
    logger.info("Using directory backend at %s", root_dir)
    return directory
