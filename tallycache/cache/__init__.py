"""Local cache module for tallycache.

Provides durable storage for downloaded datasets with:
- A directory backend with atomic writes and a DuckDB record fallback
- Checksummed, compressed payloads
- Read compatibility with the old chunked flat store
- Download checkpoints for resume after interruption
"""

from .schema import CacheSchema
from .records import RecordStore
from .backends import DirectoryBackend, RecordBackend, StorageBackend, select_backend
from .legacy import LegacyChunkReader
from .store import HybridCache
from .progress import CheckpointStore

__all__ = [
    "CacheSchema",
    "RecordStore",
    "DirectoryBackend",
    "RecordBackend",
    "StorageBackend",
    "select_backend",
    "LegacyChunkReader",
    "HybridCache",
    "CheckpointStore",
]
