"""Read path for values left behind by the old flat key/value store.

The old store split oversized values across several keys::

    <key>_chunks     -> number of fragments, as text
    <key>_chunk_0    -> first fragment
    ...
    <key>_chunk_N-1  -> last fragment

Small values were stored directly under ``<key>``. Nothing new is ever written
in this format; values are only reassembled and cleaned up.
"""

import logging
from typing import Any, List, Optional

from ..errors import PayloadIntegrityError
from . import codec
from .keys import legacy_count_key, legacy_fragment_key
from .records import RecordStore

logger = logging.getLogger(__name__)


class LegacyChunkReader:
    """Reassembles chunked values from the ``flat_storage`` table."""

    def __init__(self, store: RecordStore):
        self.store = store

    def _chunk_count(self, key: str) -> Optional[int]:
        marker = self.store.flat_get(legacy_count_key(key))
        if marker is None:
            return None
        try:
            count = int(marker)
        except ValueError:
            raise PayloadIntegrityError(f"Chunk count for '{key}' is not a number: {marker!r}")
        if count < 0:
            raise PayloadIntegrityError(f"Chunk count for '{key}' is negative: {count}")
        return count

    def read_raw(self, key: str) -> Optional[str]:
        """Return the stored text for ``key`` or None when nothing is stored.

        Raises:
            PayloadIntegrityError: a declared fragment is missing
        """
        count = self._chunk_count(key)
        if count is None:
            return self.store.flat_get(key)

        fragments = []
        for index in range(count):
            fragment = self.store.flat_get(legacy_fragment_key(key, index))
            if fragment is None:
                raise PayloadIntegrityError(
                    f"Legacy value '{key}' is missing fragment {index} of {count}"
                )
            fragments.append(fragment)
        logger.debug("Reassembled legacy value %s from %d fragments", key, count)
        return "".join(fragments)

    def reassemble(self, key: str) -> Optional[Any]:
        """Read and parse a legacy value.

        Returns:
            The parsed value, or None when the key is not in the flat store

        Raises:
            PayloadIntegrityError: missing fragment or invalid JSON
        """
        raw = self.read_raw(key)
        if raw is None:
            return None
        return codec.decode(raw.encode("utf-8"))

    def related_keys(self, key: str) -> List[str]:
        """The primary key, its count marker and every fragment key."""
        keys = [key, legacy_count_key(key)]
        try:
            count = self._chunk_count(key)
        except PayloadIntegrityError:
            count = None
        if count is not None:
            keys.extend(legacy_fragment_key(key, i) for i in range(count))
        # Fragments beyond a stale or corrupted marker
        prefix = f"{key}_chunk_"
        keys.extend(
            k for k in self.store.flat_keys() if k.startswith(prefix) and k[len(prefix):].isdigit()
        )
        return list(dict.fromkeys(keys))

    def remove(self, key: str) -> int:
        """Delete the primary key and every associated chunk key.

        Returns:
            Number of flat rows removed
        """
        removed = self.store.flat_delete(self.related_keys(key))
        if removed:
            logger.debug("Removed %d legacy rows for %s", removed, key)
        return removed
