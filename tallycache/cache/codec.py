"""Payload codec for cached datasets.

Stored values are wrapped in a small envelope::

    b"TCv1" | sha256(body) (32 bytes) | body

where ``body`` is zlib-compressed UTF-8 JSON. The digest is checked before
decompressing so a truncated or tampered file is rejected instead of producing
a partial dataset. Bare JSON (as written by the old flat store) is accepted on
read.
"""

import hashlib
import json
import zlib
from typing import Any

from ..errors import PayloadIntegrityError

MAGIC = b"TCv1"
DIGEST_SIZE = 32
HEADER_SIZE = len(MAGIC) + DIGEST_SIZE


def encode(payload: Any) -> bytes:
    """Serialize a JSON-compatible value into an envelope.

    Args:
        payload: Any value accepted by ``json.dumps``

    Returns:
        Envelope bytes ready to hand to a backend
    """
    try:
        text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
    except (TypeError, ValueError) as e:
        raise PayloadIntegrityError(f"Payload is not JSON serialisable: {e}")
    body = zlib.compress(text.encode("utf-8"))
    return MAGIC + hashlib.sha256(body).digest() + body


def is_enveloped(data: bytes) -> bool:
    return data[: len(MAGIC)] == MAGIC


def decode(data: bytes) -> Any:
    """Decode an envelope (or bare JSON) back into structured data.

    Raises:
        PayloadIntegrityError: bad digest, bad compression or bad JSON
    """
    if not data:
        raise PayloadIntegrityError("Payload is empty")

    if not is_enveloped(data):
        return _parse_json(data)

    if len(data) < HEADER_SIZE:
        raise PayloadIntegrityError("Payload header is truncated")

    digest = data[len(MAGIC):HEADER_SIZE]
    body = data[HEADER_SIZE:]
    if hashlib.sha256(body).digest() != digest:
        raise PayloadIntegrityError("Payload checksum mismatch")

    try:
        raw = zlib.decompress(body)
    except zlib.error as e:
        raise PayloadIntegrityError(f"Payload decompression failed: {e}")
    return _parse_json(raw)


def _parse_json(raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PayloadIntegrityError(f"Payload is not valid JSON: {e}")
