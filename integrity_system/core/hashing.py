#!/usr/bin/env python3
"""
hashing.py - Deterministic hashing and canonical serialization

Every hash in the engine goes through here so that a verifier written
anywhere else can reproduce the exact same bytes.

    canonical_json        sorted keys, no whitespace, UTF-8, no floats
    canonical_metadata    str -> str map, NFC-normalised
    compute_entry_hash    H(u64_be(sequence) || content_hash || prev_hash || canonical(metadata))
    merkle_leaf / merkle_node   domain-separated (0x00 / 0x01 prefixes)
"""

import hashlib
import json
import re
import unicodedata
from typing import Any, Dict, Mapping, Union

from integrity_system.core.errors import InvalidDigest, InvalidMetadata

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")

LEAF_PREFIX = b"\x00"
NODE_PREFIX = b"\x01"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_content(content: Union[str, bytes]) -> str:
    """
    Digest raw writing content.

    This is for the content source - the ledger itself only ever receives
    the result, never the text.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return sha256_hex(content)


def is_digest(value: Any) -> bool:
    return isinstance(value, str) and bool(_HEX_DIGEST.match(value))


def require_digest(value: Any, field_name: str = "digest") -> str:
    if not is_digest(value):
        raise InvalidDigest(f"{field_name} must be 64 lowercase hex characters, got {value!r}")
    return value


def _reject_floats(value: Any) -> None:
    # Float repr differs between implementations, so it can't be signed portably
    if isinstance(value, float):
        raise ValueError(f"Floats are not canonicalizable: {value!r}")
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"Non-string key in canonical JSON: {key!r}")
            _reject_floats(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _reject_floats(item)


def canonical_json(data: Any) -> bytes:
    """Canonical JSON encoding for consistent hashing and signing."""
    _reject_floats(data)
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def normalize_metadata(metadata: Mapping[str, str]) -> Dict[str, str]:
    """
    NFC-normalise keys and values.

    Raises:
        InvalidMetadata: non-mapping, non-string key/value, or two keys that
            only differ in Unicode normal form (no deterministic order exists).
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise InvalidMetadata(f"Metadata must be a mapping, got {type(metadata).__name__}")

    normalized: Dict[str, str] = {}
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise InvalidMetadata(f"Metadata key must be a string: {key!r}")
        if not isinstance(value, str):
            raise InvalidMetadata(f"Metadata value for {key!r} must be a string, got {type(value).__name__}")
        norm_key = unicodedata.normalize("NFC", key)
        if norm_key in normalized:
            raise InvalidMetadata(f"Metadata keys collide after normalization: {key!r}")
        normalized[norm_key] = unicodedata.normalize("NFC", value)
    return normalized


def canonical_metadata(metadata: Mapping[str, str]) -> bytes:
    return canonical_json(normalize_metadata(metadata))


def compute_entry_hash(
    sequence: int,
    content_hash: str,
    prev_hash: str,
    metadata: Mapping[str, str]
) -> str:
    """
    entry_hash = H(sequence || content_hash || prev_hash || canonical(metadata))

    sequence is packed as an unsigned 64-bit big-endian integer; both digests
    are packed as their raw 32 bytes.
    """
    if not isinstance(sequence, int) or sequence < 0:
        raise ValueError(f"Sequence must be a non-negative integer, got {sequence!r}")
    require_digest(content_hash, "content_hash")
    require_digest(prev_hash, "prev_hash")

    data = (
        sequence.to_bytes(8, "big")
        + bytes.fromhex(content_hash)
        + bytes.fromhex(prev_hash)
        + canonical_metadata(metadata)
    )
    return sha256_hex(data)


def merkle_leaf(entry_hash: str) -> str:
    return sha256_hex(LEAF_PREFIX + bytes.fromhex(entry_hash))


def merkle_node(left: str, right: str) -> str:
    return sha256_hex(NODE_PREFIX + bytes.fromhex(left) + bytes.fromhex(right))
