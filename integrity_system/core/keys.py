#!/usr/bin/env python3
"""
keys.py - Journal owner signing keys (Ed25519 via PyNaCl)

The engine treats keys opaquely: it asks a KeyProvider to sign bytes for an
owner_key_id and to hand out the matching public key. LocalKeyProvider is
the in-process implementation used by the service and the tests; anything
backed by an HSM or a platform keystore can implement the same two methods.

Signatures and public keys travel as base64 text.
"""

import base64
import hashlib
import os
import re
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from integrity_system.core.errors import KeyNotFound
from integrity_system.core.integrity_logger import certificate_logger

_KEY_ID = re.compile(r"^ed25519:[0-9a-f]{16}$")


def key_id_for(public_key: bytes) -> str:
    return f"ed25519:{hashlib.sha256(public_key).hexdigest()[:16]}"


def encode_public_key(public_key: bytes) -> str:
    return base64.b64encode(public_key).decode("ascii")


def decode_public_key(text: str) -> bytes:
    """Raises ValueError when text is not base64 of a 32-byte key."""
    raw = base64.b64decode(text, validate=True)
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return raw


def verify_signature(public_key: bytes, data: bytes, signature: str) -> bool:
    """True only if signature is a valid base64 Ed25519 signature of data."""
    if not isinstance(signature, str) or not signature:
        return False
    try:
        VerifyKey(public_key).verify(data, base64.b64decode(signature, validate=True))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


class KeyProvider(ABC):
    """Signs on behalf of journal owners."""

    @abstractmethod
    def sign(self, owner_key_id: str, data: bytes) -> str:
        """Base64 signature of data. Raises KeyNotFound."""

    @abstractmethod
    def public_key(self, owner_key_id: str) -> bytes:
        """Raw 32-byte public key. Raises KeyNotFound."""


class LocalKeyProvider(KeyProvider):
    """
    Ed25519 keys held in memory, optionally backed by a key directory.

    With key_dir set, each key is a raw 32-byte seed file named after its key
    id and readable only by the owner (0600).
    """

    def __init__(self, key_dir: Optional[str] = None):
        self.key_dir = key_dir or None
        self._keys: Dict[str, SigningKey] = {}
        self._lock = threading.Lock()
        if self.key_dir:
            os.makedirs(self.key_dir, exist_ok=True)

    def _key_path(self, owner_key_id: str) -> str:
        return os.path.join(self.key_dir, owner_key_id.replace(":", "_") + ".key")

    def generate_key(self) -> str:
        """Create a new keypair and return its owner_key_id."""
        signing_key = SigningKey.generate()
        return self.add_key(signing_key)

    def add_key(self, signing_key: SigningKey) -> str:
        owner_key_id = key_id_for(bytes(signing_key.verify_key))
        with self._lock:
            self._keys[owner_key_id] = signing_key
            if self.key_dir:
                path = self._key_path(owner_key_id)
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "wb") as f:
                    f.write(bytes(signing_key))
                os.chmod(path, 0o600)
        certificate_logger.log_info("KEY_CREATED", f"Signing key {owner_key_id} ready")
        return owner_key_id

    def _signing_key(self, owner_key_id: str) -> SigningKey:
        with self._lock:
            if owner_key_id in self._keys:
                return self._keys[owner_key_id]
            if self.key_dir and _KEY_ID.match(owner_key_id or ""):
                path = self._key_path(owner_key_id)
                if os.path.exists(path):
                    with open(path, "rb") as f:
                        key = SigningKey(f.read())
                    self._keys[owner_key_id] = key
                    return key
        raise KeyNotFound(f"No signing key for {owner_key_id}")

    def has_key(self, owner_key_id: str) -> bool:
        try:
            self._signing_key(owner_key_id)
            return True
        except KeyNotFound:
            return False

    def sign(self, owner_key_id: str, data: bytes) -> str:
        signature = self._signing_key(owner_key_id).sign(data).signature
        return base64.b64encode(signature).decode("ascii")

    def public_key(self, owner_key_id: str) -> bytes:
        return bytes(self._signing_key(owner_key_id).verify_key)

    def public_key_b64(self, owner_key_id: str) -> str:
        return encode_public_key(self.public_key(owner_key_id))
