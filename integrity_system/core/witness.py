#!/usr/bin/env python3
"""
witness.py - External anchoring of checkpoint roots

A witness is any sink that can record a merkle_root somewhere hard to
rewrite and later confirm it did. The engine only depends on the two-call
contract below; unreliability is absorbed by the checkpoint's
Pending/Anchored/Failed state, never propagated into the ledger.

    WitnessGateway      anchor(merkle_root) -> witness_ref, confirm(witness_ref) -> bool
    LocalWitness        in-process sink, de-duplicates by root
    HttpWitnessGateway  JSON over HTTP via requests, root as Idempotency-Key

Retries are NOT done here - WitnessAnchorer owns backoff. Each gateway call
is a single attempt that either returns or raises WitnessUnavailable.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

import requests

from integrity_system.core.errors import WitnessUnavailable
from integrity_system.core.hashing import require_digest
from integrity_system.core.integrity_logger import witness_logger


class WitnessGateway(ABC):
    """Narrow interface to an external anchoring service."""

    name = "witness"

    @abstractmethod
    def anchor(self, merkle_root: str) -> str:
        """
        Publish a root. Anchoring the same root twice returns the same ref.

        Raises:
            WitnessUnavailable: sink unreachable or refused; safe to retry
        """

    @abstractmethod
    def confirm(self, witness_ref: str) -> bool:
        """True if the sink still vouches for this reference."""


class LocalWitness(WitnessGateway):
    """
    In-process witness for development and tests.

    fail_next(n) makes the next n anchor calls raise WitnessUnavailable,
    which is how retry and Failed-status paths get exercised.
    """

    name = "local"

    def __init__(self):
        self._anchors: Dict[str, str] = {}       # merkle_root -> witness_ref
        self._failures_remaining = 0
        self._lock = threading.Lock()
        self.anchor_calls = 0

    def fail_next(self, count: int):
        with self._lock:
            self._failures_remaining = count

    def anchor(self, merkle_root: str) -> str:
        require_digest(merkle_root, "merkle_root")
        with self._lock:
            self.anchor_calls += 1
            if self._failures_remaining > 0:
                self._failures_remaining -= 1
                raise WitnessUnavailable("Local witness told to fail")
            if merkle_root not in self._anchors:
                self._anchors[merkle_root] = f"local-{merkle_root[:16]}"
            return self._anchors[merkle_root]

    def confirm(self, witness_ref: str) -> bool:
        with self._lock:
            return witness_ref in self._anchors.values()

    @property
    def anchored_roots(self):
        with self._lock:
            return list(self._anchors.keys())


class HttpWitnessGateway(WitnessGateway):
    """
    Witness reached over HTTP.

    POST <url>            {"merkle_root": ...}  -> {"witness_ref": ...}
    GET  <url>/<ref>      200 = anchored, 404 = unknown
    """

    name = "http"

    def __init__(self, url: str, timeout: int = 10, session: Optional[requests.Session] = None):
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def anchor(self, merkle_root: str) -> str:
        require_digest(merkle_root, "merkle_root")
        try:
            response = self.session.post(
                self.url,
                json={"merkle_root": merkle_root},
                headers={"Idempotency-Key": merkle_root},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            witness_logger.log_warning("WITNESS_TIMEOUT", "Anchor request timed out", {
                "url": self.url,
                "timeout": self.timeout
            })
            raise WitnessUnavailable(f"Witness timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            witness_logger.log_warning("WITNESS_UNAVAILABLE", "Connection failed", {"url": self.url})
            raise WitnessUnavailable(f"Witness unreachable: {e}") from e

        if response.status_code not in (200, 201):
            witness_logger.log_warning("WITNESS_ERROR", f"Witness returned {response.status_code}", {
                "url": self.url,
                "response": response.text[:500]
            })
            raise WitnessUnavailable(f"Witness returned {response.status_code}")

        try:
            witness_ref = response.json()["witness_ref"]
        except (ValueError, KeyError, TypeError) as e:
            raise WitnessUnavailable("Witness response has no witness_ref") from e
        if not isinstance(witness_ref, str) or not witness_ref:
            raise WitnessUnavailable("Witness returned an empty witness_ref")
        return witness_ref

    def confirm(self, witness_ref: str) -> bool:
        try:
            response = self.session.get(f"{self.url}/{witness_ref}", timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise WitnessUnavailable(f"Witness unreachable: {e}") from e

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        raise WitnessUnavailable(f"Witness returned {response.status_code}")


def build_witness(config) -> WitnessGateway:
    """HTTP witness when a URL is configured, local otherwise."""
    witness_config = config.get_witness_config()
    if witness_config['url']:
        return HttpWitnessGateway(witness_config['url'], timeout=witness_config['timeout'])
    return LocalWitness()
