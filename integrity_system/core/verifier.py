#!/usr/bin/env python3
"""
verifier.py - Offline, store-independent certificate verification

Needs nothing but the certificate and the owner's public key. Every check
runs even after an earlier one fails, so the result lists everything that
is wrong, not just the first thing.

Checks:
    1. Signature over the canonical body            INVALID_SIGNATURE
    2. Disclosed entries re-hash to their entry_hash ENTRY_HASH_MISMATCH
    3. Merkle (or recency) proofs reach their root   PROOF_MISMATCH
    4. Checkpoint ranges contiguous, within head     RANGE_INCONSISTENCY
    5. Witness refs confirmed (optional)             witness_confidence only

Steps 1-4 never touch the network.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Union

from integrity_system.core.datashapes import (
    CERTIFICATE_FORMAT,
    GENESIS_HASH,
    Certificate,
    FailureReason,
    VerificationResult,
    WitnessConfidence,
)
from integrity_system.core.errors import IntegrityError, WitnessUnavailable
from integrity_system.core.event_emitter import EventEmitter
from integrity_system.core.hashing import canonical_json, compute_entry_hash, is_digest
from integrity_system.core.integrity_logger import verifier_logger
from integrity_system.core.keys import decode_public_key, key_id_for, verify_signature
from integrity_system.core.merkle import MerkleTree
from integrity_system.core.witness import WitnessGateway

CertificateInput = Union[Certificate, Dict[str, Any], str, bytes]
PublicKeyInput = Union[bytes, str]

_PARSE_ERRORS = (KeyError, ValueError, TypeError, AttributeError)


class _Findings:
    """Collects reasons in first-seen order, with one detail line each."""

    def __init__(self):
        self.reasons: List[FailureReason] = []
        self.details: List[str] = []

    def fail(self, reason: FailureReason, detail: str):
        if reason not in self.reasons:
            self.reasons.append(reason)
        self.details.append(f"{reason.value}: {detail}")


class Verifier:
    """
    Verifies certificates without access to any ledger.

    Args:
        public_key_resolver: owner_key_id -> raw public key, used when no key
            is passed to verify()
        witness: gateway to confirm witness refs with; None skips step 5
    """

    def __init__(
        self,
        public_key_resolver: Optional[Callable[[str], bytes]] = None,
        witness: Optional[WitnessGateway] = None,
        emitter: Optional[EventEmitter] = None
    ):
        self.public_key_resolver = public_key_resolver
        self.witness = witness
        self.emitter = emitter

    def verify(self, certificate: CertificateInput, public_key: Optional[PublicKeyInput] = None) -> VerificationResult:
        findings = _Findings()

        cert, raw_body = self._parse(certificate, findings)
        if cert is None:
            return self._finish(None, findings, WitnessConfidence.NONE)

        self._check_signature(cert, raw_body, public_key, findings)
        self._check_entries_and_proofs(cert, findings)
        self._check_ranges(cert, findings)

        return self._finish(cert, findings, self._witness_confidence(cert))

    # =========================================================================
    # PARSING
    # =========================================================================

    def _parse(self, certificate: CertificateInput, findings: _Findings):
        """Returns (Certificate or None, raw body dict or None)."""
        if isinstance(certificate, Certificate):
            return certificate, None

        try:
            data = json.loads(certificate) if isinstance(certificate, (str, bytes)) else certificate
            cert = Certificate.from_dict(data)
        except _PARSE_ERRORS as e:
            findings.fail(FailureReason.MALFORMED_CERTIFICATE, f"cannot parse certificate ({e!r})")
            return None, None

        raw_body = {k: v for k, v in data.items() if k != "signature"}
        if cert.format != CERTIFICATE_FORMAT:
            findings.fail(FailureReason.MALFORMED_CERTIFICATE, f"unknown format {cert.format!r}")
        if raw_body != cert.body_dict():
            # Unknown fields, or derived fields (entry_count, type) that disagree
            findings.fail(FailureReason.MALFORMED_CERTIFICATE, "document fields do not match the certificate body")
        if not is_digest(cert.head_hash):
            findings.fail(FailureReason.MALFORMED_CERTIFICATE, "head_hash is not a digest")
        return cert, raw_body

    # =========================================================================
    # STEP 1: SIGNATURE
    # =========================================================================

    def _resolve_key(self, cert: Certificate, public_key: Optional[PublicKeyInput]) -> Optional[bytes]:
        if public_key is None:
            if self.public_key_resolver is None:
                return None
            try:
                return self.public_key_resolver(cert.owner_key_id)
            except IntegrityError:
                return None
        if isinstance(public_key, str):
            try:
                return decode_public_key(public_key)
            except ValueError:
                return None
        if isinstance(public_key, (bytes, bytearray)):
            return bytes(public_key)
        return None

    def _check_signature(self, cert: Certificate, raw_body, public_key, findings: _Findings):
        key = self._resolve_key(cert, public_key)
        if key is None:
            findings.fail(FailureReason.INVALID_SIGNATURE, f"no usable public key for {cert.owner_key_id}")
            return
        if key_id_for(key) != cert.owner_key_id:
            findings.fail(FailureReason.INVALID_SIGNATURE, "public key does not belong to owner_key_id")
            return

        try:
            body = canonical_json(raw_body) if raw_body is not None else cert.canonical_body()
        except (ValueError, TypeError) as e:
            findings.fail(FailureReason.MALFORMED_CERTIFICATE, f"body is not canonicalizable ({e})")
            return
        if not verify_signature(key, body, cert.signature):
            findings.fail(FailureReason.INVALID_SIGNATURE, "signature does not match the canonical body")

    # =========================================================================
    # STEPS 2-3: ENTRIES AND PROOFS
    # =========================================================================

    def _check_entries_and_proofs(self, cert: Certificate, findings: _Findings):
        checkpoints = {c.checkpoint_id: c for c in cert.checkpoints}
        disclosed = {e.sequence for e in cert.disclosed_entries}

        for entry in cert.disclosed_entries:
            seq = entry.sequence
            try:
                recomputed = compute_entry_hash(seq, entry.content_hash, entry.prev_hash, entry.metadata)
            except (IntegrityError, ValueError, TypeError) as e:
                findings.fail(FailureReason.ENTRY_HASH_MISMATCH, f"entry {seq} cannot be re-hashed ({e})")
                recomputed = None
            if recomputed is not None and recomputed != entry.entry_hash:
                findings.fail(FailureReason.ENTRY_HASH_MISMATCH, f"entry {seq} does not hash to its entry_hash")

            if seq > cert.head_sequence:
                findings.fail(FailureReason.RANGE_INCONSISTENCY, f"entry {seq} is past head {cert.head_sequence}")
            elif seq == cert.head_sequence and entry.entry_hash != cert.head_hash:
                findings.fail(FailureReason.RANGE_INCONSISTENCY, f"head entry {seq} does not match head_hash")

            if seq in cert.proofs:
                self._check_merkle_proof(cert, entry, checkpoints, findings)
            elif seq in cert.recency_proofs:
                self._check_recency_proof(cert, entry, findings)
            else:
                findings.fail(FailureReason.PROOF_MISMATCH, f"entry {seq} has no proof")

        stray = (set(cert.proofs) | set(cert.recency_proofs)) - disclosed
        if stray:
            findings.fail(FailureReason.PROOF_MISMATCH, f"proofs for undisclosed sequences {sorted(stray)}")

    def _check_merkle_proof(self, cert, entry, checkpoints, findings: _Findings):
        seq = entry.sequence
        proof = cert.proofs[seq]
        checkpoint = checkpoints.get(proof.checkpoint_id)

        if proof.leaf_sequence != seq:
            findings.fail(FailureReason.PROOF_MISMATCH, f"proof for {seq} claims leaf {proof.leaf_sequence}")
        elif checkpoint is None:
            findings.fail(FailureReason.PROOF_MISMATCH, f"proof for {seq} names unknown {proof.checkpoint_id}")
        elif not checkpoint.covers(seq):
            findings.fail(FailureReason.PROOF_MISMATCH, f"{checkpoint.checkpoint_id} does not cover {seq}")
        elif not MerkleTree.verify_proof(
            entry.entry_hash,
            proof.sibling_hashes,
            checkpoint.merkle_root,
            seq - checkpoint.start,
            checkpoint.leaf_count,
        ):
            findings.fail(FailureReason.PROOF_MISMATCH, f"proof for {seq} does not reach {checkpoint.checkpoint_id} root")

    def _check_recency_proof(self, cert, entry, findings: _Findings):
        seq = entry.sequence
        current = entry.entry_hash
        expected = seq + 1
        try:
            for link in cert.recency_proofs[seq]:
                if link.sequence != expected:
                    findings.fail(FailureReason.PROOF_MISMATCH, f"recency chain for {seq} skips to {link.sequence}")
                    return
                current = compute_entry_hash(link.sequence, link.content_hash, current, link.metadata)
                expected += 1
        except (IntegrityError, ValueError, TypeError) as e:
            findings.fail(FailureReason.PROOF_MISMATCH, f"recency chain for {seq} cannot be re-hashed ({e})")
            return

        if expected - 1 != cert.head_sequence or current != cert.head_hash:
            findings.fail(FailureReason.PROOF_MISMATCH, f"recency chain for {seq} does not reach head_hash")

    # =========================================================================
    # STEP 4: RANGES
    # =========================================================================

    def _check_ranges(self, cert: Certificate, findings: _Findings):
        if cert.head_sequence < -1:
            findings.fail(FailureReason.RANGE_INCONSISTENCY, f"negative head_sequence {cert.head_sequence}")
        if cert.head_sequence == -1 and cert.head_hash != GENESIS_HASH:
            findings.fail(FailureReason.RANGE_INCONSISTENCY, "empty chain must end at the genesis hash")

        next_start = 0
        seen_ids = set()
        for checkpoint in cert.checkpoints:
            if checkpoint.checkpoint_id in seen_ids:
                findings.fail(FailureReason.RANGE_INCONSISTENCY, f"duplicate {checkpoint.checkpoint_id}")
            seen_ids.add(checkpoint.checkpoint_id)

            if checkpoint.journal_id != cert.journal_id:
                findings.fail(FailureReason.RANGE_INCONSISTENCY, f"{checkpoint.checkpoint_id} belongs to another journal")
            if checkpoint.start != next_start:
                findings.fail(
                    FailureReason.RANGE_INCONSISTENCY,
                    f"{checkpoint.checkpoint_id} starts at {checkpoint.start}, expected {next_start}"
                )
            if checkpoint.end < checkpoint.start:
                findings.fail(FailureReason.RANGE_INCONSISTENCY, f"{checkpoint.checkpoint_id} range is reversed")
            next_start = checkpoint.end + 1

        if cert.checkpoints and cert.checkpoints[-1].end > cert.head_sequence:
            findings.fail(
                FailureReason.RANGE_INCONSISTENCY,
                f"checkpoints end at {cert.checkpoints[-1].end}, past head {cert.head_sequence}"
            )

    # =========================================================================
    # STEP 5: WITNESS
    # =========================================================================

    def _witness_confidence(self, cert: Certificate) -> WitnessConfidence:
        refs = [c.witness_ref for c in cert.checkpoints if c.witness_ref]
        if not refs:
            return WitnessConfidence.NONE
        if self.witness is None:
            return WitnessConfidence.UNCHECKED

        confirmed = 0
        for ref in refs:
            try:
                if self.witness.confirm(ref):
                    confirmed += 1
            except WitnessUnavailable as e:
                verifier_logger.log_warning("WITNESS_UNREACHABLE", f"Could not confirm {ref}: {e}")

        if confirmed == len(refs):
            return WitnessConfidence.CONFIRMED
        if confirmed:
            return WitnessConfidence.PARTIAL
        return WitnessConfidence.UNCONFIRMED

    def _finish(self, cert: Optional[Certificate], findings: _Findings, confidence: WitnessConfidence) -> VerificationResult:
        result = VerificationResult(
            valid=not findings.reasons,
            reasons=findings.reasons,
            details=findings.details,
            witness_confidence=confidence,
        )
        journal_id = cert.journal_id if cert else None
        if result.valid:
            verifier_logger.log_info("VERIFY_OK", "Certificate verified", {"journal_id": journal_id})
        else:
            verifier_logger.log_warning("VERIFY_FAILED", "Certificate rejected", {
                "journal_id": journal_id,
                "reasons": [r.value for r in result.reasons],
            })
        if self.emitter is not None:
            self.emitter.emit("verification_run", result.to_dict(), journal_id=journal_id)
        return result


def verify_certificate(
    certificate: CertificateInput,
    public_key: PublicKeyInput,
    witness: Optional[WitnessGateway] = None
) -> VerificationResult:
    """One-shot verification with an explicit public key."""
    return Verifier(witness=witness).verify(certificate, public_key)
