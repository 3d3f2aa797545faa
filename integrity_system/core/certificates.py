#!/usr/bin/env python3
"""
certificates.py - Issuing signed, portable certificates of a journal's chain

A certificate is a statement frozen at issuance: "this journal had
head_sequence + 1 entries ending in head_hash, sealed under these
checkpoint roots", optionally with some entries disclosed and proven.

    Summary certificate     disclose = {}   length + roots, no entries
    Disclosure certificate  disclose = {4}  entry 4 + its Merkle path

Entries past the last checkpoint can't be Merkle-proven yet. With recency
proofs allowed, they carry the hash inputs of every later entry instead,
so a verifier can walk the chain forward to head_hash.

Certificates are never revoked or reissued. A later one just describes a
longer chain.
"""

from dataclasses import replace
from typing import Dict, Iterable, Optional, Tuple

from integrity_system.core.checkpoints import CheckpointBuilder
from integrity_system.core.datashapes import (
    GENESIS_HASH,
    Certificate,
    ChainLink,
    MerkleProof,
)
from integrity_system.core.errors import NotYetCheckpointed, SequenceNotFound
from integrity_system.core.event_emitter import EventEmitter
from integrity_system.core.integrity_logger import certificate_logger
from integrity_system.core.keys import KeyProvider
from integrity_system.core.ledger import EntryLedger, utc_now_iso


class CertificateEngine:
    """Assembles and signs certificates from a consistent journal snapshot."""

    def __init__(
        self,
        ledger: EntryLedger,
        builder: CheckpointBuilder,
        key_provider: KeyProvider,
        emitter: Optional[EventEmitter] = None,
        allow_recency_proofs: bool = False
    ):
        self.ledger = ledger
        self.builder = builder
        self.key_provider = key_provider
        self.emitter = emitter or ledger.emitter
        self.allow_recency_proofs = allow_recency_proofs

    def issue(
        self,
        journal_id: str,
        disclose: Iterable[int] = (),
        allow_recency_proofs: Optional[bool] = None
    ) -> Certificate:
        """
        Issue a summary (nothing disclosed) or disclosure certificate.

        Raises:
            SequenceNotFound: a disclosed sequence doesn't exist
            NotYetCheckpointed: a disclosed sequence is unsealed and recency
                proofs are off
            KeyNotFound: the key provider can't sign for the journal owner
        """
        recency_allowed = self.allow_recency_proofs if allow_recency_proofs is None else allow_recency_proofs
        journal, entries, checkpoints = self.ledger.snapshot(journal_id)
        head_sequence = len(entries) - 1
        head_hash = entries[-1].entry_hash if entries else GENESIS_HASH

        proofs: Dict[int, MerkleProof] = {}
        recency: Dict[int, Tuple[ChainLink, ...]] = {}
        disclosed = []

        for sequence in sorted(set(disclose)):
            if sequence < 0 or sequence > head_sequence:
                raise SequenceNotFound(f"Journal {journal_id} has no sequence {sequence}")
            disclosed.append(entries[sequence])

            try:
                _, proof = self.builder.proof_from_snapshot(checkpoints, entries, sequence)
                proofs[sequence] = proof
            except NotYetCheckpointed:
                if not recency_allowed:
                    raise
                recency[sequence] = tuple(
                    ChainLink(e.sequence, e.content_hash, dict(e.metadata))
                    for e in entries[sequence + 1:]
                )

        unsigned = Certificate(
            journal_id=journal_id,
            owner_key_id=journal.owner_key_id,
            head_sequence=head_sequence,
            head_hash=head_hash,
            issued_at=utc_now_iso(),
            checkpoints=checkpoints,
            disclosed_entries=tuple(disclosed),
            proofs=proofs,
            recency_proofs=recency,
        )
        signature = self.key_provider.sign(journal.owner_key_id, unsigned.canonical_body())
        certificate = replace(unsigned, signature=signature)

        certificate_logger.log_info("CERTIFICATE_ISSUED", f"{certificate.certificate_type} certificate issued", {
            "journal_id": journal_id,
            "head_sequence": head_sequence,
            "disclosed": [e.sequence for e in disclosed],
            "recency_proofs": sorted(recency),
        })
        self.emitter.emit("certificate_issued", {
            "certificate_type": certificate.certificate_type,
            "head_sequence": head_sequence,
            "disclosed_count": len(disclosed),
        }, journal_id=journal_id)
        return certificate

    def issue_summary(self, journal_id: str) -> Certificate:
        return self.issue(journal_id, ())
