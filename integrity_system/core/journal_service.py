#!/usr/bin/env python3
"""
journal_service.py - One object wiring the engine together

Application layers (the Flask service, scripts, tests) talk to this facade
instead of assembling ledger + builder + engine + verifier by hand. It also
applies the checkpoint policy after every append.

Usage:
    service = JournalService(TestConfig)
    journal = service.create_journal()
    service.record_event(journal.journal_id, "first draft of chapter one", "revision")
    certificate = service.issue_certificate(journal.journal_id, disclose=[0])
    result = service.verify_certificate(certificate)
"""

from typing import Dict, Any, Iterable, Mapping, Optional

from integrity_system.core.certificates import CertificateEngine
from integrity_system.core.checkpoints import CheckpointBuilder, CheckpointPolicy, WitnessAnchorer
from integrity_system.core.config import get_config
from integrity_system.core.datashapes import (
    Certificate,
    Checkpoint,
    Journal,
    JournalEntry,
    JournalHead,
    VerificationResult,
)
from integrity_system.core.event_emitter import EventEmitter
from integrity_system.core.hashing import hash_content
from integrity_system.core.integrity_logger import service_logger
from integrity_system.core.keys import KeyProvider, LocalKeyProvider, encode_public_key
from integrity_system.core.ledger import EntryLedger
from integrity_system.core.verifier import Verifier
from integrity_system.core.witness import WitnessGateway, build_witness


class JournalService:
    """Facade over the integrity engine for one process."""

    def __init__(
        self,
        config=None,
        key_provider: Optional[KeyProvider] = None,
        witness: Optional[WitnessGateway] = None,
        emitter: Optional[EventEmitter] = None
    ):
        self.config = config or get_config()
        issues = self.config.validate_config()
        if issues:
            raise ValueError(f"Invalid configuration: {'; '.join(issues)}")

        self.emitter = emitter or EventEmitter()
        self.ledger = EntryLedger(self.config.STORAGE_DIR or None, self.emitter)
        self.keys = key_provider or LocalKeyProvider(self.config.KEY_DIR or None)
        self.witness = witness or build_witness(self.config)

        witness_config = self.config.get_witness_config()
        self.anchorer = WitnessAnchorer(
            self.witness,
            self.ledger,
            self.emitter,
            max_attempts=witness_config['max_attempts'],
            base_delay=witness_config['base_delay'],
            max_delay=witness_config['max_delay'],
            workers=self.config.WITNESS_WORKERS,
        )
        self.builder = CheckpointBuilder(
            self.ledger,
            CheckpointPolicy(
                count_threshold=self.config.CHECKPOINT_EVERY,
                time_threshold_hours=self.config.CHECKPOINT_HOURS or None,
            ),
            self.anchorer,
            self.emitter,
        )
        self.certificates = CertificateEngine(
            self.ledger,
            self.builder,
            self.keys,
            self.emitter,
            allow_recency_proofs=self.config.ALLOW_RECENCY_PROOFS,
        )
        self.verifier = Verifier(
            public_key_resolver=self.keys.public_key,
            witness=self.witness,
            emitter=self.emitter,
        )

        if self.ledger.load_warnings:
            service_logger.log_warning("LOAD_WARNINGS", f"{len(self.ledger.load_warnings)} load warning(s)")

        # Anchoring cut off by a cancel or a process exit left these Pending
        for journal_id in self.ledger.list_journals():
            self.anchorer.resubmit_unanchored(journal_id, include_failed=False)

    # =========================================================================
    # JOURNALS
    # =========================================================================

    def create_journal(self, owner_key_id: Optional[str] = None, journal_id: Optional[str] = None) -> Journal:
        """
        Create a journal. Without an owner_key_id a fresh signing key is
        generated (only possible with a LocalKeyProvider).

        Raises:
            KeyNotFound: the key provider can't sign for owner_key_id
        """
        if owner_key_id is None:
            owner_key_id = self.keys.generate_key()
        else:
            self.keys.public_key(owner_key_id)
        return self.ledger.create_journal(owner_key_id, journal_id)

    def head(self, journal_id: str) -> JournalHead:
        return self.ledger.head(journal_id)

    # =========================================================================
    # APPENDS
    # =========================================================================

    def append(
        self,
        journal_id: str,
        content_hash: str,
        metadata: Optional[Mapping[str, str]] = None,
        expected_head: Optional[JournalHead] = None
    ) -> JournalEntry:
        entry = self.ledger.append(journal_id, content_hash, metadata, expected_head=expected_head)
        self._after_append(journal_id)
        return entry

    def submit_content_digest(
        self,
        journal_id: str,
        digest: str,
        metadata: Optional[Mapping[str, str]] = None
    ) -> JournalEntry:
        entry = self.ledger.submit_content_digest(
            journal_id, digest, metadata, max_retries=self.config.APPEND_MAX_RETRIES
        )
        self._after_append(journal_id)
        return entry

    def record_event(
        self,
        journal_id: str,
        content: str,
        entry_type: str,
        metadata: Optional[Mapping[str, str]] = None
    ) -> JournalEntry:
        """Digest content locally and submit only the digest."""
        event_metadata = dict(metadata or {})
        event_metadata["entry_type"] = entry_type
        return self.submit_content_digest(journal_id, hash_content(content), event_metadata)

    def retract(self, journal_id: str, sequence: int, reason: str = "") -> JournalEntry:
        entry = self.ledger.retract(journal_id, sequence, reason)
        self._after_append(journal_id)
        return entry

    def _after_append(self, journal_id: str):
        if self.config.AUTO_CHECKPOINT:
            self.builder.maybe_seal(journal_id)

    # =========================================================================
    # CHECKPOINTS, CERTIFICATES, VERIFICATION
    # =========================================================================

    def seal(
        self,
        journal_id: str,
        through_sequence: Optional[int] = None,
        from_sequence: Optional[int] = None
    ) -> Checkpoint:
        return self.builder.seal(journal_id, through_sequence, from_sequence)

    def issue_certificate(
        self,
        journal_id: str,
        disclose: Iterable[int] = (),
        allow_recency_proofs: Optional[bool] = None
    ) -> Certificate:
        return self.certificates.issue(journal_id, disclose, allow_recency_proofs)

    def verify_certificate(self, certificate, public_key=None) -> VerificationResult:
        return self.verifier.verify(certificate, public_key)

    def public_key_b64(self, owner_key_id: str) -> str:
        return encode_public_key(self.keys.public_key(owner_key_id))

    # =========================================================================
    # REPORTS
    # =========================================================================

    def validate(self, journal_id: str) -> Dict[str, Any]:
        """Chain summary; is_valid also needs every checkpoint root to match its entries."""
        return self.ledger.chain_summary(journal_id)

    def verify_checkpoint(self, journal_id: str, checkpoint_id: str) -> bool:
        return self.builder.verify_checkpoint(journal_id, checkpoint_id)

    def insights(self, journal_id: str) -> Dict[str, Any]:
        return self.ledger.process_insights(journal_id)

    def shutdown(self, cancel_witness: bool = False):
        self.anchorer.shutdown(cancel=cancel_witness)
