"""
Certificate Engine + Verifier Tests

The round-trip law (issue then verify is valid), every distinct failure
reason, summary certificates, recency proofs, and the exported document.
"""

import json
from dataclasses import replace

import pytest

from conftest import digest, fill

from integrity_system.core.datashapes import (
    Certificate,
    FailureReason,
    MerkleProof,
    ProofStep,
    WitnessConfidence,
)
from integrity_system.core.errors import NotYetCheckpointed, SequenceNotFound
from integrity_system.core.keys import LocalKeyProvider
from integrity_system.core.verifier import Verifier, verify_certificate
from integrity_system.core.witness import LocalWitness


def flip_hex(value: str, position: int = 0) -> str:
    """Change one hex character, keeping the string a valid digest."""
    replacement = "0" if value[position] != "0" else "1"
    return value[:position] + replacement + value[position + 1:]


@pytest.fixture
def public_key(key_provider, sealed_journal):
    return key_provider.public_key(sealed_journal.owner_key_id)


# =============================================================================
# ROUND TRIP
# =============================================================================

class TestRoundTrip:

    @pytest.mark.critical
    def test_disclose_sequence_4_accepted(self, engine, sealed_journal, public_key):
        """
        CRITICAL: 10 entries sealed into one checkpoint, disclose #4, verifier accepts.
        """
        certificate = engine.issue(sealed_journal.journal_id, {4})

        assert certificate.certificate_type == "disclosure"
        assert [e.sequence for e in certificate.disclosed_entries] == [4]
        assert set(certificate.proofs) == {4}

        result = verify_certificate(certificate, public_key)
        assert result.valid, result.details
        assert result.reasons == []

    @pytest.mark.parametrize("disclose", [set(), {0}, {9}, {0, 4, 9}, set(range(10))])
    def test_any_sealed_subset_verifies(self, engine, sealed_journal, public_key, disclose):
        certificate = engine.issue(sealed_journal.journal_id, disclose)
        assert verify_certificate(certificate, public_key).valid

    def test_multiple_checkpoints(self, ledger, journal_with_10, builder, engine, key_provider):
        jid = journal_with_10.journal_id
        builder.seal(jid, through_sequence=2)
        builder.seal(jid, through_sequence=6)
        builder.seal(jid)

        certificate = engine.issue(jid, {1, 5, 8})
        public_key = key_provider.public_key(journal_with_10.owner_key_id)

        assert len(certificate.checkpoints) == 3
        assert verify_certificate(certificate, public_key).valid

    def test_exported_json_verifies(self, engine, sealed_journal, public_key):
        """
        HAPPY PATH: The JSON document alone is enough to verify.
        """
        certificate = engine.issue(sealed_journal.journal_id, {4})
        document = certificate.to_json()

        assert Certificate.from_json(document) == certificate
        assert verify_certificate(document, public_key).valid
        assert verify_certificate(json.loads(document), public_key).valid

    def test_base64_public_key_accepted(self, engine, sealed_journal, key_provider):
        certificate = engine.issue(sealed_journal.journal_id, {4})
        key_b64 = key_provider.public_key_b64(sealed_journal.owner_key_id)
        assert verify_certificate(certificate, key_b64).valid

    def test_resolver_used_without_explicit_key(self, engine, sealed_journal, key_provider):
        certificate = engine.issue(sealed_journal.journal_id, {4})
        assert Verifier(public_key_resolver=key_provider.public_key).verify(certificate).valid


class TestSummaryCertificate:

    def test_summary_reveals_no_entries(self, engine, sealed_journal, ledger, public_key):
        """
        HAPPY PATH: Length and roots only, still verifiable.
        """
        certificate = engine.issue_summary(sealed_journal.journal_id)
        body = certificate.body_dict()

        assert certificate.is_summary
        assert body["certificate_type"] == "summary"
        assert body["disclosed_entries"] == []
        assert body["entry_count"] == 10
        assert body["head_hash"] == ledger.head(sealed_journal.journal_id).hash
        assert body["checkpoints"][0]["merkle_root"]
        assert verify_certificate(certificate, public_key).valid

    def test_summary_of_empty_journal(self, engine, journal, key_provider):
        certificate = engine.issue_summary(journal.journal_id)
        assert certificate.head_sequence == -1
        assert verify_certificate(certificate, key_provider.public_key(journal.owner_key_id)).valid


class TestIssueErrors:

    def test_unsealed_entry_not_yet_checkpointed(self, engine, ledger, sealed_journal):
        fill(ledger, sealed_journal.journal_id, 2)
        with pytest.raises(NotYetCheckpointed):
            engine.issue(sealed_journal.journal_id, {11})

    def test_unknown_sequence(self, engine, sealed_journal):
        with pytest.raises(SequenceNotFound):
            engine.issue(sealed_journal.journal_id, {10})


class TestRecencyProofs:

    def test_last_mile_entry_via_chain(self, engine, ledger, sealed_journal, public_key):
        """
        HAPPY PATH: Entry 11 is unsealed but walks forward to head_hash.
        """
        jid = sealed_journal.journal_id
        fill(ledger, jid, 4)   # sequences 10-13

        certificate = engine.issue(jid, {4, 11}, allow_recency_proofs=True)

        assert set(certificate.proofs) == {4}
        assert [link.sequence for link in certificate.recency_proofs[11]] == [12, 13]
        assert verify_certificate(certificate, public_key).valid

    def test_head_entry_has_empty_chain(self, engine, ledger, sealed_journal, public_key):
        jid = sealed_journal.journal_id
        fill(ledger, jid, 1)

        certificate = engine.issue(jid, {10}, allow_recency_proofs=True)
        assert certificate.recency_proofs[10] == ()
        assert verify_certificate(certificate, public_key).valid

    def test_tampered_link_rejected(self, engine, ledger, sealed_journal, key_provider, public_key):
        jid = sealed_journal.journal_id
        fill(ledger, jid, 3)
        certificate = engine.issue(jid, {10}, allow_recency_proofs=True)

        links = list(certificate.recency_proofs[10])
        links[0] = replace(links[0], content_hash=digest(500))
        tampered = replace(certificate, recency_proofs={10: tuple(links)})
        tampered = replace(tampered, signature=key_provider.sign(tampered.owner_key_id, tampered.canonical_body()))

        result = verify_certificate(tampered, public_key)
        assert result.reasons == [FailureReason.PROOF_MISMATCH]

    def test_engine_level_recency_default(self, ledger, builder, key_provider, sealed_journal):
        from integrity_system.core.certificates import CertificateEngine

        fill(ledger, sealed_journal.journal_id, 1)
        engine = CertificateEngine(ledger, builder, key_provider, allow_recency_proofs=True)
        assert 10 in engine.issue(sealed_journal.journal_id, {10}).recency_proofs


# =============================================================================
# FAILURE REASONS
# =============================================================================

class TestTampering:

    @pytest.mark.critical
    def test_flipped_proof_sibling(self, engine, sealed_journal, public_key):
        """
        CRITICAL: One flipped sibling byte in the proof for #4 -> PROOF_MISMATCH.
        """
        certificate = engine.issue(sealed_journal.journal_id, {4})
        proof = certificate.proofs[4]
        steps = list(proof.sibling_hashes)
        steps[1] = ProofStep(flip_hex(steps[1].hash, 10), steps[1].side)
        tampered = replace(certificate, proofs={4: replace(proof, sibling_hashes=tuple(steps))})

        result = verify_certificate(tampered, public_key)

        assert not result.valid
        assert FailureReason.PROOF_MISMATCH in result.reasons
        assert FailureReason.INVALID_SIGNATURE in result.reasons

    @pytest.mark.parametrize("field", ["content_hash", "metadata", "prev_hash"])
    def test_tampered_disclosed_entry(self, engine, sealed_journal, public_key, field):
        """
        EDGE CASE: Altering any hashed field of a disclosed entry is caught.
        """
        certificate = engine.issue(sealed_journal.journal_id, {4})
        entry = certificate.disclosed_entries[0]
        if field == "content_hash":
            altered = replace(entry, content_hash=flip_hex(entry.content_hash))
        elif field == "metadata":
            altered = replace(entry, metadata={**entry.metadata, "n": "40"})
        else:
            altered = replace(entry, prev_hash=flip_hex(entry.prev_hash))
        tampered = replace(certificate, disclosed_entries=(altered,))

        reasons = verify_certificate(tampered, public_key).reasons
        assert FailureReason.ENTRY_HASH_MISMATCH in reasons or FailureReason.PROOF_MISMATCH in reasons

    def test_consistent_forgery_still_fails_proof(self, engine, sealed_journal, key_provider, public_key):
        """
        EDGE CASE: Re-hashing the forged entry and re-signing can't fix the Merkle path.
        """
        from integrity_system.core.hashing import compute_entry_hash

        certificate = engine.issue(sealed_journal.journal_id, {4})
        entry = certificate.disclosed_entries[0]
        forged_content = digest(404)
        forged = replace(
            entry,
            content_hash=forged_content,
            entry_hash=compute_entry_hash(4, forged_content, entry.prev_hash, entry.metadata),
        )
        tampered = replace(certificate, disclosed_entries=(forged,))
        tampered = replace(tampered, signature=key_provider.sign(tampered.owner_key_id, tampered.canonical_body()))

        assert verify_certificate(tampered, public_key).reasons == [FailureReason.PROOF_MISMATCH]

    def test_non_hex_content_hash(self, engine, sealed_journal, public_key):
        certificate = engine.issue(sealed_journal.journal_id, {4})
        altered = replace(certificate.disclosed_entries[0], content_hash="not hex")
        result = verify_certificate(replace(certificate, disclosed_entries=(altered,)), public_key)
        assert FailureReason.ENTRY_HASH_MISMATCH in result.reasons

    def test_wrong_key(self, engine, sealed_journal):
        other = LocalKeyProvider()
        other_key = other.public_key(other.generate_key())
        result = verify_certificate(engine.issue(sealed_journal.journal_id, {4}), other_key)
        assert result.reasons == [FailureReason.INVALID_SIGNATURE]

    def test_signature_removed(self, engine, sealed_journal, public_key):
        certificate = replace(engine.issue(sealed_journal.journal_id, {4}), signature="")
        assert verify_certificate(certificate, public_key).reasons == [FailureReason.INVALID_SIGNATURE]

    def test_head_hash_altered(self, engine, sealed_journal, public_key):
        certificate = engine.issue(sealed_journal.journal_id, set())
        tampered = replace(certificate, head_hash=flip_hex(certificate.head_hash))
        assert verify_certificate(tampered, public_key).reasons == [FailureReason.INVALID_SIGNATURE]

    def test_missing_proof(self, engine, sealed_journal, key_provider, public_key):
        certificate = engine.issue(sealed_journal.journal_id, {4})
        tampered = replace(certificate, proofs={})
        tampered = replace(tampered, signature=key_provider.sign(tampered.owner_key_id, tampered.canonical_body()))
        assert verify_certificate(tampered, public_key).reasons == [FailureReason.PROOF_MISMATCH]

    def test_proof_for_wrong_leaf(self, engine, sealed_journal, key_provider, public_key):
        certificate = engine.issue(sealed_journal.journal_id, {4, 5})
        swapped = {
            4: replace(certificate.proofs[5], leaf_sequence=4),
            5: replace(certificate.proofs[4], leaf_sequence=5),
        }
        tampered = replace(certificate, proofs=swapped)
        tampered = replace(tampered, signature=key_provider.sign(tampered.owner_key_id, tampered.canonical_body()))
        assert FailureReason.PROOF_MISMATCH in verify_certificate(tampered, public_key).reasons

    def test_proof_naming_unknown_checkpoint(self, engine, sealed_journal, key_provider, public_key):
        certificate = engine.issue(sealed_journal.journal_id, {4})
        proofs = {4: MerkleProof(4, "CKPT-99", certificate.proofs[4].sibling_hashes)}
        tampered = replace(certificate, proofs=proofs)
        tampered = replace(tampered, signature=key_provider.sign(tampered.owner_key_id, tampered.canonical_body()))
        assert verify_certificate(tampered, public_key).reasons == [FailureReason.PROOF_MISMATCH]


class TestRangeConsistency:

    def _resign(self, key_provider, certificate):
        return replace(certificate, signature=key_provider.sign(certificate.owner_key_id, certificate.canonical_body()))

    def test_checkpoint_past_head(self, engine, sealed_journal, key_provider, public_key):
        """
        EDGE CASE: Even a correctly signed certificate can't claim seals beyond its head.
        """
        certificate = engine.issue(sealed_journal.journal_id, set())
        tampered = self._resign(key_provider, replace(certificate, head_sequence=5))
        assert FailureReason.RANGE_INCONSISTENCY in verify_certificate(tampered, public_key).reasons

    def test_gap_between_checkpoints(self, engine, ledger, journal_with_10, builder, key_provider):
        jid = journal_with_10.journal_id
        builder.seal(jid, through_sequence=4)
        builder.seal(jid)
        certificate = engine.issue(jid, set())

        second = certificate.checkpoints[1]
        gapped = replace(second, range=(6, 9))
        tampered = self._resign(key_provider, replace(certificate, checkpoints=(certificate.checkpoints[0], gapped)))

        result = verify_certificate(tampered, key_provider.public_key(journal_with_10.owner_key_id))
        assert result.reasons == [FailureReason.RANGE_INCONSISTENCY]

    def test_not_starting_at_zero(self, engine, sealed_journal, key_provider, public_key):
        certificate = engine.issue(sealed_journal.journal_id, set())
        shifted = replace(certificate.checkpoints[0], range=(1, 9))
        tampered = self._resign(key_provider, replace(certificate, checkpoints=(shifted,)))
        assert verify_certificate(tampered, public_key).reasons == [FailureReason.RANGE_INCONSISTENCY]

    def test_reports_every_failure(self, engine, sealed_journal, public_key):
        """
        HAPPY PATH: Several problems -> several distinct reasons, never one boolean.
        """
        certificate = engine.issue(sealed_journal.journal_id, {4})
        entry = replace(certificate.disclosed_entries[0], content_hash=flip_hex(certificate.disclosed_entries[0].content_hash))
        shifted = replace(certificate.checkpoints[0], range=(1, 9))
        tampered = replace(certificate, disclosed_entries=(entry,), checkpoints=(shifted,))

        reasons = verify_certificate(tampered, public_key).reasons
        assert FailureReason.INVALID_SIGNATURE in reasons
        assert FailureReason.ENTRY_HASH_MISMATCH in reasons
        assert FailureReason.RANGE_INCONSISTENCY in reasons


class TestMalformed:

    def test_garbage_json(self, public_key):
        result = verify_certificate("{not json", public_key)
        assert result.reasons == [FailureReason.MALFORMED_CERTIFICATE]

    def test_missing_fields(self, public_key):
        result = verify_certificate({"journal_id": "x"}, public_key)
        assert result.reasons == [FailureReason.MALFORMED_CERTIFICATE]

    def test_edited_derived_field(self, engine, sealed_journal, public_key):
        """
        EDGE CASE: entry_count is derived, so editing it in the document is caught.
        """
        document = engine.issue(sealed_journal.journal_id, set()).to_dict()
        document["entry_count"] = 500
        assert FailureReason.MALFORMED_CERTIFICATE in verify_certificate(document, public_key).reasons

    def test_unknown_format(self, engine, sealed_journal, public_key):
        document = engine.issue(sealed_journal.journal_id, set()).to_dict()
        document["format"] = "someone.else.v9"
        assert FailureReason.MALFORMED_CERTIFICATE in verify_certificate(document, public_key).reasons


# =============================================================================
# WITNESS CONFIDENCE
# =============================================================================

class TestWitnessConfidence:

    def _anchored_certificate(self, engine, ledger, sealed_journal, witness):
        from integrity_system.core.datashapes import WitnessStatus

        jid = sealed_journal.journal_id
        checkpoint = ledger.get_checkpoints(jid)[0]
        ref = witness.anchor(checkpoint.merkle_root)
        ledger.update_witness(jid, checkpoint.checkpoint_id, WitnessStatus.ANCHORED, ref)
        return engine.issue(jid, {4})

    def test_no_refs(self, engine, sealed_journal, public_key):
        result = verify_certificate(engine.issue(sealed_journal.journal_id, {4}), public_key)
        assert result.witness_confidence == WitnessConfidence.NONE

    def test_refs_without_gateway(self, engine, ledger, sealed_journal, witness, public_key):
        certificate = self._anchored_certificate(engine, ledger, sealed_journal, witness)
        assert verify_certificate(certificate, public_key).witness_confidence == WitnessConfidence.UNCHECKED

    def test_confirmed(self, engine, ledger, sealed_journal, witness, public_key):
        certificate = self._anchored_certificate(engine, ledger, sealed_journal, witness)
        result = verify_certificate(certificate, public_key, witness=witness)
        assert result.valid
        assert result.witness_confidence == WitnessConfidence.CONFIRMED

    def test_unconfirmed_does_not_invalidate(self, engine, ledger, sealed_journal, witness, public_key):
        """
        HAPPY PATH: A witness that never heard of the root lowers trust, not validity.
        """
        certificate = self._anchored_certificate(engine, ledger, sealed_journal, witness)
        result = verify_certificate(certificate, public_key, witness=LocalWitness())
        assert result.valid
        assert result.witness_confidence == WitnessConfidence.UNCONFIRMED
