#!/usr/bin/env python3
"""
datashapes.py - Centralized Data Shape Definitions

All dataclasses and enums used by the integrity engine live here.
No hashing, no I/O - just definitions of what data looks like, plus the
dict conversions needed to export them.

Other modules import from here to ensure consistent structures:
    from integrity_system.core.datashapes import JournalEntry, Checkpoint, Certificate

Created: 2026-10-19
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple


# 64 hex zeros - prev_hash of sequence 0
GENESIS_HASH = "0" * 64

CERTIFICATE_FORMAT = "mindmark.certificate.v1"


# =============================================================================
# ENUMS
# =============================================================================

class EntryType(Enum):
    """Writing-process events a journal records (stored in metadata['entry_type'])."""
    PROMPT = "prompt"                # Writer asked the AI something
    RESPONSE = "response"            # AI answered
    DECISION = "decision"            # Writer accepted/rejected a suggestion
    ANNOTATION = "annotation"        # Writer note on the process
    REVISION = "revision"            # Document text changed
    VOICE = "voice"                  # Dictated input
    RETRACTION = "retraction"        # Points back at an earlier entry, never deletes it


class WitnessStatus(Enum):
    """External anchoring state of a checkpoint."""
    PENDING = "pending"
    ANCHORED = "anchored"
    FAILED = "failed"


class ProofSide(Enum):
    """Which side of the running hash a Merkle sibling sits on."""
    LEFT = "left"
    RIGHT = "right"


class FailureReason(Enum):
    """Distinct verification failures - never collapsed into a single boolean."""
    INVALID_SIGNATURE = "invalid_signature"
    ENTRY_HASH_MISMATCH = "entry_hash_mismatch"
    PROOF_MISMATCH = "proof_mismatch"
    RANGE_INCONSISTENCY = "range_inconsistency"
    MALFORMED_CERTIFICATE = "malformed_certificate"


class WitnessConfidence(Enum):
    """How much the external witnesses back a certificate (separate from validity)."""
    NONE = "none"                    # No checkpoint carries a witness_ref
    UNCHECKED = "unchecked"          # Refs present, no gateway to ask
    UNCONFIRMED = "unconfirmed"      # Gateway confirmed none of them
    PARTIAL = "partial"              # Some confirmed
    CONFIRMED = "confirmed"          # Every ref confirmed


# =============================================================================
# LEDGER SHAPES
# =============================================================================

@dataclass(frozen=True)
class JournalHead:
    """The (sequence, hash) pair a writer must present to append."""
    sequence: int                    # -1 for an empty journal
    hash: str                        # GENESIS_HASH for an empty journal


@dataclass(frozen=True)
class JournalEntry:
    """
    Single entry in a journal's hash chain.

    entry_hash = H(sequence || content_hash || prev_hash || canonical(metadata)).
    The ledger only ever sees content_hash, never the text it was computed from.
    """
    # === Chain Identity ===
    sequence: int                    # Strictly increasing from 0, never gaps
    timestamp: str                   # ISO format UTC
    content_hash: str                # Digest supplied by the content source
    prev_hash: str                   # entry_hash of sequence-1 (GENESIS_HASH for 0)

    # === Event data ===
    metadata: Dict[str, str] = field(default_factory=dict)

    # === Integrity ===
    entry_hash: str = ""

    @property
    def entry_type(self) -> Optional[str]:
        return self.metadata.get("entry_type")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "content_hash": self.content_hash,
            "prev_hash": self.prev_hash,
            "metadata": dict(self.metadata),
            "entry_hash": self.entry_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JournalEntry":
        return cls(
            sequence=int(data["sequence"]),
            timestamp=data["timestamp"],
            content_hash=data["content_hash"],
            prev_hash=data["prev_hash"],
            metadata=dict(data.get("metadata") or {}),
            entry_hash=data["entry_hash"],
        )


@dataclass
class Checkpoint:
    """
    Merkle root over a contiguous, closed range of a journal's entries.

    Everything except the witness fields is fixed once sealed. witness_status
    moves Pending -> Anchored or Pending -> Failed; a Failed checkpoint is
    still valid proof material.
    """
    checkpoint_id: str               # CKPT-<n>, numbered per journal
    journal_id: str
    range: Tuple[int, int]           # (start_seq, end_seq), inclusive
    merkle_root: str
    created_at: str
    witness_status: WitnessStatus = WitnessStatus.PENDING
    witness_ref: Optional[str] = None

    @property
    def start(self) -> int:
        return self.range[0]

    @property
    def end(self) -> int:
        return self.range[1]

    @property
    def leaf_count(self) -> int:
        return self.range[1] - self.range[0] + 1

    def covers(self, sequence: int) -> bool:
        return self.range[0] <= sequence <= self.range[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "journal_id": self.journal_id,
            "range": [self.range[0], self.range[1]],
            "merkle_root": self.merkle_root,
            "created_at": self.created_at,
            "witness_status": self.witness_status.value,
            "witness_ref": self.witness_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        start, end = data["range"]
        return cls(
            checkpoint_id=data["checkpoint_id"],
            journal_id=data["journal_id"],
            range=(int(start), int(end)),
            merkle_root=data["merkle_root"],
            created_at=data["created_at"],
            witness_status=WitnessStatus(data.get("witness_status", "pending")),
            witness_ref=data.get("witness_ref"),
        )


@dataclass
class Journal:
    """
    Owned aggregate for one journal's chain state.

    Mutated only through the ledger's CAS-guarded append and the builder's
    seal - never directly.
    """
    journal_id: str
    owner_key_id: str
    created_at: str
    entries: List[JournalEntry] = field(default_factory=list)
    checkpoints: List[Checkpoint] = field(default_factory=list)

    @property
    def head_sequence(self) -> int:
        return self.entries[-1].sequence if self.entries else -1

    @property
    def head_hash(self) -> str:
        return self.entries[-1].entry_hash if self.entries else GENESIS_HASH

    @property
    def head(self) -> JournalHead:
        return JournalHead(self.head_sequence, self.head_hash)

    @property
    def last_sealed(self) -> int:
        """Last sequence covered by a checkpoint (-1 when nothing is sealed)."""
        return self.checkpoints[-1].end if self.checkpoints else -1

    def index_record(self) -> Dict[str, Any]:
        return {
            "journal_id": self.journal_id,
            "owner_key_id": self.owner_key_id,
            "created_at": self.created_at,
        }


# =============================================================================
# PROOF SHAPES
# =============================================================================

@dataclass(frozen=True)
class ProofStep:
    """One sibling on the path from a leaf to the root."""
    hash: str
    side: ProofSide

    def to_dict(self) -> Dict[str, str]:
        return {"hash": self.hash, "side": self.side.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofStep":
        return cls(hash=data["hash"], side=ProofSide(data["side"]))


@dataclass(frozen=True)
class MerkleProof:
    """Path from a disclosed entry's leaf to its checkpoint's merkle_root."""
    leaf_sequence: int
    checkpoint_id: str
    sibling_hashes: Tuple[ProofStep, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leaf_sequence": self.leaf_sequence,
            "checkpoint_id": self.checkpoint_id,
            "sibling_hashes": [step.to_dict() for step in self.sibling_hashes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MerkleProof":
        return cls(
            leaf_sequence=int(data["leaf_sequence"]),
            checkpoint_id=data["checkpoint_id"],
            sibling_hashes=tuple(ProofStep.from_dict(s) for s in data.get("sibling_hashes", [])),
        )


@dataclass(frozen=True)
class ChainLink:
    """
    Hash inputs of one later entry, used to walk a last-mile entry up to the head.

    Reveals the entry's digest and metadata, never content.
    """
    sequence: int
    content_hash: str
    metadata: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "content_hash": self.content_hash,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainLink":
        return cls(
            sequence=int(data["sequence"]),
            content_hash=data["content_hash"],
            metadata=dict(data.get("metadata") or {}),
        )


# =============================================================================
# CERTIFICATE SHAPES
# =============================================================================

@dataclass(frozen=True)
class Certificate:
    """
    Portable, signed statement about a journal's chain at issuance time.

    Empty disclosed_entries -> summary certificate (length + root, no content).
    Non-empty -> disclosure certificate with one proof per disclosed entry.
    Immutable once signed; a later certificate supersedes it in narrative only.
    """
    journal_id: str
    owner_key_id: str
    head_sequence: int
    head_hash: str
    issued_at: str
    checkpoints: Tuple[Checkpoint, ...] = ()
    disclosed_entries: Tuple[JournalEntry, ...] = ()
    proofs: Dict[int, MerkleProof] = field(default_factory=dict)
    recency_proofs: Dict[int, Tuple[ChainLink, ...]] = field(default_factory=dict)
    signature: str = ""
    format: str = CERTIFICATE_FORMAT

    @property
    def certificate_type(self) -> str:
        return "disclosure" if self.disclosed_entries else "summary"

    @property
    def is_summary(self) -> bool:
        return not self.disclosed_entries

    @property
    def entry_count(self) -> int:
        return self.head_sequence + 1

    def body_dict(self) -> Dict[str, Any]:
        """Everything the signature covers."""
        return {
            "format": self.format,
            "certificate_type": self.certificate_type,
            "journal_id": self.journal_id,
            "owner_key_id": self.owner_key_id,
            "head_sequence": self.head_sequence,
            "head_hash": self.head_hash,
            "entry_count": self.entry_count,
            "issued_at": self.issued_at,
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "disclosed_entries": [e.to_dict() for e in self.disclosed_entries],
            "proofs": {str(seq): p.to_dict() for seq, p in self.proofs.items()},
            "recency_proofs": {
                str(seq): [link.to_dict() for link in links]
                for seq, links in self.recency_proofs.items()
            },
        }

    def canonical_body(self) -> bytes:
        """The exact bytes the owner signs."""
        from integrity_system.core.hashing import canonical_json
        return canonical_json(self.body_dict())

    def to_dict(self) -> Dict[str, Any]:
        data = self.body_dict()
        data["signature"] = self.signature
        return data

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True, ensure_ascii=False)

    @classmethod
    def from_json(cls, text) -> "Certificate":
        return cls.from_dict(json.loads(text))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Certificate":
        """
        Rebuild from an exported document.

        Raises KeyError/ValueError/TypeError on malformed input - the verifier
        turns those into MALFORMED_CERTIFICATE.
        """
        return cls(
            journal_id=data["journal_id"],
            owner_key_id=data["owner_key_id"],
            head_sequence=int(data["head_sequence"]),
            head_hash=data["head_hash"],
            issued_at=data["issued_at"],
            checkpoints=tuple(Checkpoint.from_dict(c) for c in data.get("checkpoints", [])),
            disclosed_entries=tuple(JournalEntry.from_dict(e) for e in data.get("disclosed_entries", [])),
            proofs={int(seq): MerkleProof.from_dict(p) for seq, p in data.get("proofs", {}).items()},
            recency_proofs={
                int(seq): tuple(ChainLink.from_dict(link) for link in links)
                for seq, links in data.get("recency_proofs", {}).items()
            },
            signature=data.get("signature", ""),
            format=data.get("format", CERTIFICATE_FORMAT),
        )


@dataclass
class VerificationResult:
    """Outcome of verifying a certificate - every failed check is listed."""
    valid: bool
    reasons: List[FailureReason] = field(default_factory=list)
    details: List[str] = field(default_factory=list)
    witness_confidence: WitnessConfidence = WitnessConfidence.NONE

    def __bool__(self):
        return self.valid

    def __repr__(self):
        status = "VALID" if self.valid else "INVALID"
        return f"VerificationResult({status}, reasons={[r.value for r in self.reasons]})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "reasons": [r.value for r in self.reasons],
            "details": list(self.details),
            "witness_confidence": self.witness_confidence.value,
        }
