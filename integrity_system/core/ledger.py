#!/usr/bin/env python3
"""
ledger.py - Append-only, hash-chained journals of writing-process events

This is the column of truth for a writer's process: every prompt, response,
revision and decision becomes one entry whose hash folds in the previous
entry's hash. Editing, removing or reordering any historical entry breaks
every hash after it.

Architecture:
    EntryLedger: owns every Journal aggregate
        - append():  compare-and-swap on (head_sequence, head_hash)
        - retract(): new entry pointing back, never a deletion
        - verify_chain(): recompute 0..head and compare

    Persistence (optional, storage_dir):
        - <journal_id>.jsonl              one entry per line, fsync'd per append
        - <journal_id>_checkpoints.json   atomically replaced on every change
        - journals.json                   index of journal ids and owners

    The ledger never sees raw content - only the digest the content source
    computed (see hashing.hash_content).

Usage:
    ledger = EntryLedger()
    journal = ledger.create_journal(owner_key_id)
    head = ledger.head(journal.journal_id)
    entry = ledger.append(journal.journal_id, digest, {"entry_type": "prompt"}, expected_head=head)
    valid, bad_seq = ledger.verify_chain(journal.journal_id)
"""

import json
import os
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple, Any, Mapping

from integrity_system.core.datashapes import (
    GENESIS_HASH,
    Checkpoint,
    EntryType,
    Journal,
    JournalEntry,
    JournalHead,
    WitnessStatus,
)
from integrity_system.core.errors import (
    JournalNotFound,
    LedgerWriteError,
    NonContiguousRange,
    SequenceConflict,
    SequenceNotFound,
)
from integrity_system.core.event_emitter import EventEmitter
from integrity_system.core.hashing import (
    canonical_json,
    compute_entry_hash,
    hash_content,
    normalize_metadata,
    require_digest,
)
from integrity_system.core.integrity_logger import ledger_logger
from integrity_system.core.merkle import MerkleTree

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

AI_INTERACTION_TYPES = (EntryType.PROMPT.value, EntryType.RESPONSE.value)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso(timestamp: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None


def checkpoint_root_matches(checkpoint: Checkpoint, entries: Sequence[JournalEntry]) -> bool:
    """Recompute a checkpoint's root from the entries in its range."""
    if checkpoint.start < 0 or checkpoint.start > checkpoint.end or checkpoint.end >= len(entries):
        return False
    tree = MerkleTree([e.entry_hash for e in entries[checkpoint.start:checkpoint.end + 1]])
    return tree.root_hash == checkpoint.merkle_root


class EntryLedger:
    """
    Owns the journals and is the only thing that mutates them.

    Each journal has its own lock, held only for the compare-and-commit
    moment of an append or a checkpoint commit. Different journals never
    share a lock.
    """

    def __init__(
        self,
        storage_dir: Optional[str] = None,
        emitter: Optional[EventEmitter] = None
    ):
        """
        Args:
            storage_dir: Directory for JSONL persistence. None = memory only.
            emitter: Where to publish entry/journal events.
        """
        self.storage_dir = storage_dir
        self.emitter = emitter or EventEmitter()

        self._journals: Dict[str, Journal] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.load_warnings: List[str] = []

        if storage_dir:
            os.makedirs(storage_dir, exist_ok=True)
            self._load()

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _index_path(self) -> str:
        return os.path.join(self.storage_dir, "journals.json")

    def _entries_path(self, journal_id: str) -> str:
        return os.path.join(self.storage_dir, f"{journal_id}.jsonl")

    def _checkpoints_path(self, journal_id: str) -> str:
        return os.path.join(self.storage_dir, f"{journal_id}_checkpoints.json")

    def _load(self):
        """
        Load every journal listed in the index.

        Recovery behavior:
        - Unreadable entry line: stop loading that journal there and record a
          warning. Skipping it would leave a sequence gap.
        - Corrupted checkpoints file: record a warning, continue with none.
        - Checkpoint past the recovered head, or whose root no longer matches
          its entries: drop it and every later one, rewrite the file.
        """
        if not os.path.exists(self._index_path()):
            return

        try:
            with open(self._index_path(), 'r') as f:
                index = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            self.load_warnings.append(f"Journal index unreadable, starting empty ({e})")
            return

        for record in index:
            journal = Journal(
                journal_id=record["journal_id"],
                owner_key_id=record["owner_key_id"],
                created_at=record.get("created_at", ""),
            )
            self._load_entries(journal)
            self._load_checkpoints(journal)
            self._reconcile_checkpoints(journal)
            self._journals[journal.journal_id] = journal
            self._locks[journal.journal_id] = threading.Lock()

        for warning in self.load_warnings:
            ledger_logger.log_warning("LOAD_WARNING", warning)

    def _load_entries(self, journal: Journal):
        path = self._entries_path(journal.journal_id)
        if not os.path.exists(path):
            return

        with open(path, 'r') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = JournalEntry.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                    self.load_warnings.append(
                        f"{journal.journal_id} line {line_number}: unreadable entry, "
                        f"load stopped at sequence {journal.head_sequence} ({e})"
                    )
                    return
                if entry.sequence != journal.head_sequence + 1:
                    self.load_warnings.append(
                        f"{journal.journal_id} line {line_number}: expected sequence "
                        f"{journal.head_sequence + 1}, found {entry.sequence}; load stopped"
                    )
                    return
                journal.entries.append(entry)

    def _load_checkpoints(self, journal: Journal):
        path = self._checkpoints_path(journal.journal_id)
        if not os.path.exists(path):
            return
        try:
            with open(path, 'r') as f:
                journal.checkpoints = [Checkpoint.from_dict(c) for c in json.load(f)]
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            self.load_warnings.append(
                f"{journal.journal_id}: checkpoints file invalid, starting with none ({e})"
            )
            journal.checkpoints = []

    def _reconcile_checkpoints(self, journal: Journal):
        """
        Keep the longest run of checkpoints that still matches the loaded
        entries. A truncated tail can leave checkpoints over sequences that
        no longer exist, and new appends would reuse those sequences.
        """
        kept: List[Checkpoint] = []
        for checkpoint in journal.checkpoints:
            contiguous = checkpoint.start == (kept[-1].end + 1 if kept else 0)
            if not contiguous or not checkpoint_root_matches(checkpoint, journal.entries):
                break
            kept.append(checkpoint)

        if len(kept) == len(journal.checkpoints):
            return

        for dropped in journal.checkpoints[len(kept):]:
            self.load_warnings.append(
                f"{journal.journal_id}: {dropped.checkpoint_id} covering {dropped.start}-{dropped.end} "
                f"does not match the loaded entries (head {journal.head_sequence}), dropped"
            )
        journal.checkpoints = kept
        self._save_checkpoints(journal.journal_id, kept)

    def _atomic_write_json(self, path: str, data: Any):
        temp_path = path + ".tmp"
        try:
            with open(temp_path, 'w') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            raise LedgerWriteError(f"Failed to write {path}: {e}") from e

    def _save_index(self):
        if not self.storage_dir:
            return
        self._atomic_write_json(
            self._index_path(),
            [j.index_record() for j in self._journals.values()]
        )

    def _save_entry(self, journal_id: str, entry: JournalEntry):
        """
        Append single entry to the journal's log file.

        Raises:
            LedgerWriteError: If the write fails (disk full, permissions, etc.)
        """
        if not self.storage_dir:
            return
        try:
            with open(self._entries_path(journal_id), 'a') as f:
                f.write(json.dumps(entry.to_dict(), sort_keys=True) + '\n')
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise LedgerWriteError(f"Failed to write entry: {e}") from e

    def _save_checkpoints(self, journal_id: str, checkpoints: List[Checkpoint]):
        if not self.storage_dir:
            return
        self._atomic_write_json(
            self._checkpoints_path(journal_id),
            [c.to_dict() for c in checkpoints]
        )

    # =========================================================================
    # JOURNAL LIFECYCLE
    # =========================================================================

    def create_journal(self, owner_key_id: str, journal_id: Optional[str] = None) -> Journal:
        """
        Create an empty journal owned by owner_key_id.

        Raises:
            ValueError: journal_id already exists or is not filename-safe
        """
        journal_id = journal_id or str(uuid.uuid4())
        if not _SAFE_ID.match(journal_id):
            raise ValueError(f"Journal id must match {_SAFE_ID.pattern}: {journal_id!r}")

        with self._registry_lock:
            if journal_id in self._journals:
                raise ValueError(f"Journal {journal_id} already exists")

            journal = Journal(
                journal_id=journal_id,
                owner_key_id=owner_key_id,
                created_at=utc_now_iso(),
            )
            self._journals[journal_id] = journal
            self._locks[journal_id] = threading.Lock()
            try:
                self._save_index()
            except LedgerWriteError:
                del self._journals[journal_id]
                del self._locks[journal_id]
                raise

        ledger_logger.log_info("JOURNAL_CREATED", f"Journal {journal_id} created", {
            "owner_key_id": owner_key_id
        })
        self.emitter.emit("journal_created", {"owner_key_id": owner_key_id}, journal_id=journal_id)
        return journal

    def get_journal(self, journal_id: str) -> Journal:
        journal = self._journals.get(journal_id)
        if journal is None:
            raise JournalNotFound(f"No journal {journal_id}")
        return journal

    def list_journals(self) -> List[str]:
        with self._registry_lock:
            return list(self._journals.keys())

    def _guard(self, journal_id: str) -> threading.Lock:
        self.get_journal(journal_id)
        return self._locks[journal_id]

    def head(self, journal_id: str) -> JournalHead:
        with self._guard(journal_id):
            return self._journals[journal_id].head

    def snapshot(self, journal_id: str) -> Tuple[Journal, Tuple[JournalEntry, ...], Tuple[Checkpoint, ...]]:
        """
        Consistent read-only view: entries and checkpoints as of one instant.

        Checkpoints are copied so later witness updates don't leak into an
        in-flight certificate.
        """
        with self._guard(journal_id):
            journal = self._journals[journal_id]
            entries = tuple(journal.entries)
            checkpoints = tuple(Checkpoint.from_dict(c.to_dict()) for c in journal.checkpoints)
        return journal, entries, checkpoints

    # =========================================================================
    # PUBLIC API - Append
    # =========================================================================

    def append(
        self,
        journal_id: str,
        content_hash: str,
        metadata: Optional[Mapping[str, str]] = None,
        expected_head: Optional[JournalHead] = None
    ) -> JournalEntry:
        """
        Append a new entry chained to the current head.

        This is the ONLY way to add data. No updates, no deletes.

        Args:
            journal_id: Target journal
            content_hash: Digest of the writer's content (never the content)
            metadata: str -> str event data (entry_type, tool, duration, ...)
            expected_head: The head the caller observed. When given, the append
                only happens if it is still the head.

        Returns:
            The created JournalEntry

        Raises:
            SequenceConflict: expected_head is stale - refresh and retry
            InvalidDigest / InvalidMetadata: inputs can't be hashed canonically
            LedgerWriteError: persisting failed; in-memory state NOT modified
        """
        require_digest(content_hash, "content_hash")
        normalized = normalize_metadata(metadata or {})

        with self._guard(journal_id):
            journal = self._journals[journal_id]
            current = journal.head

            if expected_head is not None and expected_head != current:
                self.emitter.emit("append_conflict", {
                    "expected_sequence": expected_head.sequence,
                    "current_sequence": current.sequence,
                }, journal_id=journal_id)
                raise SequenceConflict(
                    f"Journal {journal_id} head is {current.sequence}, "
                    f"caller presented {expected_head.sequence}",
                    current_head=current
                )

            sequence = current.sequence + 1
            entry = JournalEntry(
                sequence=sequence,
                timestamp=utc_now_iso(),
                content_hash=content_hash,
                prev_hash=current.hash,
                metadata=normalized,
                entry_hash=compute_entry_hash(sequence, content_hash, current.hash, normalized),
            )

            # Disk first. If this raises, memory stays at the old head.
            self._save_entry(journal_id, entry)
            journal.entries.append(entry)

        self.emitter.emit("entry_appended", {
            "sequence": entry.sequence,
            "entry_hash": entry.entry_hash,
            "entry_type": entry.entry_type,
        }, journal_id=journal_id)
        return entry

    def submit_content_digest(
        self,
        journal_id: str,
        digest: str,
        metadata: Optional[Mapping[str, str]] = None,
        max_retries: int = 5
    ) -> JournalEntry:
        """
        Content-source entry point: append against the freshest head.

        Retries on SequenceConflict up to max_retries, re-reading the head
        each time. Other errors propagate immediately.
        """
        last_conflict: Optional[SequenceConflict] = None
        for attempt in range(max_retries):
            head = self.head(journal_id)
            try:
                return self.append(journal_id, digest, metadata, expected_head=head)
            except SequenceConflict as e:
                last_conflict = e
                ledger_logger.log_debug("APPEND_RETRY", f"Conflict on attempt {attempt + 1}", {
                    "journal_id": journal_id,
                    "presented": head.sequence,
                })
        raise last_conflict

    def retract(self, journal_id: str, sequence: int, reason: str = "") -> JournalEntry:
        """
        Record that an earlier entry is withdrawn.

        The original entry stays in the chain; the retraction is a new entry
        whose metadata points back at it.
        """
        target = self.get_entry(journal_id, sequence)
        if target.entry_type == EntryType.RETRACTION.value:
            ledger_logger.log_warning("RETRACT_RETRACTION", "Retracting a retraction entry", {
                "journal_id": journal_id,
                "sequence": sequence,
            })

        record = {"retracts_sequence": sequence, "retracted_entry_hash": target.entry_hash, "reason": reason}
        return self.submit_content_digest(
            journal_id,
            hash_content(canonical_json(record)),
            {
                "entry_type": EntryType.RETRACTION.value,
                "retracts_sequence": str(sequence),
                "reason": reason,
            },
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_entries(
        self,
        journal_id: str,
        start_seq: Optional[int] = None,
        end_seq: Optional[int] = None
    ) -> List[JournalEntry]:
        """Get entries in sequence range (inclusive)."""
        _, entries, _ = self.snapshot(journal_id)
        start = 0 if start_seq is None else max(start_seq, 0)
        end = len(entries) - 1 if end_seq is None else min(end_seq, len(entries) - 1)
        # Sequences equal list positions (no gaps)
        return list(entries[start:end + 1])

    def get_entry(self, journal_id: str, sequence: int) -> JournalEntry:
        _, entries, _ = self.snapshot(journal_id)
        if sequence < 0 or sequence >= len(entries):
            raise SequenceNotFound(f"Journal {journal_id} has no sequence {sequence}")
        return entries[sequence]

    def get_by_type(self, journal_id: str, entry_type: EntryType) -> List[JournalEntry]:
        return [e for e in self.get_entries(journal_id) if e.entry_type == entry_type.value]

    def get_retractions_for(self, journal_id: str, sequence: int) -> List[JournalEntry]:
        """All retraction entries that point at a given sequence."""
        return [
            e for e in self.get_by_type(journal_id, EntryType.RETRACTION)
            if e.metadata.get("retracts_sequence") == str(sequence)
        ]

    def get_checkpoints(self, journal_id: str) -> List[Checkpoint]:
        _, _, checkpoints = self.snapshot(journal_id)
        return list(checkpoints)

    # =========================================================================
    # CHECKPOINT STORAGE (used by CheckpointBuilder)
    # =========================================================================

    def commit_checkpoint(self, checkpoint: Checkpoint, expected_last_sealed: int) -> Checkpoint:
        """
        Persist a freshly built checkpoint if nobody sealed in the meantime.

        Raises:
            NonContiguousRange: last_sealed moved, or the range doesn't start
                right after it
        """
        journal_id = checkpoint.journal_id
        with self._guard(journal_id):
            journal = self._journals[journal_id]
            if journal.last_sealed != expected_last_sealed or checkpoint.start != journal.last_sealed + 1:
                raise NonContiguousRange(
                    f"Journal {journal_id} last sealed {journal.last_sealed}, "
                    f"checkpoint starts at {checkpoint.start}"
                )
            updated = journal.checkpoints + [checkpoint]
            self._save_checkpoints(journal_id, updated)
            journal.checkpoints = updated
        return checkpoint

    def update_witness(
        self,
        journal_id: str,
        checkpoint_id: str,
        status: WitnessStatus,
        witness_ref: Optional[str] = None
    ) -> Checkpoint:
        """The only mutation a sealed checkpoint ever sees."""
        with self._guard(journal_id):
            journal = self._journals[journal_id]
            checkpoint = next((c for c in journal.checkpoints if c.checkpoint_id == checkpoint_id), None)
            if checkpoint is None:
                raise KeyError(f"No checkpoint {checkpoint_id} in journal {journal_id}")
            checkpoint.witness_status = status
            if witness_ref is not None:
                checkpoint.witness_ref = witness_ref
            self._save_checkpoints(journal_id, journal.checkpoints)
        return checkpoint

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify_chain(self, journal_id: str) -> Tuple[bool, Optional[int]]:
        """
        Walk the entire chain and verify integrity.

        Returns:
            (True, None) if valid
            (False, sequence) if invalid - sequence is first broken entry
        """
        journal, entries, _ = self.snapshot(journal_id)
        previous_hash = GENESIS_HASH

        for position, entry in enumerate(entries):
            if entry.sequence != position or entry.prev_hash != previous_hash:
                return self._chain_broken(journal_id, position)
            try:
                expected = compute_entry_hash(entry.sequence, entry.content_hash, entry.prev_hash, entry.metadata)
            except (ValueError, TypeError):
                return self._chain_broken(journal_id, position)
            if entry.entry_hash != expected:
                return self._chain_broken(journal_id, position)
            previous_hash = entry.entry_hash

        return True, None

    def _chain_broken(self, journal_id: str, sequence: int) -> Tuple[bool, int]:
        ledger_logger.log_error("CHAIN_BROKEN", f"Journal {journal_id} fails verification at {sequence}")
        self.emitter.emit("chain_invalid", {"first_bad_sequence": sequence}, journal_id=journal_id)
        return False, sequence

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def chain_summary(self, journal_id: str) -> Dict[str, Any]:
        """
        Totals, validity and endpoints of the chain.

        is_valid needs both an intact chain and every checkpoint root
        recomputing from its entries.
        """
        journal, entries, checkpoints = self.snapshot(journal_id)
        valid, bad_seq = self.verify_chain(journal_id)
        invalid_checkpoints = [
            c.checkpoint_id for c in checkpoints
            if not checkpoint_root_matches(c, entries)
        ]
        for checkpoint_id in invalid_checkpoints:
            ledger_logger.log_error("ROOT_DRIFT", f"{checkpoint_id} root does not match entries", {
                "journal_id": journal_id
            })
        return {
            'journal_id': journal_id,
            'owner_key_id': journal.owner_key_id,
            'total_entries': len(entries),
            'is_valid': valid and not invalid_checkpoints,
            'chain_valid': valid,
            'first_bad_sequence': bad_seq,
            'checkpoints_valid': not invalid_checkpoints,
            'invalid_checkpoints': invalid_checkpoints,
            'first_hash': entries[0].entry_hash if entries else "",
            'last_hash': entries[-1].entry_hash if entries else "",
            'head_sequence': entries[-1].sequence if entries else -1,
            'checkpoint_count': len(checkpoints),
            'last_sealed': checkpoints[-1].end if checkpoints else -1,
            'unsealed_entries': len(entries) - (checkpoints[-1].end + 1 if checkpoints else 0),
        }

    def process_insights(self, journal_id: str) -> Dict[str, Any]:
        """What the writing process looked like, from metadata alone."""
        entries = self.get_entries(journal_id)

        by_type: Dict[str, int] = {}
        for entry in entries:
            key = entry.entry_type or "untyped"
            by_type[key] = by_type.get(key, 0) + 1

        times = [t for t in (parse_iso(e.timestamp) for e in entries) if t is not None]
        time_spent = (max(times) - min(times)).total_seconds() if len(times) > 1 else 0.0

        return {
            'total_entries': len(entries),
            'entry_types': by_type,
            'revision_count': by_type.get(EntryType.REVISION.value, 0),
            'ai_interaction_count': sum(by_type.get(t, 0) for t in AI_INTERACTION_TYPES),
            'retraction_count': by_type.get(EntryType.RETRACTION.value, 0),
            'time_spent_seconds': time_spent,
            'average_seconds_per_entry': time_spent / len(entries) if entries else 0.0,
            'first_entry': entries[0].timestamp if entries else None,
            'last_entry': entries[-1].timestamp if entries else None,
        }
