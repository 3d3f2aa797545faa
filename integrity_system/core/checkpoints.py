#!/usr/bin/env python3
"""
checkpoints.py - Sealing journal ranges into Merkle checkpoints

Checkpoints are the batch layer above the hash chain: every so often the
unsealed tail of a journal becomes one Merkle tree, and its root is what
certificates point at and what witnesses anchor.

Architecture:
    CheckpointPolicy   decides WHEN (count threshold, optional time/type triggers)
    CheckpointBuilder  decides WHAT (contiguous range, tree, proof paths)
    WitnessAnchorer    background anchoring with capped exponential backoff

A seal only ever reads a closed prefix of the journal, so it can run while
appends continue. Two seals on one journal race on last_sealed; the loser
gets NonContiguousRange.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from integrity_system.core.datashapes import (
    Checkpoint,
    JournalEntry,
    MerkleProof,
    WitnessStatus,
)
from integrity_system.core.errors import (
    CheckpointNotFound,
    EmptyRange,
    NonContiguousRange,
    NotYetCheckpointed,
    SequenceNotFound,
    WitnessUnavailable,
)
from integrity_system.core.event_emitter import EventEmitter
from integrity_system.core.integrity_logger import checkpoint_logger, witness_logger
from integrity_system.core.ledger import EntryLedger, checkpoint_root_matches, parse_iso, utc_now_iso
from integrity_system.core.merkle import MerkleTree
from integrity_system.core.witness import WitnessGateway


# =============================================================================
# POLICY
# =============================================================================

class CheckpointPolicy:
    """
    Decides when the unsealed tail of a journal should be sealed.

    Hybrid approach:
        - Count-based: seal once count_threshold entries are unsealed
        - Time-based: seal if the last seal is older than time_threshold_hours
        - Type-based: seal right after an entry of a listed type
    """

    def __init__(
        self,
        count_threshold: int = 10,
        time_threshold_hours: Optional[float] = None,
        seal_on_types: Optional[Sequence[str]] = None
    ):
        if count_threshold < 1:
            raise ValueError("count_threshold must be at least 1")
        self.count_threshold = count_threshold
        self.time_threshold = timedelta(hours=time_threshold_hours) if time_threshold_hours else None
        self.seal_on_types = set(seal_on_types or [])

    def should_seal(
        self,
        unsealed_count: int,
        last_seal_at: Optional[datetime] = None,
        latest_entry: Optional[JournalEntry] = None
    ) -> Optional[str]:
        """
        Returns:
            The trigger that fired (count_threshold, time_threshold,
            entry_type:<type>), or None when no seal is due
        """
        if unsealed_count <= 0:
            return None

        if unsealed_count >= self.count_threshold:
            return "count_threshold"

        if self.time_threshold and last_seal_at is not None:
            if datetime.now(timezone.utc) - last_seal_at > self.time_threshold:
                return "time_threshold"

        if latest_entry is not None and latest_entry.entry_type in self.seal_on_types:
            return f"entry_type:{latest_entry.entry_type}"

        return None


# =============================================================================
# WITNESS ANCHORING
# =============================================================================

class WitnessAnchorer:
    """
    Anchors checkpoint roots off the append/seal path.

    Each submitted checkpoint gets up to max_attempts anchor calls, sleeping
    min(base_delay * 2**attempt, max_delay) between them. The sleep is a wait
    on stop_event, so shutdown(cancel=True) interrupts it and leaves the
    checkpoint Pending for a later resubmit.
    """

    def __init__(
        self,
        witness: WitnessGateway,
        ledger: EntryLedger,
        emitter: Optional[EventEmitter] = None,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        workers: int = 2
    ):
        self.witness = witness
        self.ledger = ledger
        self.emitter = emitter or ledger.emitter
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

        self.stop_event = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="witness")
        self._futures: List[Future] = []
        self._lock = threading.Lock()

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def submit(self, checkpoint: Checkpoint) -> Future:
        future = self._executor.submit(
            self._anchor_with_retry,
            checkpoint.journal_id,
            checkpoint.checkpoint_id,
            checkpoint.merkle_root,
        )
        future.add_done_callback(self._log_crash)
        with self._lock:
            self._futures = [f for f in self._futures if not f.done()] + [future]
        return future

    def resubmit_unanchored(self, journal_id: str, include_failed: bool = True) -> List[Future]:
        """
        Queue a journal's unanchored checkpoints again.

        With include_failed=False only Pending ones go back in; that is what
        a restart does for anchoring cut off by cancellation or process exit.
        """
        retry = {WitnessStatus.PENDING}
        if include_failed:
            retry.add(WitnessStatus.FAILED)
        checkpoints = [c for c in self.ledger.get_checkpoints(journal_id) if c.witness_status in retry]
        if checkpoints:
            witness_logger.log_info("WITNESS_RESUBMIT", f"Requeueing {len(checkpoints)} checkpoint(s)", {
                "journal_id": journal_id,
                "checkpoint_ids": [c.checkpoint_id for c in checkpoints],
            })
        return [self.submit(c) for c in checkpoints]

    def _anchor_with_retry(self, journal_id: str, checkpoint_id: str, merkle_root: str) -> WitnessStatus:
        context = {"journal_id": journal_id, "checkpoint_id": checkpoint_id}

        for attempt in range(self.max_attempts):
            if self.stop_event.is_set():
                witness_logger.log_info("WITNESS_CANCELLED", "Anchoring cancelled", context)
                return WitnessStatus.PENDING

            try:
                witness_ref = self.witness.anchor(merkle_root)
            except WitnessUnavailable as e:
                delay = self.delay_for(attempt)
                witness_logger.log_warning("WITNESS_RETRY", f"Attempt {attempt + 1} failed: {e}", {
                    **context,
                    "next_delay": delay if attempt + 1 < self.max_attempts else None
                })
                self.emitter.emit("witness_retry", {
                    "checkpoint_id": checkpoint_id,
                    "attempt": attempt + 1,
                    "error": str(e),
                }, journal_id=journal_id)
                if attempt + 1 < self.max_attempts and self.stop_event.wait(delay):
                    witness_logger.log_info("WITNESS_CANCELLED", "Anchoring cancelled during backoff", context)
                    return WitnessStatus.PENDING
                continue

            self.ledger.update_witness(journal_id, checkpoint_id, WitnessStatus.ANCHORED, witness_ref)
            witness_logger.log_info("WITNESS_ANCHORED", f"{checkpoint_id} anchored as {witness_ref}", context)
            self.emitter.emit("witness_anchored", {
                "checkpoint_id": checkpoint_id,
                "merkle_root": merkle_root,
                "witness_ref": witness_ref,
                "attempts": attempt + 1,
            }, journal_id=journal_id)
            return WitnessStatus.ANCHORED

        # Exhausted: degraded trust, never fatal
        self.ledger.update_witness(journal_id, checkpoint_id, WitnessStatus.FAILED)
        witness_logger.log_error("WITNESS_FAILED", f"{checkpoint_id} not anchored after {self.max_attempts} attempts", context)
        self.emitter.emit("witness_failed", {
            "checkpoint_id": checkpoint_id,
            "merkle_root": merkle_root,
            "attempts": self.max_attempts,
        }, journal_id=journal_id)
        return WitnessStatus.FAILED

    def _log_crash(self, future: Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            witness_logger.log_error("WITNESS_CRASH", f"Anchoring task raised: {error!r}")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted anchoring task is done. False on timeout."""
        with self._lock:
            futures = list(self._futures)
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def shutdown(self, cancel: bool = False):
        if cancel:
            self.stop_event.set()
        self._executor.shutdown(wait=True)


# =============================================================================
# BUILDER
# =============================================================================

class CheckpointBuilder:
    """Seals contiguous ranges and serves Merkle proofs for sealed entries."""

    def __init__(
        self,
        ledger: EntryLedger,
        policy: Optional[CheckpointPolicy] = None,
        anchorer: Optional[WitnessAnchorer] = None,
        emitter: Optional[EventEmitter] = None
    ):
        self.ledger = ledger
        self.policy = policy or CheckpointPolicy()
        self.anchorer = anchorer
        self.emitter = emitter or ledger.emitter
        self._trees: Dict[Tuple[str, str], MerkleTree] = {}
        self._trees_lock = threading.Lock()

    def seal(
        self,
        journal_id: str,
        through_sequence: Optional[int] = None,
        from_sequence: Optional[int] = None,
        trigger: str = "manual"
    ) -> Checkpoint:
        """
        Seal (last_sealed, through_sequence] into a new Pending checkpoint.

        Args:
            through_sequence: Last sequence to include. Defaults to the head.
            from_sequence: The first sequence the caller expects to seal. When
                given it must be exactly last_sealed + 1.
            trigger: Why the seal happened, for the log.

        Raises:
            NonContiguousRange: from_sequence overlaps or leaves a gap, or
                another seal committed first
            EmptyRange: nothing after last_sealed up to through_sequence
            SequenceNotFound: through_sequence is past the head
        """
        _, entries, checkpoints = self.ledger.snapshot(journal_id)
        last_sealed = checkpoints[-1].end if checkpoints else -1
        head = len(entries) - 1
        through = head if through_sequence is None else through_sequence

        if from_sequence is not None and from_sequence != last_sealed + 1:
            raise NonContiguousRange(
                f"Journal {journal_id} next checkpoint must start at {last_sealed + 1}, "
                f"requested {from_sequence}"
            )
        if through <= last_sealed:
            raise EmptyRange(f"Journal {journal_id} already sealed through {last_sealed}")
        if through > head:
            raise SequenceNotFound(f"Journal {journal_id} head is {head}, cannot seal through {through}")

        start = last_sealed + 1
        tree = MerkleTree([e.entry_hash for e in entries[start:through + 1]])
        checkpoint = Checkpoint(
            checkpoint_id=f"CKPT-{len(checkpoints) + 1}",
            journal_id=journal_id,
            range=(start, through),
            merkle_root=tree.root_hash,
            created_at=utc_now_iso(),
        )

        self.ledger.commit_checkpoint(checkpoint, expected_last_sealed=last_sealed)
        with self._trees_lock:
            self._trees[(journal_id, checkpoint.checkpoint_id)] = tree

        checkpoint_logger.log_info("CHECKPOINT_SEALED", f"{checkpoint.checkpoint_id} sealed", {
            "journal_id": journal_id,
            "range": [start, through],
            "merkle_root": checkpoint.merkle_root,
            "trigger": trigger,
        })
        self.emitter.emit("checkpoint_sealed", {
            "checkpoint_id": checkpoint.checkpoint_id,
            "range": [start, through],
            "merkle_root": checkpoint.merkle_root,
        }, journal_id=journal_id)

        if self.anchorer is not None:
            self.anchorer.submit(checkpoint)
        return checkpoint

    def maybe_seal(self, journal_id: str) -> Optional[Checkpoint]:
        """Seal the unsealed tail if the policy says so. None when not due."""
        journal, entries, checkpoints = self.ledger.snapshot(journal_id)
        last_sealed = checkpoints[-1].end if checkpoints else -1
        # Nothing sealed yet: the time trigger counts from journal creation
        last_seal_at = parse_iso(checkpoints[-1].created_at if checkpoints else journal.created_at)

        unsealed = len(entries) - 1 - last_sealed
        trigger = self.policy.should_seal(unsealed, last_seal_at, entries[-1] if entries else None)
        if trigger is None:
            return None

        try:
            return self.seal(
                journal_id,
                through_sequence=len(entries) - 1,
                from_sequence=last_sealed + 1,
                trigger=trigger,
            )
        except (EmptyRange, NonContiguousRange) as e:
            # A concurrent seal got there first; its checkpoint covers this tail
            checkpoint_logger.log_debug("AUTO_SEAL_SKIPPED", str(e), {"journal_id": journal_id})
            return None

    def verify_checkpoint(self, journal_id: str, checkpoint_id: str) -> bool:
        """
        Recompute a stored checkpoint's root from the journal's entries.

        Never uses the tree cache, so a root that drifted from its entries
        after sealing is caught.

        Raises:
            CheckpointNotFound: no checkpoint_id in the journal
        """
        _, entries, checkpoints = self.ledger.snapshot(journal_id)
        checkpoint = next((c for c in checkpoints if c.checkpoint_id == checkpoint_id), None)
        if checkpoint is None:
            raise CheckpointNotFound(f"No checkpoint {checkpoint_id} in journal {journal_id}")

        valid = checkpoint_root_matches(checkpoint, entries)
        if not valid:
            checkpoint_logger.log_error("ROOT_DRIFT", f"{checkpoint_id} root does not match entries", {
                "journal_id": journal_id,
                "range": [checkpoint.start, checkpoint.end],
            })
            self.emitter.emit("checkpoint_invalid", {
                "checkpoint_id": checkpoint_id,
                "merkle_root": checkpoint.merkle_root,
            }, journal_id=journal_id)
        return valid

    # =========================================================================
    # PROOFS
    # =========================================================================

    def tree_for(self, checkpoint: Checkpoint, entries: Sequence[JournalEntry]) -> MerkleTree:
        """Cached tree for a checkpoint, rebuilt from entries after a reload."""
        key = (checkpoint.journal_id, checkpoint.checkpoint_id)
        with self._trees_lock:
            tree = self._trees.get(key)
        if tree is None:
            tree = MerkleTree([e.entry_hash for e in entries[checkpoint.start:checkpoint.end + 1]])
            if tree.root_hash != checkpoint.merkle_root:
                checkpoint_logger.log_error("ROOT_DRIFT", f"{checkpoint.checkpoint_id} root does not match entries", {
                    "journal_id": checkpoint.journal_id
                })
            with self._trees_lock:
                self._trees[key] = tree
        return tree

    def proof_from_snapshot(
        self,
        checkpoints: Sequence[Checkpoint],
        entries: Sequence[JournalEntry],
        sequence: int
    ) -> Tuple[Checkpoint, MerkleProof]:
        if sequence < 0 or sequence >= len(entries):
            raise SequenceNotFound(f"No sequence {sequence}")
        checkpoint = next((c for c in checkpoints if c.covers(sequence)), None)
        if checkpoint is None:
            raise NotYetCheckpointed(f"Sequence {sequence} is after the last checkpoint")

        tree = self.tree_for(checkpoint, entries)
        proof = MerkleProof(
            leaf_sequence=sequence,
            checkpoint_id=checkpoint.checkpoint_id,
            sibling_hashes=tuple(tree.get_proof(sequence - checkpoint.start)),
        )
        return checkpoint, proof

    def build_proof(self, journal_id: str, sequence: int) -> Tuple[Checkpoint, MerkleProof]:
        """
        Raises:
            SequenceNotFound: no such sequence
            NotYetCheckpointed: sequence exists but is not sealed yet
        """
        _, entries, checkpoints = self.ledger.snapshot(journal_id)
        return self.proof_from_snapshot(checkpoints, entries, sequence)
