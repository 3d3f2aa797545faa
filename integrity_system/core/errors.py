#!/usr/bin/env python3
"""
errors.py - Exception taxonomy for the integrity engine

Three families:
    - Retryable: SequenceConflict (refresh head and retry), WitnessUnavailable
    - Caller logic errors: EmptyRange, NonContiguousRange, NotYetCheckpointed, ...
    - Storage: LedgerWriteError (disk full, permissions)

Verification failures are NOT exceptions - they come back as FailureReason
values inside a VerificationResult so a third party sees every check that failed.
"""

from typing import Optional

from integrity_system.core.datashapes import JournalHead


class IntegrityError(Exception):
    """Base for every error the engine raises."""
    retryable = False


class SequenceConflict(IntegrityError):
    """The head the caller presented is no longer the journal's head."""
    retryable = True

    def __init__(self, message: str, current_head: Optional[JournalHead] = None):
        super().__init__(message)
        self.current_head = current_head


class InvalidMetadata(IntegrityError):
    """Metadata cannot be encoded canonically (non-string values, colliding keys)."""
    pass


class InvalidDigest(IntegrityError):
    """A supplied digest is not 64 lowercase hex characters."""
    pass


class EmptyRange(IntegrityError):
    """Nothing new to seal: through_sequence <= last sealed sequence."""
    pass


class NonContiguousRange(IntegrityError):
    """Requested checkpoint range overlaps or leaves a gap against the previous one."""
    pass


class NotYetCheckpointed(IntegrityError):
    """A disclosed entry lies past the last checkpoint and recency proofs are off."""
    pass


class SequenceNotFound(IntegrityError):
    """Sequence number beyond the journal's head (or negative)."""
    pass


class JournalNotFound(IntegrityError):
    """No journal with that id."""
    pass


class KeyNotFound(IntegrityError):
    """Key provider has no key for that owner_key_id."""
    pass


class LedgerWriteError(IntegrityError):
    """Raised when persisting to disk fails. In-memory state is NOT modified."""
    pass


class WitnessUnavailable(IntegrityError):
    """External witness could not be reached or refused the anchor. Retried with backoff."""
    retryable = True


class CheckpointNotFound(IntegrityError):
    """No checkpoint with that id in the journal."""
    pass
