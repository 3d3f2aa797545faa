#!/usr/bin/env python3
"""
renderer.py - Human-readable views of journals, checkpoints and certificates

READ-ONLY render layer: never modifies a journal. Plain strings, so the
same output works in logs, the terminal verifier and API debug payloads.
"""

from typing import Dict, Any, List, Optional

from integrity_system.core.datashapes import (
    Certificate,
    Checkpoint,
    JournalEntry,
    VerificationResult,
    WitnessStatus,
)
from integrity_system.core.ledger import EntryLedger

_STATUS_MARK = {
    WitnessStatus.PENDING: "…",
    WitnessStatus.ANCHORED: "✓",
    WitnessStatus.FAILED: "✗",
}


class IntegrityRenderer:
    """
    Human-readable views of integrity data.

    A ledger is only needed for the journal-level views (chain, summary,
    insights); entries, checkpoints and certificates render on their own.
    """

    def __init__(self, ledger: Optional[EntryLedger] = None):
        self.ledger = ledger

    def render_entry(self, entry: JournalEntry, compact: bool = False) -> str:
        """Render single entry, human readable."""
        if compact:
            return (
                f"#{entry.sequence} | {entry.timestamp[:19]} | "
                f"{entry.entry_type or 'untyped'} | {entry.entry_hash[:12]}"
            )

        lines = [
            f"╭─ Entry #{entry.sequence} {'─' * 50}",
            f"│ Time:    {entry.timestamp}",
            f"│ Type:    {entry.entry_type or 'untyped'}",
            f"│ Content: {entry.content_hash[:16]}...",
        ]

        other = {k: v for k, v in entry.metadata.items() if k != "entry_type"}
        if other:
            lines.append("│ ─── Metadata ───")
            for key, value in sorted(other.items()):
                display_val = value[:50] + "..." if len(value) > 50 else value
                lines.append(f"│ {key}: {display_val}")

        lines.append("│ ─── Integrity ───")
        lines.append(f"│ Hash:     {entry.entry_hash[:16]}...")
        lines.append(
            "│ Previous: (genesis)" if entry.sequence == 0 else f"│ Previous: {entry.prev_hash[:16]}..."
        )
        lines.append(f"╰{'─' * 60}")

        return '\n'.join(lines)

    def render_chain(self, journal_id: str, compact: bool = True, limit: int = 20) -> str:
        """Render a journal's entries as a timeline."""
        entries = self.ledger.get_entries(journal_id)
        if not entries:
            return f"No entries in journal {journal_id}."

        total = len(entries)
        if total > limit:
            entries = entries[-limit:]
            header = f"Showing last {limit} of {total} entries:\n"
        else:
            header = f"All {total} entries:\n"

        return '\n'.join([header] + [self.render_entry(e, compact=compact) for e in entries])

    def render_checkpoint(self, checkpoint: Checkpoint) -> str:
        mark = _STATUS_MARK[checkpoint.witness_status]
        return (
            f"╭─ Checkpoint: {checkpoint.checkpoint_id} {'─' * 40}\n"
            f"│ Created:  {checkpoint.created_at}\n"
            f"│ Coverage: Entries #{checkpoint.start} - #{checkpoint.end}\n"
            f"│ Count:    {checkpoint.leaf_count} entries\n"
            f"│ Root:     {checkpoint.merkle_root[:24]}...\n"
            f"│ Witness:  {mark} {checkpoint.witness_status.value}"
            f"{' (' + checkpoint.witness_ref + ')' if checkpoint.witness_ref else ''}\n"
            f"╰{'─' * 55}"
        )

    def render_certificate(self, certificate: Certificate) -> str:
        lines = [
            f"╭─ {certificate.certificate_type.title()} Certificate {'─' * 40}",
            f"│ Journal:  {certificate.journal_id}",
            f"│ Owner:    {certificate.owner_key_id}",
            f"│ Issued:   {certificate.issued_at}",
            f"│ Entries:  {certificate.entry_count}",
            f"│ Head:     {certificate.head_hash[:24]}...",
            f"│ Sealed:   {len(certificate.checkpoints)} checkpoint(s)",
        ]
        for checkpoint in certificate.checkpoints:
            mark = _STATUS_MARK[checkpoint.witness_status]
            lines.append(
                f"│   {mark} {checkpoint.checkpoint_id} #{checkpoint.start}-#{checkpoint.end} "
                f"{checkpoint.merkle_root[:16]}..."
            )

        if certificate.disclosed_entries:
            lines.append("│ ─── Disclosed ───")
            for entry in certificate.disclosed_entries:
                via = "recency chain" if entry.sequence in certificate.recency_proofs else "merkle proof"
                lines.append(f"│   #{entry.sequence} {entry.entry_type or 'untyped'} ({via})")

        lines.append(f"╰{'─' * 55}")
        return '\n'.join(lines)

    def render_verification_report(self, result: VerificationResult) -> str:
        """Certificate verification results in plain language."""
        if result.valid:
            lines = [
                "✓ Certificate Verified",
                f"  Witness: {result.witness_confidence.value}",
            ]
        else:
            lines = [
                "✗ Certificate Verification FAILED",
                f"  Reasons: {', '.join(r.value for r in result.reasons)}",
                "",
            ]
            lines.extend(f"  - {detail}" for detail in result.details)
        return '\n'.join(lines)

    def render_chain_summary(self, summary: Dict[str, Any]) -> str:
        if summary['is_valid']:
            status = "✓ Chain intact"
        elif summary['first_bad_sequence'] is not None:
            status = f"✗ Chain broken at entry #{summary['first_bad_sequence']}"
        else:
            status = f"✗ Checkpoint root mismatch: {', '.join(summary['invalid_checkpoints'])}"

        lines = [
            f"╭─ Journal {summary['journal_id']} {'─' * 30}",
            f"│ {status}",
            f"│ Entries:     {summary['total_entries']}",
            f"│ Checkpoints: {summary['checkpoint_count']}",
            f"│ Unsealed:    {summary['unsealed_entries']}",
        ]
        if summary['last_hash']:
            lines.append(f"│ Head hash:   {summary['last_hash'][:24]}...")
        lines.append(f"╰{'─' * 55}")
        return '\n'.join(lines)

    def render_insights(self, insights: Dict[str, Any]) -> str:
        lines: List[str] = [
            "╭─ Writing Process ─────────────────────────────────────",
            f"│ Total entries:   {insights['total_entries']}",
            f"│ AI interactions: {insights['ai_interaction_count']}",
            f"│ Revisions:       {insights['revision_count']}",
            f"│ Retractions:     {insights['retraction_count']}",
            f"│ Time spent:      {insights['time_spent_seconds'] / 60:.1f} min",
            "│",
            "│ By Entry Type:",
        ]
        for entry_type, count in sorted(insights['entry_types'].items()):
            lines.append(f"│   {entry_type}: {count}")
        lines.append(f"╰{'─' * 55}")
        return '\n'.join(lines)
