#!/usr/bin/env python3
"""
Integrity Verifier - Terminal Interface
Offline check of a certificate file against the owner's public key

    integrity-verify certificate.json --public-key <base64>
    integrity-verify certificate.json --public-key-file owner.pub --witness-url https://witness.example

Exit codes: 0 valid, 1 rejected, 2 could not run (missing file, bad key).
"""

import argparse
import json
import sys
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from integrity_system.core.datashapes import Certificate, FailureReason, VerificationResult
from integrity_system.core.keys import decode_public_key
from integrity_system.core.renderer import IntegrityRenderer
from integrity_system.core.verifier import Verifier
from integrity_system.core.witness import HttpWitnessGateway

CHECKS = [
    ("Signature", FailureReason.INVALID_SIGNATURE),
    ("Entry hashes", FailureReason.ENTRY_HASH_MISMATCH),
    ("Merkle / recency proofs", FailureReason.PROOF_MISMATCH),
    ("Checkpoint ranges", FailureReason.RANGE_INCONSISTENCY),
    ("Document format", FailureReason.MALFORMED_CERTIFICATE),
]


class IntegrityTerminal:
    """Renders one verification run with rich."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def show_certificate(self, certificate: Certificate):
        table = Table(title="📜 Certificate", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("Type", certificate.certificate_type)
        table.add_row("Journal", certificate.journal_id)
        table.add_row("Owner", certificate.owner_key_id)
        table.add_row("Issued", certificate.issued_at)
        table.add_row("Entries", str(certificate.entry_count))
        table.add_row("Head hash", certificate.head_hash)
        table.add_row("Checkpoints", str(len(certificate.checkpoints)))
        table.add_row("Disclosed", ", ".join(str(e.sequence) for e in certificate.disclosed_entries) or "none")
        self.console.print(Panel(table, border_style="blue"))

    def show_result(self, result: VerificationResult):
        table = Table(title="🔍 Verification")
        table.add_column("Check", style="cyan")
        table.add_column("Result")
        for label, reason in CHECKS:
            passed = reason not in result.reasons
            table.add_row(label, "[green]✓ pass[/green]" if passed else "[red]✗ fail[/red]")
        table.add_row("Witness", result.witness_confidence.value)

        if result.valid:
            self.console.print(Panel(table, title="✅ Certificate valid", border_style="green"))
        else:
            self.console.print(Panel(table, title="❌ Certificate rejected", border_style="red"))
            for detail in result.details:
                self.console.print(f"[dim]  - {detail}[/dim]")


def _read_public_key(args) -> bytes:
    if args.public_key_file:
        with open(args.public_key_file, 'r') as f:
            return decode_public_key(f.read().strip())
    return decode_public_key(args.public_key)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Verify a writing-process certificate offline")
    parser.add_argument("certificate", help="Path to the certificate JSON file")
    key_group = parser.add_mutually_exclusive_group(required=True)
    key_group.add_argument("--public-key", help="Owner public key, base64")
    key_group.add_argument("--public-key-file", help="File containing the base64 owner public key")
    parser.add_argument("--witness-url", help="Confirm witness references against this HTTP witness")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON instead of tables")
    parser.add_argument("--plain", action="store_true", help="Print plain text without colours or tables")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    terminal = IntegrityTerminal()

    try:
        public_key = _read_public_key(args)
    except (OSError, ValueError) as e:
        terminal.console.print(f"[red]❌ Unusable public key: {e}[/red]")
        return 2

    try:
        with open(args.certificate, 'r', encoding='utf-8') as f:
            document = f.read()
    except OSError as e:
        terminal.console.print(f"[red]❌ Cannot read certificate: {e}[/red]")
        return 2

    witness = HttpWitnessGateway(args.witness_url) if args.witness_url else None
    result = Verifier(witness=witness).verify(document, public_key)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    elif args.plain:
        renderer = IntegrityRenderer()
        try:
            print(renderer.render_certificate(Certificate.from_json(document)))
        except (KeyError, ValueError, TypeError, AttributeError):
            print("Certificate could not be parsed for display")
        print(renderer.render_verification_report(result))
    else:
        try:
            terminal.show_certificate(Certificate.from_json(document))
        except (KeyError, ValueError, TypeError, AttributeError):
            terminal.console.print("[yellow]⚠️  Certificate could not be parsed for display[/yellow]")
        terminal.show_result(result)

    return 0 if result.valid else 1


if __name__ == '__main__':
    sys.exit(main())
