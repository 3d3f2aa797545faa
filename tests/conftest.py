"""
Integrity Engine Test Configuration and Fixtures

Shared fixtures for ledger, checkpoint, certificate and service tests.
Everything runs in memory or under pytest's tmp_path - no network, no
real witness, zero backoff delays.
"""

import pytest

from integrity_system.core.checkpoints import CheckpointBuilder, CheckpointPolicy, WitnessAnchorer
from integrity_system.core.certificates import CertificateEngine
from integrity_system.core.config import TestConfig
from integrity_system.core.event_emitter import EventEmitter, EventTier
from integrity_system.core.hashing import hash_content
from integrity_system.core.journal_service import JournalService
from integrity_system.core.keys import LocalKeyProvider
from integrity_system.core.ledger import EntryLedger
from integrity_system.core.witness import LocalWitness


# =============================================================================
# PYTEST MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "persistence: tests data survival across reloads")
    config.addinivalue_line("markers", "concurrency: tests with multiple threads")
    config.addinivalue_line("markers", "critical: must-pass integrity properties")


ENTRY_TYPES = ["prompt", "response", "decision", "revision", "annotation"]


def digest(n: int) -> str:
    """Deterministic content digest for test entry n."""
    return hash_content(f"test content {n}")


def fill(ledger: EntryLedger, journal_id: str, count: int):
    """Append count typed entries, returns them."""
    return [
        ledger.append(journal_id, digest(i), {"entry_type": ENTRY_TYPES[i % len(ENTRY_TYPES)], "n": str(i)})
        for i in range(count)
    ]


# =============================================================================
# CORE FIXTURES
# =============================================================================

@pytest.fixture
def emitter():
    """Emitter that streams every tier, so tests can listen to debug events."""
    return EventEmitter(stream_tiers={EventTier.CRITICAL, EventTier.SYSTEM, EventTier.DEBUG})


@pytest.fixture
def key_provider():
    return LocalKeyProvider()


@pytest.fixture
def owner_key_id(key_provider):
    return key_provider.generate_key()


@pytest.fixture
def ledger(emitter):
    """In-memory ledger."""
    return EntryLedger(emitter=emitter)


@pytest.fixture
def journal(ledger, owner_key_id):
    return ledger.create_journal(owner_key_id)


@pytest.fixture
def journal_with_10(ledger, journal):
    """Journal with sequences 0-9 appended, nothing sealed."""
    fill(ledger, journal.journal_id, 10)
    return journal


@pytest.fixture
def witness():
    return LocalWitness()


@pytest.fixture
def anchorer(witness, ledger):
    anchorer = WitnessAnchorer(witness, ledger, max_attempts=5, base_delay=0.0, max_delay=0.0, workers=1)
    yield anchorer
    anchorer.shutdown(cancel=True)


@pytest.fixture
def builder(ledger):
    """Builder without witness anchoring."""
    return CheckpointBuilder(ledger, CheckpointPolicy(count_threshold=10))


@pytest.fixture
def engine(ledger, builder, key_provider):
    return CertificateEngine(ledger, builder, key_provider)


@pytest.fixture
def sealed_journal(ledger, journal_with_10, builder):
    """The canonical scenario: entries 0-9 sealed into CKPT-1."""
    builder.seal(journal_with_10.journal_id, through_sequence=9)
    return journal_with_10


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def service(witness):
    service = JournalService(TestConfig, witness=witness)
    yield service
    service.shutdown(cancel_witness=True)


@pytest.fixture
def stored_service_factory(tmp_path, witness):
    """Build services over the same storage/key dirs to test reloads."""
    created = []

    class StoredConfig(TestConfig):
        STORAGE_DIR = str(tmp_path / "journals")
        KEY_DIR = str(tmp_path / "keys")

    def make():
        service = JournalService(StoredConfig, witness=witness)
        created.append(service)
        return service

    yield make
    for service in created:
        service.shutdown(cancel_witness=True)
