"""
Pytest configuration and shared fixtures for YubiKey Provisioner tests.

Engine tests run against the in-memory doubles in doubles.py; adapter
tests feed recorded tool output through a FakeRunner. Nothing here
touches a real gpg keyring or token.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add the parent directory to the path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from provisioner.models import AppletDomain, Capability, DesiredSlot, DesiredState, SlotIntent
from provisioner.engine import ProvisioningEngine

from doubles import (
    ADMIN_PIN,
    PASSPHRASE,
    InMemoryOfflineStore,
    InMemoryRecipientSet,
    InMemoryTokens,
    ScriptedSecretSource,
    make_scope,
)

PRIMARY = "12345678"
BACKUP = "87654321"


# ===========================================================================
# Temporary Directory Fixtures
# ===========================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="provisioner_test_")
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


# ===========================================================================
# Collaborator Fixtures
# ===========================================================================

@pytest.fixture
def store() -> InMemoryOfflineStore:
    """Offline store holding a master with secret material and no subkeys."""
    return InMemoryOfflineStore()


@pytest.fixture
def tokens() -> InMemoryTokens:
    """Two attached factory-fresh tokens."""
    return InMemoryTokens(PRIMARY, BACKUP)


@pytest.fixture
def recipients() -> InMemoryRecipientSet:
    return InMemoryRecipientSet(["age1existingrecipient"])


@pytest.fixture
def source() -> ScriptedSecretSource:
    """Answers every engine prompt with the doubles' current secrets."""
    return ScriptedSecretSource({
        "master key passphrase": PASSPHRASE,
        "OpenPGP admin PIN": ADMIN_PIN,
    })


@pytest.fixture
def engine(store, tokens, recipients, source) -> ProvisioningEngine:
    return ProvisioningEngine(store, tokens, make_scope(source), recipients=recipients)


@pytest.fixture
def encrypt_on_primary(store) -> DesiredState:
    """One encryption credential on the primary token."""
    return DesiredState(
        master_id=store.master_fpr,
        entries=(DesiredSlot(Capability.ENCRYPT, PRIMARY),),
    )


@pytest.fixture
def full_descriptor(store) -> DesiredState:
    """Sign/encrypt/auth on the primary, an encrypt clone and a redundant identity on the backup."""
    return DesiredState(
        master_id=store.master_fpr,
        entries=(
            DesiredSlot(Capability.SIGN, PRIMARY),
            DesiredSlot(Capability.ENCRYPT, PRIMARY),
            DesiredSlot(Capability.AUTHENTICATE, PRIMARY),
            DesiredSlot(Capability.ENCRYPT, BACKUP, intent=SlotIntent.CLONE),
            DesiredSlot(Capability.ENCRYPT, BACKUP, domain=AppletDomain.PIV, slot="82",
                        intent=SlotIntent.REDUNDANT),
        ),
        allow_destructive=True,
    )


# ===========================================================================
# Markers Registration
# ===========================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "security: Security-specific tests")
