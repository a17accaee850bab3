"""
Centralized Constants for the YubiKey Provisioner.

Collects the manufacturer defaults, minimum secret lengths, slot layouts
and tool timeouts used across the engine so that security-relevant values
live in one auditable place.

Usage:
    from provisioner.constants import FactoryDefaults, SecretLengths, Timeouts

    if value == FactoryDefaults.PIV_PIN:
        ...
"""

from dataclasses import dataclass
from typing import Dict, Tuple


# =============================================================================
# MANUFACTURER DEFAULTS
# =============================================================================

@dataclass(frozen=True)
class FactoryDefaults:
    """
    Published factory values for YubiKey unlock secrets.

    SECURITY: A token still carrying any of these is effectively
    unprotected. They are only ever compared against, never used to
    authenticate without the user supplying them.
    """
    OPENPGP_USER_PIN: str = "123456"
    OPENPGP_ADMIN_PIN: str = "12345678"
    PIV_PIN: str = "123456"
    PIV_PUK: str = "12345678"
    PIV_MANAGEMENT_KEY: str = "010203040506070801020304050607080102030405060708"

    # OpenPGP applet default retry counters
    OPENPGP_MAX_TRIES: int = 3
    PIV_MAX_TRIES: int = 3


# =============================================================================
# SECRET LENGTH POLICY
# =============================================================================

@dataclass(frozen=True)
class SecretLengths:
    """Minimum accepted lengths for each unlock secret."""
    ROOT_PASSPHRASE: int = 12
    OPENPGP_USER_PIN: int = 6
    OPENPGP_ADMIN_PIN: int = 8
    OPENPGP_RESET_CODE: int = 8
    PIV_PIN: int = 6
    PIV_PUK: int = 8
    PIV_MANAGEMENT_KEY: int = 48  # hex characters (TDES / AES192)


# =============================================================================
# SLOT LAYOUT
# =============================================================================

# OpenPGP applet: one key per capability
OPENPGP_SLOTS: Tuple[str, ...] = ("sig", "enc", "aut")

# gpg keytocard numbering
OPENPGP_KEYTOCARD_INDEX: Dict[str, int] = {"sig": 1, "enc": 2, "aut": 3}

# PIV applet: standard slots plus the 20 retired key-management slots
PIV_STANDARD_SLOTS: Tuple[str, ...] = ("9a", "9c", "9d", "9e")
PIV_RETIRED_SLOTS: Tuple[str, ...] = tuple(format(0x82 + i, "x") for i in range(20))
PIV_SLOTS: Tuple[str, ...] = PIV_STANDARD_SLOTS + PIV_RETIRED_SLOTS

# Slots inspected by default when building a snapshot
PIV_INSPECTED_SLOTS: Tuple[str, ...] = PIV_STANDARD_SLOTS + ("82", "83")


def age_slot_number(piv_slot: str) -> int:
    """Map a retired PIV slot id (82-95) to age-plugin-yubikey's 1-20 numbering."""
    value = int(piv_slot, 16)
    if not 0x82 <= value <= 0x95:
        raise ValueError(f"age identities require a retired slot (82-95), got {piv_slot}")
    return value - 0x82 + 1


def piv_slot_from_age(number: int) -> str:
    """Inverse of age_slot_number()."""
    if not 1 <= number <= 20:
        raise ValueError(f"age slot number out of range: {number}")
    return format(0x82 + number - 1, "x")


# =============================================================================
# TIMEOUTS
# =============================================================================

@dataclass(frozen=True)
class Timeouts:
    """
    Subprocess timing in seconds.

    Read-only tool calls get a hard timeout. Calls that may wait on a
    touch or PIN entry never time out; TOUCH_REMINDER only controls how
    often the operator is reminded.
    """
    TOOL_READ: float = 15.0
    TOOL_WRITE: float = 120.0
    TOUCH_REMINDER: float = 15.0


# =============================================================================
# DEFAULT PATHS
# =============================================================================

@dataclass(frozen=True)
class Paths:
    """Default file locations, relative to the working directory."""
    MASTER_KEY_ID_FILE: str = ".gpg_master_key_id"
    RECIPIENTS_FILE: str = "age-recipients.txt"
    IDENTITY_DIR: str = "age-identities"
    REVOCATION_DIR: str = "revocation"
    LOCK_FILE_NAME: str = ".provisioner.lock"


SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700
READ_ONLY_FILE_MODE = 0o400
