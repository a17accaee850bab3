"""
Tests for the tool output parsers.

Samples are trimmed copies of real gpg 2.4, ykman 5 and
age-plugin-yubikey 0.4 output.
"""

from datetime import datetime, timezone

import pytest

from provisioner.adapters import parsers
from provisioner.models import (
    CapabilityProfile,
    LifecycleState,
    PresencePolicy,
    SecretPolicy,
)

MASTER_FPR = "0123456789ABCDEF0123456789ABCDEF89ABCDEF"
NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)

SECRET_LISTING = """\
sec:u:255:22:0123456789ABCDEF:1700000000:::u:::cESCA:::+::ed25519:::0:
fpr:::::::::0123456789ABCDEF0123456789ABCDEF89ABCDEF:
grp:::::::::1111222233334444555566667777888899990000:
uid:u::::1700000000::AAAA1111BBBB2222CCCC3333DDDD4444EEEE5555::Alice Example <alice@example.org>::::::::::0:
ssb:u:255:22:1111111111111111:1700000100:1763072100:::::s:::D2760001240103040006123456780000::ed25519::
fpr:::::::::AAAA000000000000000000001111111111111111:
ssb:u:255:18:2222222222222222:1700000200:1763072200:::::e:::+::cv25519::
fpr:::::::::BBBB000000000000000000002222222222222222:
ssb:e:255:22:3333333333333333:1600000000:1650000000:::::a:::#::ed25519::
fpr:::::::::CCCC000000000000000000003333333333333333:
ssb:u:4096:1:4444444444444444:1700000300::::::sa:::+:::::
fpr:::::::::DDDD000000000000000000004444444444444444:
ssb:r:255:22:5555555555555555:1700000400::::::s:::+::ed25519::
fpr:::::::::EEEE000000000000000000005555555555555555:
sec:u:255:22:FEDCBA9876543210:1700000000:::u:::cSC:::+::ed25519:::0:
fpr:::::::::FFFF0000000000000000FFFFFEDCBA9876543210:
ssb:u:255:18:6666666666666666:1700000500::::::e:::+::cv25519::
fpr:::::::::FFFF000000000000000000006666666666666666:
"""

CARD_STATUS = """\
Reader:Yubico YubiKey OTP FIDO CCID 00 00:AID:D2760001240103040006123456780000:openpgp-card:
version:0304:
vendor:0006:Yubico:
serial:12345678:
name:::
lang::
sex:u:
url::
login::
forcepin:1:::
keyattr:1:22:Ed25519:
keyattr:2:18:Curve 25519:
keyattr:3:22:Ed25519:
maxpinlen:127:127:127:
pinretry:3:0:2:
sigcount:4:::
cafpr::::
fpr:AAAA000000000000000000001111111111111111:bbbb000000000000000000002222222222222222::
fprtime:1700000100:1700000200:0:
grp:::
"""

OPENPGP_INFO = """\
OpenPGP version:            3.4
Application version:        5.4.3
PIN tries remaining:        3
Reset code tries remaining: 0
Admin PIN tries remaining:  2
Require PIN for signature:  Once
KDF enabled:                False
Touch policies:
  Signature key:            Cached
  Encryption key:           Off
  Authentication key:       On
  Attestation key:          Off
"""

PIV_INFO = """\
PIV version:              5.4.3
PIN tries remaining:      3/3
PUK tries remaining:      2/3
Management key algorithm: TDES
WARNING: Using default Management key!
CHUID: No data available
CCC:   No data available
Slot 9A (AUTHENTICATION):
  Private key type: ECCP256
  Public key type:  ECCP256
  Subject DN:       CN=SSH key
  Issuer DN:        CN=SSH key
  Serial:           12:34
  Fingerprint:      AB12CD34EF
  Not before:       2024-01-01T00:00:00+00:00
  Not after:        2034-01-01T00:00:00+00:00
Slot 82 (RETIRED1):
  Private key type: ECCP256
  Public key type:  ECCP256
  Subject DN:       CN=age-plugin-yubikey
"""

AGE_LIST = """\
#       Serial: 12345678, Slot: 1
#         Name: age identity 1a2b3c4d
#      Created: Mon, 01 Jan 2024 00:00:00 +0000
#   PIN policy: Once   (A PIN is required once per session, if set)
# Touch policy: Cached (A physical touch is required for decryption, and is cached for 15 seconds)
age1yubikey1qfirstrecipient

#       Serial: 87654321, Slot: 2
#         Name: backup
#      Created: Mon, 01 Jan 2024 00:00:00 +0000
#   PIN policy: Always (A PIN is required for every decryption, if set)
# Touch policy: Always (A physical touch is required for every decryption)
age1yubikey1qsecondrecipient
"""


# ===========================================================================
# Capability Profile Tests
# ===========================================================================

class TestCapabilityProfile:
    """Capability letters map to exact profiles, never substrings."""

    def test_single_letters(self):
        assert CapabilityProfile.from_letters("s") is CapabilityProfile.SIGN
        assert CapabilityProfile.from_letters("e") is CapabilityProfile.ENCRYPT
        assert CapabilityProfile.from_letters("a") is CapabilityProfile.AUTHENTICATE

    def test_combined_is_not_exclusive(self):
        profile = CapabilityProfile.from_letters("sa")
        assert profile is CapabilityProfile.SIGN_AUTHENTICATE
        assert profile is not CapabilityProfile.SIGN
        assert not profile.is_exclusive

    def test_uppercase_summary_ignored(self):
        assert CapabilityProfile.from_letters("cESCA") is CapabilityProfile.CERTIFY

    def test_unknown_letter(self):
        assert CapabilityProfile.from_letters("sx") is None

    def test_letters_round_trip_order(self):
        assert CapabilityProfile.from_letters("as").letters == "sa"


# ===========================================================================
# gpg Listing Tests
# ===========================================================================

class TestSecretKeyListing:
    """Tests for parse_secret_key_listing."""

    def test_master(self):
        master, _ = parsers.parse_secret_key_listing(SECRET_LISTING, "0x89ABCDEF", NOW)
        assert master.fingerprint == MASTER_FPR
        assert master.capabilities is CapabilityProfile.CERTIFY
        assert master.has_secret_material
        assert master.user_ids == ("Alice Example <alice@example.org>",)

    def test_only_matching_block(self):
        _, derived = parsers.parse_secret_key_listing(SECRET_LISTING, MASTER_FPR, NOW)
        assert len(derived) == 5
        assert all(d.master_id == MASTER_FPR for d in derived)
        assert [d.position for d in derived] == [1, 2, 3, 4, 5]

    def test_derived_on_card(self):
        _, derived = parsers.parse_secret_key_listing(SECRET_LISTING, MASTER_FPR, NOW)
        sign = derived[0]
        assert sign.fingerprint == "AAAA000000000000000000001111111111111111"
        assert sign.capabilities is CapabilityProfile.SIGN
        assert sign.card_serial == "12345678"
        assert not sign.has_local_material
        assert sign.state is LifecycleState.TRANSFERRED
        assert sign.algorithm == "ed25519"

    def test_derived_local(self):
        _, derived = parsers.parse_secret_key_listing(SECRET_LISTING, MASTER_FPR, NOW)
        enc = derived[1]
        assert enc.has_local_material
        assert enc.state is LifecycleState.LOCAL_ONLY
        assert enc.algorithm == "cv25519"
        assert enc.is_active(NOW)

    def test_expired_and_revoked(self):
        _, derived = parsers.parse_secret_key_listing(SECRET_LISTING, MASTER_FPR, NOW)
        assert derived[2].state is LifecycleState.EXPIRED
        assert not derived[2].is_active(NOW)
        assert derived[4].state is LifecycleState.REVOKED
        assert not derived[4].is_active(NOW)

    def test_expiry_relative_to_now(self):
        later = datetime(2026, 1, 1, tzinfo=timezone.utc)
        _, derived = parsers.parse_secret_key_listing(SECRET_LISTING, MASTER_FPR, later)
        assert derived[0].state is LifecycleState.EXPIRED

    def test_rsa_combined_capabilities(self):
        _, derived = parsers.parse_secret_key_listing(SECRET_LISTING, MASTER_FPR, NOW)
        combined = derived[3]
        assert combined.algorithm == "rsa4096"
        assert combined.key_length == 4096
        assert combined.capabilities is CapabilityProfile.SIGN_AUTHENTICATE
        assert not combined.capabilities.is_exclusive

    def test_unknown_master(self):
        master, derived = parsers.parse_secret_key_listing(SECRET_LISTING, "0xDEADBEEF", NOW)
        assert master is None
        assert derived == []

    def test_empty_listing(self):
        assert parsers.parse_secret_key_listing("", MASTER_FPR) == (None, [])

    def test_primary_fingerprints(self):
        assert parsers.primary_fingerprints(SECRET_LISTING) == [
            MASTER_FPR, "FFFF0000000000000000FFFFFEDCBA9876543210",
        ]


class TestHelpers:
    """Tests for field helpers."""

    def test_gpg_time_epoch(self):
        assert parsers.parse_gpg_time("0") == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_gpg_time_iso(self):
        assert parsers.parse_gpg_time("20240601T120000") == datetime(
            2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def test_gpg_time_empty(self):
        assert parsers.parse_gpg_time("") is None
        assert parsers.parse_gpg_time("garbage") is None

    @pytest.mark.parametrize("value,expected", [
        ("D2760001240103040006123456780000", "12345678"),
        ("00123456", "123456"),
        ("+", None),
        ("#", None),
        ("", None),
    ])
    def test_card_serial_from_aid(self, value, expected):
        assert parsers.card_serial_from_aid(value) == expected


# ===========================================================================
# Card and ykman Tests
# ===========================================================================

class TestCardStatus:
    """Tests for parse_card_status."""

    def test_serial_and_fingerprints(self):
        status = parsers.parse_card_status(CARD_STATUS)
        assert status.serial == "12345678"
        assert status.fingerprints == {
            'sig': "AAAA000000000000000000001111111111111111",
            'enc': "BBBB000000000000000000002222222222222222",
            'aut': None,
        }

    def test_pin_retries(self):
        assert parsers.parse_card_status(CARD_STATUS).pin_retries == (3, 0, 2)

    def test_serial_from_reader_line(self):
        text = "Reader:Yubico YubiKey CCID:AID:D2760001240103040006876543210000:openpgp-card:\n"
        assert parsers.parse_card_status(text).serial == "87654321"


class TestOpenPgpInfo:
    """Tests for parse_openpgp_info."""

    def test_tries(self):
        info = parsers.parse_openpgp_info(OPENPGP_INFO)
        assert info.pin_tries == 3
        assert info.reset_code_tries == 0
        assert info.admin_pin_tries == 2

    def test_touch_policies(self):
        info = parsers.parse_openpgp_info(OPENPGP_INFO)
        assert info.touch_policies == {
            'sig': PresencePolicy.CACHED,
            'enc': PresencePolicy.NONE,
            'aut': PresencePolicy.ALWAYS,
        }

    def test_empty(self):
        info = parsers.parse_openpgp_info("")
        assert info.pin_tries is None
        assert info.touch_policies == {}


class TestPivInfo:
    """Tests for parse_piv_info."""

    def test_tries(self):
        info = parsers.parse_piv_info(PIV_INFO)
        assert info.pin_tries == (3, 3)
        assert info.puk_tries == (2, 3)

    def test_slots(self):
        info = parsers.parse_piv_info(PIV_INFO)
        assert set(info.slots) == {"9a", "82"}
        assert info.slots["9a"].fingerprint == "ab12cd34ef"
        assert info.slots["9a"].subject == "CN=SSH key"
        assert info.slots["82"].algorithm == "ECCP256"
        assert info.slots["82"].fingerprint is None

    def test_tries_without_maximum(self):
        info = parsers.parse_piv_info("PIN tries remaining: 2\n")
        assert info.pin_tries == (2, None)


# ===========================================================================
# age-plugin-yubikey Tests
# ===========================================================================

class TestAgeOutput:
    """Tests for age-plugin-yubikey listings and generation output."""

    def test_list(self):
        identities = parsers.parse_age_list(AGE_LIST)
        assert len(identities) == 2
        first, second = identities
        assert first.serial == "12345678"
        assert first.slot_number == 1
        assert first.recipient == "age1yubikey1qfirstrecipient"
        assert first.name == "age identity 1a2b3c4d"
        assert first.secret_policy is SecretPolicy.ONCE
        assert first.presence_policy is PresencePolicy.CACHED
        assert second.slot_number == 2
        assert second.presence_policy is PresencePolicy.ALWAYS

    def test_list_empty(self):
        assert parsers.parse_age_list("") == []

    def test_generated_with_public_key_comment(self):
        text = ("#       Serial: 12345678, Slot: 1\n"
                "# public key: age1yubikey1qnewkey\n"
                "AGE-PLUGIN-YUBIKEY-1QQQQQ\n")
        public_key, identity = parsers.parse_generated_identity(text)
        assert public_key == "age1yubikey1qnewkey"
        assert "AGE-PLUGIN-YUBIKEY-1QQQQQ" in identity
        assert "public key" not in identity

    def test_generated_with_recipient_comment(self):
        text = ("#    Recipient: age1yubikey1qother\n"
                "AGE-PLUGIN-YUBIKEY-1ZZZZZ\n")
        public_key, _ = parsers.parse_generated_identity(text)
        assert public_key == "age1yubikey1qother"

    def test_generated_without_key(self):
        public_key, _ = parsers.parse_generated_identity("AGE-PLUGIN-YUBIKEY-1ZZZZZ\n")
        assert public_key is None


# ===========================================================================
# ykman Error Detection Tests
# ===========================================================================

class TestErrorDetection:
    """Tests for ykman error text detection."""

    @pytest.mark.parametrize("text,tries", [
        ("Error: Wrong PIN, 2 tries left.", 2),
        ("ERROR: PIN verification failed, 1 attempts remaining", 1),
        ("Error: Authentication with management key failed.", None),
        ("Error: Invalid admin PIN", None),
    ])
    def test_wrong_secret(self, text, tries):
        assert parsers.detect_wrong_secret(text) == (True, tries)

    def test_not_a_wrong_secret(self):
        assert parsers.detect_wrong_secret("Error: Failed connecting to the YubiKey") == (False, None)

    def test_applet_disabled(self):
        assert parsers.detect_applet_disabled("ERROR: The PIV application is disabled")
        assert not parsers.detect_applet_disabled("PIV version: 5.4.3")

    def test_device_missing(self):
        assert parsers.detect_device_missing("ERROR: Failed connecting to a YubiKey with serial: 1")
        assert not parsers.detect_device_missing("Error: Wrong PIN")
