"""
Tests for GpgOfflineStore against recorded gpg output.
"""

from datetime import datetime, timezone

import pytest

from provisioner.adapters import GpgOfflineStore
from provisioner.adapters.gpg_store import algorithm_for
from provisioner.errors import NoLocalMaterial, NoMasterMaterial, ToolError
from provisioner.models import Capability, CapabilityProfile, LifecycleState
from provisioner.security.secure_memory import SecretBuffer

from doubles import PASSPHRASE, FakeRunner

MASTER = "0123456789ABCDEF0123456789ABCDEF89ABCDEF"
SIGN_FPR = "AAAA000000000000000000001111111111111111"
ENC_FPR = "BBBB000000000000000000002222222222222222"
NEW_FPR = "CCCC000000000000000000003333333333333333"

HEADER = """\
sec:u:255:22:0123456789ABCDEF:1700000000:::u:::cC:::+::ed25519:::0:
fpr:::::::::0123456789ABCDEF0123456789ABCDEF89ABCDEF:
uid:u::::1700000000::AAAA1111BBBB2222CCCC3333DDDD4444EEEE5555::Alice Example <alice@example.org>::::::::::0:
"""

SIGN_ON_CARD = """\
ssb:u:255:22:1111111111111111:1700000100::::::s:::D2760001240103040006123456780000::ed25519::
fpr:::::::::AAAA000000000000000000001111111111111111:
"""

ENC_LOCAL = """\
ssb:u:255:18:2222222222222222:1700000200::::::e:::+::cv25519::
fpr:::::::::BBBB000000000000000000002222222222222222:
"""

NEW_ENC = """\
ssb:u:255:18:3333333333333333:1700000300::::::e:::+::cv25519::
fpr:::::::::CCCC000000000000000000003333333333333333:
"""

LISTING = HEADER + SIGN_ON_CARD + ENC_LOCAL
PUBLIC_ONLY = HEADER.replace(":::+::ed25519", ":::#::ed25519")


def passphrase() -> SecretBuffer:
    return SecretBuffer(PASSPHRASE.encode())


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def gpg(runner, temp_dir):
    return GpgOfflineStore(str(temp_dir), runner=runner)


class TestAlgorithm:
    def test_ed25519_encrypts_with_cv25519(self):
        assert algorithm_for("ed25519", Capability.ENCRYPT) == "cv25519"
        assert algorithm_for("ed25519", Capability.SIGN) == "ed25519"

    def test_rsa_passthrough(self):
        assert algorithm_for("RSA4096", Capability.ENCRYPT) == "rsa4096"

    def test_unsupported(self):
        with pytest.raises(ValueError):
            algorithm_for("dsa1024", Capability.SIGN)


# ===========================================================================
# Reads
# ===========================================================================

class TestReads:
    """Listing and classification."""

    def test_master_and_derived(self, gpg, runner):
        runner.on("--list-secret-keys", stdout=LISTING)
        master = gpg.master(MASTER)
        assert master.fingerprint == MASTER
        assert master.has_secret_material
        assert master.capabilities is CapabilityProfile.CERTIFY

        sign, enc = gpg.list_derived("0x0123456789ABCDEF")
        assert sign.fingerprint == SIGN_FPR
        assert sign.card_serial == "12345678"
        assert not sign.has_local_material
        assert sign.state is LifecycleState.TRANSFERRED
        assert enc.has_local_material
        assert enc.position == 2

        call = runner.calls[0]
        assert call.args[:3] == ["gpg", "--homedir", gpg.gnupghome.as_posix()]
        assert "--with-colons" in call.args

    def test_public_key_fallback(self, gpg, runner):
        runner.on("--list-secret-keys", returncode=2)
        runner.on("--list-keys", stdout=PUBLIC_ONLY)
        master = gpg.master(MASTER)
        assert master is not None
        assert not master.has_secret_material

    def test_unknown_master(self, gpg, runner):
        runner.on("--list-secret-keys", returncode=2)
        runner.on("--list-keys", returncode=2)
        assert gpg.master("FFFFFFFFFFFFFFFF") is None
        assert gpg.list_derived("FFFFFFFFFFFFFFFF") == []

    def test_listing_failure(self, gpg, runner):
        runner.on("--list-secret-keys", returncode=2, stdout="sec:garbage", stderr="keydb error")
        with pytest.raises(ToolError):
            gpg.master(MASTER)

    def test_check_available(self, gpg, runner):
        runner.on("--version", stdout="gpg (GnuPG) 2.4.5")
        gpg.check_available()

    def test_export_private_material(self, gpg, runner):
        runner.on("--list-secret-keys", stdout=LISTING)
        handle = gpg.export_private_material(ENC_FPR)
        assert handle.fingerprint == ENC_FPR
        assert handle.position == 2
        assert runner.calls[0].args[-1] == f"{ENC_FPR}!"

    def test_export_from_card_stub(self, gpg, runner):
        runner.on("--list-secret-keys", stdout=LISTING)
        with pytest.raises(NoLocalMaterial) as exc_info:
            gpg.export_private_material(SIGN_FPR)
        assert "12345678" in str(exc_info.value)

    def test_revocation_certificate(self, gpg, runner, temp_dir):
        runner.on("--list-secret-keys", stdout=LISTING)
        assert gpg.revocation_certificate(MASTER) is None
        revocs = temp_dir / "openpgp-revocs.d"
        revocs.mkdir()
        (revocs / f"{MASTER}.rev").write_bytes(b"cert")
        assert gpg.revocation_certificate(MASTER) == b"cert"


# ===========================================================================
# Writes
# ===========================================================================

@pytest.mark.security
class TestWrites:
    """Passphrases travel through --passphrase-fd, never argv."""

    def test_record_new_derived(self, gpg, runner):
        runner.on("--list-secret-keys", stdout=LISTING)
        runner.on("--list-secret-keys", stdout=LISTING)
        runner.on("--list-secret-keys", stdout=LISTING + NEW_ENC)
        runner.on("--quick-add-key")

        secret = passphrase()
        cred = gpg.record_new_derived(MASTER, Capability.ENCRYPT, "ed25519", "2y", secret)
        assert cred.fingerprint == NEW_FPR

        add = runner.calls_with("--quick-add-key")[0]
        assert add.args[-4:] == [MASTER, "cv25519", "encr", "2y"]
        assert "--passphrase-fd" in add.args
        assert add.kwargs['pass_fds']
        assert PASSPHRASE not in add.line

    def test_record_new_derived_nothing_created(self, gpg, runner):
        runner.on("--list-secret-keys", stdout=LISTING)
        runner.on("--quick-add-key")
        with pytest.raises(ToolError):
            gpg.record_new_derived(MASTER, Capability.ENCRYPT, "ed25519", "2y", passphrase())

    def test_quick_add_key_failure(self, gpg, runner):
        runner.on("--list-secret-keys", stdout=LISTING)
        runner.on("--quick-add-key", returncode=2, stderr="gpg: bad passphrase")
        with pytest.raises(ToolError) as exc_info:
            gpg.record_new_derived(MASTER, Capability.SIGN, "ed25519", "2y", passphrase())
        assert "bad passphrase" in exc_info.value.output

    def test_requires_master_material(self, gpg, runner):
        runner.on("--list-secret-keys", returncode=2)
        runner.on("--list-keys", stdout=PUBLIC_ONLY)
        with pytest.raises(NoMasterMaterial):
            gpg.record_new_derived(MASTER, Capability.SIGN, "ed25519", "2y", passphrase())
        assert runner.calls_with("--quick-add-key") == []

    def test_record_retirement(self, gpg, runner):
        runner.on("--list-secret-keys", stdout=LISTING)
        runner.on("--quick-set-expire")
        when = datetime(2025, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
        gpg.record_retirement(MASTER, ENC_FPR, when, passphrase())
        call = runner.calls_with("--quick-set-expire")[0]
        assert call.args[-3:] == [MASTER, "20250304T050607", ENC_FPR]

    def test_discard_local_material(self, gpg, runner):
        runner.on("--delete-secret-keys")
        runner.on("gpg-connect-agent", stdout="OK\n")
        gpg.discard_local_material(ENC_FPR, "12345678")
        assert runner.calls[0].args[-1] == f"{ENC_FPR}!"
        learn = runner.calls_with("gpg-connect-agent")[0]
        assert learn.args[-3:] == ["scd serialno", "learn --force", "/bye"]


class TestReassociate:
    def test_retries_card_errors(self, gpg, runner, monkeypatch):
        monkeypatch.setattr("provisioner.utils.error_handling.time.sleep", lambda s: None)
        runner.on("gpg-connect-agent", stdout="ERR 100663404 Card error <SCD>\n")
        with pytest.raises(ToolError):
            gpg.reassociate("12345678")
        assert len(runner.calls) == 3

    def test_recovers_after_retry(self, gpg, runner, monkeypatch):
        monkeypatch.setattr("provisioner.utils.error_handling.time.sleep", lambda s: None)
        runner.on("gpg-connect-agent", stdout="ERR 100663404 Card error <SCD>\n")
        runner.on("gpg-connect-agent", stdout="OK\n")
        gpg.reassociate("12345678")
        assert len(runner.calls) == 2
