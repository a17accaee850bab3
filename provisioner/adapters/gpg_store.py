"""
GnuPG Offline Store - the offline keyring as an OfflineCredentialStore.

All reads go through `gpg --with-colons`. Writes that need the master
passphrase receive it through an anonymous pipe (--passphrase-fd), never
on the command line.

The keyring lives in GNUPGHOME, which is normally a tmpfs or an
encrypted, offline volume.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from ..errors import NoLocalMaterial, NoMasterMaterial, ToolError
from ..logging_config import get_logger
from ..models import Capability, DerivedCredential, MasterCredential
from ..security.secret_scope import SecretPipe
from ..security.secure_memory import SecretBuffer
from ..utils.error_handling import ErrorCategory, with_error_handling
from . import parsers
from .interfaces import OfflineCredentialStore, PrivateMaterialHandle
from .process import ToolRunner

logger = get_logger(__name__)

# gpg --quick-add-key usage names
USAGE_NAMES = {
    Capability.SIGN: "sign",
    Capability.ENCRYPT: "encr",
    Capability.AUTHENTICATE: "auth",
}


def algorithm_for(key_type: str, capability: Capability) -> str:
    """
    gpg algorithm string for a configured key type.

    ed25519 cannot encrypt; encryption subkeys use cv25519 instead.
    """
    key_type = key_type.lower()
    if key_type in ('ed25519', 'cv25519', 'curve25519'):
        return 'cv25519' if capability is Capability.ENCRYPT else 'ed25519'
    if key_type.startswith('rsa'):
        return key_type
    raise ValueError(f"Unsupported key type: {key_type}")


class GpgOfflineStore(OfflineCredentialStore):
    """
    Offline keyring backed by gpg.

    Args:
        gnupghome: Keyring directory (GNUPGHOME)
        runner: ToolRunner to use (tests inject a fake)
        gpg: gpg executable name
    """

    def __init__(self, gnupghome: str, runner: Optional[ToolRunner] = None,
                 gpg: str = "gpg", gpg_connect_agent: str = "gpg-connect-agent"):
        self.gnupghome = Path(gnupghome)
        self.runner = runner or ToolRunner(env={'GNUPGHOME': str(self.gnupghome)})
        self.gpg = gpg
        self.gpg_connect_agent = gpg_connect_agent

    def _gpg(self, *args: str) -> List[str]:
        return [self.gpg, '--homedir', str(self.gnupghome), *args]

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def check_available(self) -> None:
        result = self.runner.run(self._gpg('--version'))
        if not result.ok:
            raise ToolError("gpg --version failed", returncode=result.returncode,
                            output=result.output)

    def _listing(self, key_spec: str, secret: bool = True) -> str:
        mode = '--list-secret-keys' if secret else '--list-keys'
        result = self.runner.run(self._gpg(
            '--batch', '--with-colons', '--fixed-list-mode', mode, key_spec,
        ))
        if result.ok:
            return result.stdout
        # gpg exits 2 when nothing matches
        if result.returncode == 2 and not result.stdout.strip():
            return ""
        raise ToolError(f"gpg {mode} failed", returncode=result.returncode, output=result.output)

    def _read(self, master_id: str) -> Tuple[Optional[MasterCredential], List[DerivedCredential]]:
        master, derived = parsers.parse_secret_key_listing(self._listing(master_id), master_id)
        if master is None:
            # Public key only: the master secret has been moved off this host
            master, derived = parsers.parse_secret_key_listing(
                self._listing(master_id, secret=False), master_id)
        return master, derived

    def master(self, master_id: str) -> Optional[MasterCredential]:
        return self._read(master_id)[0]

    def list_derived(self, master_id: str) -> List[DerivedCredential]:
        return self._read(master_id)[1]

    def _find(self, derived_id: str) -> DerivedCredential:
        text = self._listing(f"{derived_id}!")
        for master_fpr in parsers.primary_fingerprints(text):
            _, derived = parsers.parse_secret_key_listing(text, master_fpr)
            for cred in derived:
                if cred.fingerprint == derived_id.upper():
                    return cred
        raise NoLocalMaterial(f"Derived credential {derived_id} is not in the offline store")

    def export_private_material(self, derived_id: str) -> PrivateMaterialHandle:
        cred = self._find(derived_id)
        if not cred.has_local_material:
            where = f"card {cred.card_serial}" if cred.card_serial else "no local copy"
            raise NoLocalMaterial(
                f"Derived credential {cred.fingerprint} has no local private material ({where})"
            )
        return PrivateMaterialHandle(cred.master_id, cred.fingerprint, cred.position)

    def revocation_certificate(self, master_id: str) -> Optional[bytes]:
        master = self.master(master_id)
        if master is None:
            return None
        path = self.gnupghome / 'openpgp-revocs.d' / f"{master.fingerprint}.rev"
        if not path.exists():
            return None
        return path.read_bytes()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _require_master_material(self, master_id: str) -> MasterCredential:
        master = self.master(master_id)
        if master is None or not master.has_secret_material:
            raise NoMasterMaterial(
                f"Secret material for master {master_id} is not in {self.gnupghome}"
            )
        return master

    def _run_with_passphrase(self, args: List[str], passphrase: SecretBuffer,
                             operation: str) -> None:
        with SecretPipe(passphrase) as fd:
            result = self.runner.run_with_input(
                self._gpg('--batch', '--pinentry-mode', 'loopback',
                          '--passphrase-fd', str(fd), *args),
                pass_fds=(fd,),
            )
        if not result.ok:
            raise ToolError(f"{operation} failed", returncode=result.returncode,
                            output=result.stderr)

    def record_new_derived(self, master_id: str, capability: Capability, algorithm: str,
                           expiration: str, passphrase: SecretBuffer) -> DerivedCredential:
        master = self._require_master_material(master_id)
        before = {d.fingerprint for d in self.list_derived(master_id)}
        algo = algorithm_for(algorithm, capability)

        logger.info(f"Adding {USAGE_NAMES[capability]} subkey ({algo}, expires {expiration})")
        self._run_with_passphrase(
            ['--quick-add-key', master.fingerprint, algo, USAGE_NAMES[capability], expiration],
            passphrase,
            "gpg --quick-add-key",
        )

        created = [d for d in self.list_derived(master_id)
                   if d.fingerprint not in before and d.has_exactly(capability)]
        if len(created) != 1:
            raise ToolError(f"Expected one new {capability.name.lower()} subkey, found {len(created)}")
        return created[0]

    def record_retirement(self, master_id: str, derived_id: str, when: datetime,
                          passphrase: SecretBuffer) -> None:
        master = self._require_master_material(master_id)
        stamp = when.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%S')
        logger.info(f"Setting expiration of {derived_id} to {stamp}")
        self._run_with_passphrase(
            ['--quick-set-expire', master.fingerprint, stamp, derived_id],
            passphrase,
            "gpg --quick-set-expire",
        )

    def discard_local_material(self, derived_id: str, card_serial: str) -> None:
        """
        Delete the local secret subkey, then re-learn the card so gpg
        recreates a stub pointing at it.
        """
        logger.security(f"Discarding local private material for {derived_id}")
        result = self.runner.run(self._gpg(
            '--batch', '--yes', '--delete-secret-keys', f"{derived_id}!",
        ))
        if not result.ok:
            raise ToolError("gpg --delete-secret-keys failed", card_serial,
                            returncode=result.returncode, output=result.stderr)
        self.reassociate(card_serial)

    @with_error_handling(category=ErrorCategory.OBSERVATION, operation="reassociate",
                         reraise=True, retry_count=2, retry_delay=1.0,
                         retry_exceptions=(ToolError,))
    def reassociate(self, serial: str) -> None:
        """Forget the cached card association and learn the inserted card."""
        result = self.runner.run([
            self.gpg_connect_agent, '--homedir', str(self.gnupghome),
            'scd serialno', 'learn --force', '/bye',
        ], serial=serial)
        if not result.ok or 'ERR' in result.stdout:
            raise ToolError(f"Could not re-learn card {serial}", serial,
                            returncode=result.returncode, output=result.output)
        logger.debug(f"Re-learned card {serial}")
