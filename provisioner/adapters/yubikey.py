"""
YubiKey Backend - command-based access to YubiKey tokens.

Enumeration uses the ykman library. Everything else goes through the
`ykman`, `gpg` and `age-plugin-yubikey` command-line tools, the same
commands an operator would type, with secrets fed through stdin pipes.

Applet reads are cached per serial for a few seconds and invalidated by
every write. Retry counters are never cached.
"""

import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..constants import (
    FactoryDefaults,
    OPENPGP_KEYTOCARD_INDEX,
    OPENPGP_SLOTS,
    PIV_SLOTS,
    SECURE_DIR_MODE,
    SECURE_FILE_MODE,
    age_slot_number,
    piv_slot_from_age,
)
from ..errors import (
    AppletUnavailable,
    ToolError,
    ToolUnavailable,
    TokenNotPresent,
    UnsupportedSlot,
    WrongCurrentSecret,
)
from ..logging_config import get_logger
from ..models import (
    AppletDomain,
    CapabilityProfile,
    CredentialSlot,
    Occupancy,
    PresencePolicy,
    RetryCounter,
    SecretKind,
    SecretPolicy,
    secret_label,
)
from ..security.secure_memory import SecretBuffer
from . import parsers
from .interfaces import GeneratedIdentity, PrivateMaterialHandle, TokenBackend
from .process import ToolResult, ToolRunner

logger = get_logger(__name__)

# ykman subcommands for each unlock secret
CHANGE_COMMANDS: Dict[Tuple[AppletDomain, SecretKind], List[str]] = {
    (AppletDomain.OPENPGP, SecretKind.UNLOCK_PIN): ['openpgp', 'access', 'change-pin'],
    (AppletDomain.OPENPGP, SecretKind.MANAGEMENT_SECRET): ['openpgp', 'access', 'change-admin-pin'],
    (AppletDomain.OPENPGP, SecretKind.RECOVERY_CODE): ['openpgp', 'access', 'change-reset-code'],
    (AppletDomain.PIV, SecretKind.UNLOCK_PIN): ['piv', 'access', 'change-pin'],
    (AppletDomain.PIV, SecretKind.RECOVERY_CODE): ['piv', 'access', 'change-puk'],
    (AppletDomain.PIV, SecretKind.MANAGEMENT_SECRET): ['piv', 'access', 'change-management-key'],
}


def list_serials_with_ykman() -> List[str]:
    """Serials of attached YubiKeys, via ykman's device enumeration."""
    try:
        from ykman.device import list_all_devices
    except ImportError as e:
        raise ToolUnavailable(f"yubikey-manager is not installed: {e}")

    try:
        devices = list_all_devices()
    except Exception as e:
        raise ToolUnavailable(f"Cannot enumerate YubiKeys: {e}")
    return [str(info.serial) for _device, info in devices if info.serial is not None]


class YubiKeyBackend(TokenBackend):
    """
    TokenBackend for YubiKey 5 series tokens.

    Args:
        gnupghome: Keyring directory gpg uses for card access
        identity_dir: Where generated age identity stubs are written
        runner: ToolRunner (tests inject a fake)
        enumerator: Callable returning attached serials
    """

    def __init__(
        self,
        gnupghome: str,
        identity_dir: str,
        runner: Optional[ToolRunner] = None,
        enumerator: Optional[Callable[[], List[str]]] = None,
        ykman: str = "ykman",
        gpg: str = "gpg",
        age_plugin: str = "age-plugin-yubikey",
        cache_ttl: float = 5.0,
    ):
        self.gnupghome = gnupghome
        self.identity_dir = Path(identity_dir)
        self.runner = runner or ToolRunner(env={'GNUPGHOME': gnupghome})
        self.enumerator = enumerator or list_serials_with_ykman
        self.ykman = ykman
        self.gpg = gpg
        self.age_plugin = age_plugin

        # Applet read cache: (serial, domain) -> (timestamp, parsed data)
        self._cache: Dict[Tuple[str, AppletDomain], Tuple[float, object]] = {}
        self._cache_ttl = cache_ttl

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _ykman(self, serial: str, *args: str) -> List[str]:
        return [self.ykman, '--device', serial, *args]

    def _gpg(self, *args: str) -> List[str]:
        return [self.gpg, '--homedir', self.gnupghome, *args]

    def invalidate(self, serial: str) -> None:
        for key in [k for k in self._cache if k[0] == serial]:
            del self._cache[key]

    def _cached(self, serial: str, domain: AppletDomain, loader: Callable[[], object]) -> object:
        now = time.time()
        entry = self._cache.get((serial, domain))
        if entry and now - entry[0] < self._cache_ttl:
            return entry[1]
        value = loader()
        self._cache[(serial, domain)] = (now, value)
        return value

    def _check_read(self, result: ToolResult, serial: str, domain: AppletDomain) -> str:
        if result.ok:
            return result.stdout
        if parsers.detect_device_missing(result.output):
            raise TokenNotPresent(f"YubiKey {serial} is not attached", serial)
        if parsers.detect_applet_disabled(result.output):
            raise AppletUnavailable(f"{domain.value} applet is not enabled", serial)
        raise ToolError(f"Reading {domain.value} applet failed", serial,
                        returncode=result.returncode, output=result.output)

    def _raise_write_failure(self, result: ToolResult, serial: str, what: str) -> None:
        wrong, remaining = parsers.detect_wrong_secret(result.output)
        if wrong:
            raise WrongCurrentSecret(f"{what}: current secret rejected", serial, remaining)
        raise ToolError(f"{what} failed", serial, returncode=result.returncode,
                        output=result.output)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def enumerate(self) -> List[str]:
        return list(self.enumerator())

    def _openpgp_state(self, serial: str) -> Tuple[parsers.CardStatus, parsers.OpenPgpInfo]:
        def load():
            info_text = self._check_read(
                self.runner.run(self._ykman(serial, 'openpgp', 'info'), serial=serial),
                serial, AppletDomain.OPENPGP)
            card = self.runner.run(self._gpg('--batch', '--with-colons', '--card-status'),
                                   serial=serial)
            if not card.ok:
                raise AppletUnavailable(f"gpg cannot read the OpenPGP card: {card.stderr.strip()}",
                                        serial)
            status = parsers.parse_card_status(card.stdout)
            if status.serial != serial:
                raise AppletUnavailable(
                    f"gpg is talking to card {status.serial}, not {serial}; "
                    f"attach one OpenPGP token at a time", serial)
            return status, parsers.parse_openpgp_info(info_text)
        return self._cached(serial, AppletDomain.OPENPGP, load)

    def _piv_state(self, serial: str) -> Tuple[parsers.PivInfo, List[parsers.AgeIdentityInfo]]:
        def load():
            info = parsers.parse_piv_info(self._check_read(
                self.runner.run(self._ykman(serial, 'piv', 'info'), serial=serial),
                serial, AppletDomain.PIV))
            listing = self.runner.run([self.age_plugin, '--list'], serial=serial)
            if not listing.ok:
                raise ToolError("age-plugin-yubikey --list failed", serial,
                                returncode=listing.returncode, output=listing.output)
            identities = [i for i in parsers.parse_age_list(listing.stdout) if i.serial == serial]
            return info, identities
        return self._cached(serial, AppletDomain.PIV, load)

    def slot_status(self, serial: str, domain: AppletDomain, slot: str) -> CredentialSlot:
        slot = slot.lower()
        if domain is AppletDomain.OPENPGP:
            if slot not in OPENPGP_SLOTS:
                raise UnsupportedSlot(f"OpenPGP has no slot {slot}", serial)
            status, info = self._openpgp_state(serial)
            fpr = status.fingerprints.get(slot)
            return CredentialSlot(
                domain=domain,
                index=slot,
                occupancy=Occupancy.OCCUPIED if fpr else Occupancy.EMPTY,
                bound_id=fpr,
                presence_policy=info.touch_policies.get(slot),
            )

        if slot not in PIV_SLOTS:
            raise UnsupportedSlot(f"PIV has no slot {slot}", serial)
        info, identities = self._piv_state(serial)
        for identity in identities:
            if piv_slot_from_age(identity.slot_number) == slot:
                return CredentialSlot(
                    domain=domain,
                    index=slot,
                    occupancy=Occupancy.OCCUPIED,
                    bound_id=identity.recipient,
                    capabilities=CapabilityProfile.ENCRYPT,
                    presence_policy=identity.presence_policy,
                    secret_policy=identity.secret_policy,
                    label=identity.name,
                )
        piv_slot = info.slots.get(slot)
        if piv_slot is None:
            return CredentialSlot(domain=domain, index=slot, occupancy=Occupancy.EMPTY)
        return CredentialSlot(
            domain=domain,
            index=slot,
            occupancy=Occupancy.OCCUPIED,
            bound_id=piv_slot.fingerprint or piv_slot.subject or f"piv:{slot}",
            label=piv_slot.subject,
        )

    def retry_counters(self, serial: str, domain: AppletDomain) -> Dict[SecretKind, RetryCounter]:
        if domain is AppletDomain.OPENPGP:
            text = self._check_read(
                self.runner.run(self._ykman(serial, 'openpgp', 'info'), serial=serial),
                serial, domain)
            info = parsers.parse_openpgp_info(text)
            if info.pin_tries is None or info.admin_pin_tries is None:
                raise ToolError("ykman openpgp info did not report retry counters", serial,
                                output=text)
            maximum = FactoryDefaults.OPENPGP_MAX_TRIES
            counters = {
                SecretKind.UNLOCK_PIN: RetryCounter(SecretKind.UNLOCK_PIN, info.pin_tries, maximum),
                SecretKind.MANAGEMENT_SECRET: RetryCounter(
                    SecretKind.MANAGEMENT_SECRET, info.admin_pin_tries, maximum),
            }
            if info.reset_code_tries is not None:
                counters[SecretKind.RECOVERY_CODE] = RetryCounter(
                    SecretKind.RECOVERY_CODE, info.reset_code_tries, maximum)
            return counters

        text = self._check_read(
            self.runner.run(self._ykman(serial, 'piv', 'info'), serial=serial), serial, domain)
        info = parsers.parse_piv_info(text)
        counters = {}
        for kind, tries in ((SecretKind.UNLOCK_PIN, info.pin_tries),
                            (SecretKind.RECOVERY_CODE, info.puk_tries)):
            if tries is not None:
                remaining, maximum = tries
                counters[kind] = RetryCounter(kind, remaining, maximum or FactoryDefaults.PIV_MAX_TRIES)
        # The PIV management key has no retry counter
        return counters

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def change_secret(self, serial: str, domain: AppletDomain, kind: SecretKind,
                      current: SecretBuffer, new: SecretBuffer) -> None:
        label = secret_label(kind, domain)
        command = CHANGE_COMMANDS[(domain, kind)]
        result = self.runner.run_with_input(
            self._ykman(serial, *command),
            items=(current, new, new),
            new_session=True,
            serial=serial,
        )
        self.invalidate(serial)
        if not result.ok:
            self._raise_write_failure(result, serial, f"Changing {label}")
        logger.info(f"Changed {label} on {serial}")

    def generate_on_slot(self, serial: str, domain: AppletDomain, slot: str,
                         secret_policy: SecretPolicy, presence_policy: PresencePolicy,
                         label: Optional[str] = None) -> GeneratedIdentity:
        if domain is not AppletDomain.PIV:
            raise UnsupportedSlot("On-device generation is only supported for PIV slots", serial)
        number = age_slot_number(slot)

        args = [
            self.age_plugin, '--generate',
            '--serial', serial,
            '--slot', str(number),
            '--pin-policy', secret_policy.value,
            '--touch-policy', presence_policy.for_piv(),
        ]
        if label:
            args += ['--name', label]

        logger.notice(f"Generating age identity on {serial} slot {slot}; "
                      f"enter the PIV PIN and touch the key when asked")
        # age-plugin-yubikey prompts on the terminal itself
        result = self.runner.run_with_input(
            args,
            show_prompts=True,
            wait_message=f"Waiting for touch/PIN on YubiKey {serial}",
            serial=serial,
        )
        self.invalidate(serial)
        if not result.ok:
            raise ToolError("age-plugin-yubikey --generate failed", serial,
                            returncode=result.returncode, output=result.output)

        public_key, identity = parsers.parse_generated_identity(result.stdout)
        if not public_key:
            raise ToolError("age-plugin-yubikey did not print a public key", serial,
                            output=result.stdout)

        self.identity_dir.mkdir(parents=True, exist_ok=True)
        self.identity_dir.chmod(SECURE_DIR_MODE)
        path = self.identity_dir / f"age-yubikey-identity-{serial}-slot{number}.txt"
        path.write_text(f"# public key: {public_key}\n{identity}")
        path.chmod(SECURE_FILE_MODE)

        return GeneratedIdentity(serial=serial, slot=slot, public_identifier=public_key,
                                 identity_path=str(path))

    def transfer_onto(self, serial: str, domain: AppletDomain, slot: str,
                      material: PrivateMaterialHandle, passphrase: SecretBuffer,
                      admin: SecretBuffer, replace: bool = False) -> None:
        """
        Copy a subkey onto the OpenPGP card with gpg --edit-key keytocard.

        The edit session is quit without saving, so the keyring keeps its
        local private copy. Removing it is a separate, explicit step
        (OfflineCredentialStore.discard_local_material).
        """
        if domain is not AppletDomain.OPENPGP:
            raise UnsupportedSlot("Only OpenPGP slots accept transferred material", serial)
        if slot not in OPENPGP_KEYTOCARD_INDEX:
            raise UnsupportedSlot(f"OpenPGP has no slot {slot}", serial)

        # Confirms gpg is talking to this card
        self._openpgp_state(serial)

        select = f"key {material.position}"
        script = [passphrase, select, 'keytocard', str(OPENPGP_KEYTOCARD_INDEX[slot])]
        if replace:
            script.append('y')
        script += [admin, select, 'quit', 'N']

        result = self.runner.run_with_input(
            self._gpg('--no-tty', '--pinentry-mode', 'loopback',
                      '--passphrase-fd', '0', '--command-fd', '0',
                      '--edit-key', material.master_id),
            items=script,
            wait_message=f"Waiting for YubiKey {serial}",
            serial=serial,
        )
        self.invalidate(serial)
        if not result.ok:
            self._raise_write_failure(result, serial, f"keytocard onto {serial}/{slot}")
        logger.info(f"Transferred {material.fingerprint} to {serial}/{slot}")

    def reset(self, serial: str, domain: AppletDomain,
              authorizing_secret: Optional[SecretBuffer] = None,
              slot: Optional[str] = None) -> None:
        if slot is None:
            logger.security(f"Resetting {domain.value} applet on {serial}")
            result = self.runner.run_with_input(
                self._ykman(serial, domain.value, 'reset', '--force'),
                wait_message=f"Waiting for YubiKey {serial}",
                serial=serial,
            )
            self.invalidate(serial)
            if not result.ok:
                raise ToolError(f"{domain.value} reset failed", serial,
                                returncode=result.returncode, output=result.output)
            return

        if domain is not AppletDomain.PIV:
            raise UnsupportedSlot("OpenPGP slots are overwritten on transfer, not cleared", serial)
        if authorizing_secret is None:
            raise ToolError("Clearing a PIV slot requires the management key", serial)

        logger.security(f"Clearing PIV slot {slot} on {serial}")
        for what in ('keys', 'certificates'):
            result = self.runner.run_with_input(
                self._ykman(serial, 'piv', what, 'delete', slot),
                items=(authorizing_secret,),
                new_session=True,
                serial=serial,
            )
            self.invalidate(serial)
            # An empty certificate slot is fine once the key is gone
            if not result.ok and not (what == 'certificates' and 'no certificate' in result.output.lower()):
                self._raise_write_failure(result, serial, f"Clearing PIV {what} in slot {slot}")

    def set_presence_policy(self, serial: str, domain: AppletDomain, slot: str,
                            policy: PresencePolicy, admin: SecretBuffer) -> None:
        if domain is not AppletDomain.OPENPGP:
            raise UnsupportedSlot("PIV touch policy is fixed at generation", serial)
        if slot not in OPENPGP_SLOTS:
            raise UnsupportedSlot(f"OpenPGP has no slot {slot}", serial)

        result = self.runner.run_with_input(
            self._ykman(serial, 'openpgp', 'keys', 'set-touch', slot, policy.for_openpgp(),
                        '--force'),
            items=(admin,),
            new_session=True,
            serial=serial,
        )
        self.invalidate(serial)
        if not result.ok:
            self._raise_write_failure(result, serial, f"Setting touch policy on {slot}")
        logger.info(f"Touch policy for {serial}/{slot} set to {policy.value}")
