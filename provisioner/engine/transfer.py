"""
Credential Transfer Orchestrator - move a derived credential onto a slot.

The local private copy survives the transfer unless the caller asks for
it to be discarded. Discarding is the point of no return for cloning to
further tokens, so it is recorded explicitly in the result.
"""

from dataclasses import dataclass
from typing import Dict

from ..adapters.interfaces import OfflineCredentialStore, TokenBackend
from ..errors import NoLocalMaterial, TokenNotPresent, TransferRejected
from ..logging_config import get_logger
from ..models import AppletDomain, DerivedCredential, SlotRef
from ..security.secure_memory import SecretBuffer
from .planner import OPENPGP_SLOT_CAPABILITY

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransferResult:
    credential_id: str
    target: SlotRef
    local_material_discarded: bool = False
    replaced: bool = False

    def to_dict(self) -> Dict:
        return {
            'credential_id': self.credential_id,
            'target': str(self.target),
            'local_material_discarded': self.local_material_discarded,
            'replaced': self.replaced,
        }


class TransferOrchestrator:
    """Places derived credentials on token slots."""

    def __init__(self, store: OfflineCredentialStore, tokens: TokenBackend):
        self.store = store
        self.tokens = tokens

    def check_placeable(self, derived: DerivedCredential, target: SlotRef) -> None:
        """Raise TransferRejected unless the slot can hold exactly this credential."""
        if derived.capabilities is None or not derived.capabilities.is_exclusive:
            letters = derived.capabilities.letters if derived.capabilities else "unknown"
            raise TransferRejected(
                f"{derived.fingerprint} has capabilities '{letters}'; only single-capability "
                f"credentials are placed on tokens", target.serial)
        if target.domain is not AppletDomain.OPENPGP:
            raise TransferRejected("Only OpenPGP slots accept transferred credentials",
                                   target.serial)
        slot_capability = OPENPGP_SLOT_CAPABILITY.get(target.slot)
        if slot_capability is None or derived.capabilities.capabilities != {slot_capability}:
            raise TransferRejected(
                f"Slot {target.slot} cannot hold a {derived.capabilities.letters} credential",
                target.serial)

    def transfer(
        self,
        derived: DerivedCredential,
        target: SlotRef,
        retain_local_stub: bool,
        passphrase: SecretBuffer,
        admin: SecretBuffer,
        replace: bool = False,
    ) -> TransferResult:
        """
        Copy `derived` into `target`.

        Raises:
            TransferRejected: wrong capability set or slot
            TokenNotPresent: the token disappeared
            NoLocalMaterial: the store has no private copy to move
            ToolError: gpg failed
        """
        self.check_placeable(derived, target)

        if target.serial not in self.tokens.enumerate():
            raise TokenNotPresent(f"YubiKey {target.serial} is not attached", target.serial)
        if not derived.has_local_material:
            raise NoLocalMaterial(
                f"{derived.fingerprint} has no local private material to transfer", target.serial)

        handle = self.store.export_private_material(derived.fingerprint)
        logger.info(f"Transferring {derived.fingerprint} to {target}")
        self.tokens.transfer_onto(target.serial, target.domain, target.slot, handle,
                                  passphrase, admin, replace=replace)

        discarded = False
        if not retain_local_stub:
            self.store.discard_local_material(derived.fingerprint, target.serial)
            discarded = True
            logger.security(f"Local private material for {derived.fingerprint} discarded; "
                            f"it now exists only on {target.serial}")

        return TransferResult(derived.fingerprint, target, discarded, replace)
