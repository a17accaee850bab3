"""
Multi-Token Consistency Coordinator.

Two ways of covering several tokens:

- clone: the same credential on a backup token, copied from the retained
  local material. Never possible once the local copy is gone.
- provision_redundant: an independent identity generated on each token,
  all listed as recipients, so any one token can decrypt.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from ..adapters.interfaces import (
    GeneratedIdentity,
    OfflineCredentialStore,
    RecipientSet,
    TokenBackend,
)
from ..constants import age_slot_number
from ..errors import ConfigError, NoLocalMaterial, PostconditionFailed
from ..logging_config import get_logger
from ..models import (
    AppletDomain,
    DerivedCredential,
    PresencePolicy,
    SecretPolicy,
    SlotRef,
)
from ..security.secure_memory import SecretBuffer
from .transfer import TransferOrchestrator, TransferResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class RedundantResult:
    identity: GeneratedIdentity
    added: bool

    def to_dict(self) -> Dict:
        return {
            'serial': self.identity.serial,
            'slot': self.identity.slot,
            'public_identifier': self.identity.public_identifier,
            'identity_path': self.identity.identity_path,
            'added_to_recipients': self.added,
        }


class MultiTokenCoordinator:
    """Keeps several tokens consistent with each other and the recipient set."""

    def __init__(self, store: OfflineCredentialStore, tokens: TokenBackend,
                 transfer: TransferOrchestrator, recipients: Optional[RecipientSet] = None):
        self.store = store
        self.tokens = tokens
        self.transfer = transfer
        self.recipients = recipients

    def clone(
        self,
        derived: DerivedCredential,
        target: SlotRef,
        presence_policy: Optional[PresencePolicy],
        passphrase: SecretBuffer,
        admin: SecretBuffer,
        replace: bool = False,
    ) -> TransferResult:
        """
        Place an already-placed credential on another token.

        Checks for local material before touching any hardware.
        """
        if not derived.has_local_material:
            raise NoLocalMaterial(
                f"{derived.fingerprint} has no retained local material; it cannot be cloned. "
                f"Use a redundant identity for this token instead.", target.serial)

        result = self.transfer.transfer(derived, target, True, passphrase, admin, replace=replace)
        if presence_policy is not None:
            self.tokens.set_presence_policy(target.serial, target.domain, target.slot,
                                            presence_policy, admin)
        # gpg remembers which card a stub lives on; make it learn the new one
        self.store.reassociate(target.serial)
        logger.info(f"Cloned {derived.fingerprint} to {target}")
        return result

    def provision_redundant(
        self,
        serial: str,
        slot: str,
        secret_policy: SecretPolicy,
        presence_policy: PresencePolicy,
        label: Optional[str] = None,
    ) -> RedundantResult:
        """Generate an identity on a PIV slot and union it into the recipients."""
        if self.recipients is None:
            raise ConfigError("No recipient set configured for redundant identities", serial)

        before = self.recipients.snapshot()
        identity = self.tokens.generate_on_slot(serial, AppletDomain.PIV, slot,
                                                secret_policy, presence_policy, label)
        name = label or f"yubikey-{serial}-slot{age_slot_number(slot)}"
        added = self.recipients.add(identity.public_identifier, name)

        after = self.recipients.snapshot()
        missing = [r for r in before if r not in after]
        if missing:
            raise PostconditionFailed(
                f"Recipient set lost {len(missing)} identifier(s) while adding {name}", serial)
        if identity.public_identifier not in after:
            raise PostconditionFailed(f"New identity for {name} is not in the recipient set",
                                      serial)

        logger.info(f"Redundant identity on {serial}/{slot}: {identity.public_identifier}")
        return RedundantResult(identity, added)
