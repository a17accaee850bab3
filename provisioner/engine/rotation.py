"""
Rotation Engine - retire a derived credential and issue its successor.

Continuity rule: at most one active credential per capability once a
rotation completes, and never zero unless the caller explicitly accepts
it. The successor is issued before the predecessor is retired, so a
failure between the two steps leaves two active credentials (a normal
rotation window), never none.

Retirement sets the expiration to now. Nothing is ever deleted; old
credentials stay in the keyring so old signatures still verify and old
ciphertext can still be decrypted from backups.

The rotation engine only touches the offline store. Placing the
successor on tokens is the planner's job on the next run.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..adapters.interfaces import OfflineCredentialStore
from ..errors import NoMasterMaterial, PostconditionFailed, RotationRejected
from ..logging_config import get_logger
from ..models import Capability, DerivedCredential, MasterCredential, utcnow
from ..security.secure_memory import SecretBuffer

logger = get_logger(__name__)


@dataclass(frozen=True)
class RotationResult:
    retired_id: str
    new_credential: Optional[DerivedCredential]
    retired_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict:
        return {
            'retired_id': self.retired_id,
            'retired_ids': list(self.retired_ids),
            'new_credential': self.new_credential.to_dict() if self.new_credential else None,
        }


class RotationEngine:
    """
    Issues and retires derived credentials in the offline store.

    Args:
        store: Offline credential store
        key_type: Algorithm family for new credentials (ed25519, rsa4096)
        expiration: Validity of new credentials, in gpg notation (2y, 18m, 0)
    """

    def __init__(self, store: OfflineCredentialStore, key_type: str = "ed25519",
                 expiration: str = "2y"):
        self.store = store
        self.key_type = key_type
        self.expiration = expiration

    def _require_master(self, master_id: str) -> MasterCredential:
        master = self.store.master(master_id)
        if master is None:
            raise NoMasterMaterial(f"Master {master_id} is not in the offline store")
        if not master.has_secret_material:
            raise NoMasterMaterial(
                f"Master {master.fingerprint} has no secret material here; "
                f"mount the offline backup first")
        return master

    def _active(self, master_id: str, capability: Capability,
                now: Optional[datetime] = None) -> List[DerivedCredential]:
        return [d for d in self.store.list_derived(master_id)
                if d.has_exactly(capability) and d.is_active(now)]

    def issue(self, master_id: str, capability: Capability,
              passphrase: SecretBuffer) -> DerivedCredential:
        """Create a new derived credential with exactly `capability`."""
        if capability is Capability.CERTIFY:
            raise RotationRejected("Certification stays with the master credential")
        self._require_master(master_id)
        credential = self.store.record_new_derived(master_id, capability, self.key_type,
                                                   self.expiration, passphrase)
        logger.info(f"Issued {capability.name.lower()} credential {credential.fingerprint}")
        return credential

    def rotate(
        self,
        master_id: str,
        capability: Capability,
        passphrase: SecretBuffer,
        issue_successor: bool = True,
        accept_zero_active: bool = False,
        now: Optional[datetime] = None,
    ) -> RotationResult:
        """
        Retire the active credential(s) of one capability.

        Raises:
            NoMasterMaterial: the master secret is not available
            RotationRejected: nothing to rotate, or rotating would leave
                zero active credentials without accept_zero_active
            PostconditionFailed: the store does not show exactly one
                active credential afterwards
        """
        if capability is Capability.CERTIFY:
            raise RotationRejected("Certification stays with the master credential")
        if not issue_successor and not accept_zero_active:
            raise RotationRejected(
                f"Retiring the {capability.name.lower()} credential without a successor "
                f"leaves none active; pass accept_zero_active to confirm")

        self._require_master(master_id)
        predecessors = self._active(master_id, capability, now)
        if not predecessors:
            raise RotationRejected(f"No active {capability.name.lower()} credential to rotate")
        predecessors.sort(key=lambda d: d.created_at)

        successor = None
        if issue_successor:
            successor = self.store.record_new_derived(master_id, capability, self.key_type,
                                                      self.expiration, passphrase)
            logger.info(f"Issued successor {successor.fingerprint}")

        retire_at = now or utcnow()
        for old in predecessors:
            self.store.record_retirement(master_id, old.fingerprint, retire_at, passphrase)
            logger.info(f"Retired {old.fingerprint} as of {retire_at.isoformat()}")

        remaining = self._active(master_id, capability, max(retire_at, utcnow()))
        expected = 1 if issue_successor else 0
        if len(remaining) != expected or (
                successor is not None and remaining[0].fingerprint != successor.fingerprint):
            raise PostconditionFailed(
                f"Expected {expected} active {capability.name.lower()} credential(s) after "
                f"rotation, found {len(remaining)}")

        return RotationResult(
            retired_id=predecessors[-1].fingerprint,
            new_credential=successor,
            retired_ids=tuple(d.fingerprint for d in predecessors),
        )
