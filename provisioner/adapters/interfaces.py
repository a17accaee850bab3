"""
Collaborator interfaces consumed by the engine.

The engine never talks to gpg, ykman or the filesystem directly; it is
handed implementations of these abstract classes. Production code uses
the gpg/YubiKey/file implementations in this package; tests use
in-memory doubles.

Concurrency: the offline store is a single mutable resource. Any
read-then-write sequence against it needs external mutual exclusion if
several engine instances can run at once (the CLI holds a lock file in
GNUPGHOME for the duration of a command).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from ..models import (
    AppletDomain,
    Capability,
    CredentialSlot,
    DerivedCredential,
    MasterCredential,
    PresencePolicy,
    RetryCounter,
    SecretKind,
    SecretPolicy,
)
from ..security.secure_memory import SecretBuffer


@dataclass(frozen=True)
class PrivateMaterialHandle:
    """
    Opaque reference to private material held by the offline store.

    The material itself never leaves the store process; the handle tells
    the token backend which subkey to move.
    """
    master_id: str
    fingerprint: str
    position: int


@dataclass(frozen=True)
class GeneratedIdentity:
    """Result of on-device generation."""
    serial: str
    slot: str
    public_identifier: str
    identity_path: Optional[str] = None


class OfflineCredentialStore(ABC):
    """The offline keyring holding the master and derived credentials."""

    @abstractmethod
    def check_available(self) -> None:
        """Raise ToolUnavailable if the store cannot be queried."""
        pass

    @abstractmethod
    def master(self, master_id: str) -> Optional[MasterCredential]:
        """The master credential, or None if unknown."""
        pass

    @abstractmethod
    def list_derived(self, master_id: str) -> List[DerivedCredential]:
        """Every derived credential bound to the master, including expired ones."""
        pass

    @abstractmethod
    def export_private_material(self, derived_id: str) -> PrivateMaterialHandle:
        """Handle to local private material; raises NoLocalMaterial if absent."""
        pass

    @abstractmethod
    def discard_local_material(self, derived_id: str, card_serial: str) -> None:
        """Drop the local private copy, leaving a stub that points at the card."""
        pass

    @abstractmethod
    def record_retirement(self, master_id: str, derived_id: str, when: datetime,
                          passphrase: SecretBuffer) -> None:
        """Set the credential's expiration to `when`. Never deletes it."""
        pass

    @abstractmethod
    def record_new_derived(self, master_id: str, capability: Capability, algorithm: str,
                           expiration: str, passphrase: SecretBuffer) -> DerivedCredential:
        """Create a successor credential and return it."""
        pass

    @abstractmethod
    def reassociate(self, serial: str) -> None:
        """Forget which card the local stubs point to and re-learn from `serial`."""
        pass

    @abstractmethod
    def revocation_certificate(self, master_id: str) -> Optional[bytes]:
        """The revocation certificate generated alongside the master, if kept."""
        pass


class TokenBackend(ABC):
    """Command-based access to attached hardware tokens."""

    @abstractmethod
    def enumerate(self) -> List[str]:
        """Serials of attached tokens. Raises ToolUnavailable."""
        pass

    @abstractmethod
    def slot_status(self, serial: str, domain: AppletDomain, slot: str) -> CredentialSlot:
        """One slot. Raises TokenNotPresent or AppletUnavailable."""
        pass

    @abstractmethod
    def retry_counters(self, serial: str, domain: AppletDomain) -> Dict[SecretKind, RetryCounter]:
        """Current retry counters of one applet, always freshly read."""
        pass

    @abstractmethod
    def change_secret(self, serial: str, domain: AppletDomain, kind: SecretKind,
                      current: SecretBuffer, new: SecretBuffer) -> None:
        """Change an unlock secret. Raises WrongCurrentSecret or ToolError."""
        pass

    @abstractmethod
    def generate_on_slot(self, serial: str, domain: AppletDomain, slot: str,
                         secret_policy: SecretPolicy, presence_policy: PresencePolicy,
                         label: Optional[str] = None) -> GeneratedIdentity:
        """Generate non-exportable material inside the slot."""
        pass

    @abstractmethod
    def transfer_onto(self, serial: str, domain: AppletDomain, slot: str,
                      material: PrivateMaterialHandle, passphrase: SecretBuffer,
                      admin: SecretBuffer, replace: bool = False) -> None:
        """
        Copy private material into the slot. The local copy is left intact.

        `replace` overwrites an occupied slot.
        """
        pass

    @abstractmethod
    def reset(self, serial: str, domain: AppletDomain,
              authorizing_secret: Optional[SecretBuffer] = None,
              slot: Optional[str] = None) -> None:
        """Reset an applet, or clear a single PIV slot when `slot` is given."""
        pass

    @abstractmethod
    def set_presence_policy(self, serial: str, domain: AppletDomain, slot: str,
                            policy: PresencePolicy, admin: SecretBuffer) -> None:
        """Apply a touch policy to one slot."""
        pass


class RecipientSet(ABC):
    """Public identifiers the downstream encryption step encrypts to."""

    @abstractmethod
    def add(self, identifier: str, label: Optional[str] = None) -> bool:
        """Union the identifier in. Returns False if it was already present."""
        pass

    @abstractmethod
    def snapshot(self) -> List[str]:
        """Current identifiers, in file order."""
        pass


class RevocationArtifactStore(ABC):
    """Write-once storage for revocation certificates."""

    @abstractmethod
    def persist(self, subject_id: str, artifact: bytes) -> str:
        """Store the artifact; raises ArtifactImmutable if a different one exists."""
        pass

    @abstractmethod
    def exists(self, subject_id: str) -> bool:
        pass
