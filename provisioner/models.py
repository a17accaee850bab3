"""
Data model for credentials, tokens and state snapshots.

Everything the State Inspector produces is frozen: snapshots are values,
compared and diffed, never patched in place. Collections are tuples.

Capability sets are a tagged variant (CapabilityProfile) with one member
per exact combination of the sign/encrypt/authenticate/certify flags.
Code compares members, never letters or substrings, so a sign+auth key is
never mistaken for a sign-only key.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple


# =============================================================================
# CAPABILITIES
# =============================================================================

class Capability(Enum):
    """A single key capability (gpg colon letter)."""
    SIGN = "s"
    ENCRYPT = "e"
    AUTHENTICATE = "a"
    CERTIFY = "c"

    @classmethod
    def from_name(cls, name: str) -> 'Capability':
        """Parse 'sign', 'encrypt', 'auth', 'authenticate', 'certify'."""
        aliases = {
            'sign': cls.SIGN,
            'encrypt': cls.ENCRYPT,
            'auth': cls.AUTHENTICATE,
            'authenticate': cls.AUTHENTICATE,
            'certify': cls.CERTIFY,
        }
        try:
            return aliases[name.strip().lower()]
        except KeyError:
            raise ValueError(f"Unknown capability: {name}") from None


def _caps(*letters: str) -> FrozenSet[Capability]:
    return frozenset(Capability(letter) for letter in letters)


class CapabilityProfile(Enum):
    """Exact capability set of one key."""
    NONE = _caps()
    SIGN = _caps("s")
    ENCRYPT = _caps("e")
    AUTHENTICATE = _caps("a")
    CERTIFY = _caps("c")
    SIGN_ENCRYPT = _caps("s", "e")
    SIGN_AUTHENTICATE = _caps("s", "a")
    ENCRYPT_AUTHENTICATE = _caps("e", "a")
    SIGN_ENCRYPT_AUTHENTICATE = _caps("s", "e", "a")
    CERTIFY_SIGN = _caps("c", "s")
    CERTIFY_ENCRYPT = _caps("c", "e")
    CERTIFY_AUTHENTICATE = _caps("c", "a")
    CERTIFY_SIGN_ENCRYPT = _caps("c", "s", "e")
    CERTIFY_SIGN_AUTHENTICATE = _caps("c", "s", "a")
    CERTIFY_ENCRYPT_AUTHENTICATE = _caps("c", "e", "a")
    CERTIFY_SIGN_ENCRYPT_AUTHENTICATE = _caps("c", "s", "e", "a")

    @classmethod
    def from_letters(cls, letters: str) -> Optional['CapabilityProfile']:
        """
        Classify gpg capability letters (colon field 12).

        Only lowercase letters describe the key itself; uppercase letters
        on a primary key summarize the whole keyblock and are ignored.
        Returns None when an unrecognised capability letter is present.
        """
        own = set(ch for ch in letters if ch.islower())
        known = {c.value for c in Capability}
        if not own <= known:
            return None
        return cls(frozenset(Capability(ch) for ch in own))

    @classmethod
    def exactly(cls, capability: Capability) -> 'CapabilityProfile':
        """Profile holding only the given capability."""
        return cls(frozenset([capability]))

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        return self.value

    @property
    def is_exclusive(self) -> bool:
        """True for single-capability profiles."""
        return len(self.value) == 1

    @property
    def letters(self) -> str:
        order = "csea"
        return "".join(ch for ch in order if Capability(ch) in self.value)


# =============================================================================
# CREDENTIALS
# =============================================================================

class LifecycleState(Enum):
    """Lifecycle of a derived credential."""
    LOCAL_ONLY = "local-only"
    TRANSFERRED = "transferred"
    EXPIRED = "expired"
    REVOKED = "revoked"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MasterCredential:
    """The offline, certify-only root credential."""
    fingerprint: str
    key_id: str
    capabilities: Optional[CapabilityProfile]
    created_at: datetime
    expires_at: Optional[datetime] = None
    has_secret_material: bool = False
    user_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fingerprint': self.fingerprint,
            'key_id': self.key_id,
            'capabilities': self.capabilities.letters if self.capabilities else None,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'has_secret_material': self.has_secret_material,
            'user_ids': list(self.user_ids),
        }


@dataclass(frozen=True)
class DerivedCredential:
    """An operational subkey bound to a master credential."""
    fingerprint: str
    key_id: str
    master_id: str
    capabilities: Optional[CapabilityProfile]
    algorithm: str
    key_length: int
    created_at: datetime
    expires_at: Optional[datetime]
    state: LifecycleState
    has_local_material: bool
    card_serial: Optional[str] = None
    position: int = 0  # 1-based subkey index, as gpg --edit-key "key N" expects

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """Not expired and not revoked."""
        if self.state in (LifecycleState.EXPIRED, LifecycleState.REVOKED):
            return False
        if self.expires_at is not None and self.expires_at <= (now or utcnow()):
            return False
        return True

    def has_exactly(self, capability: Capability) -> bool:
        return self.capabilities is CapabilityProfile.exactly(capability)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fingerprint': self.fingerprint,
            'key_id': self.key_id,
            'master_id': self.master_id,
            'capabilities': self.capabilities.letters if self.capabilities else None,
            'algorithm': self.algorithm,
            'key_length': self.key_length,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'state': self.state.value,
            'has_local_material': self.has_local_material,
            'card_serial': self.card_serial,
            'position': self.position,
        }


# =============================================================================
# TOKENS, APPLETS, SLOTS
# =============================================================================

class AppletDomain(Enum):
    """Independent credential namespaces on a token."""
    OPENPGP = "openpgp"   # sig/enc/aut slots
    PIV = "piv"           # one identity per slot


class Occupancy(Enum):
    EMPTY = "empty"
    OCCUPIED = "occupied"


class PresencePolicy(Enum):
    """Whether a touch is required per use."""
    NONE = "none"
    CACHED = "cached"
    ALWAYS = "always"

    @classmethod
    def parse(cls, value: str) -> 'PresencePolicy':
        """Accept engine names plus ykman/age-plugin-yubikey spellings."""
        mapping = {
            'none': cls.NONE, 'off': cls.NONE, 'never': cls.NONE,
            'cached': cls.CACHED, 'cached-fixed': cls.CACHED,
            'always': cls.ALWAYS, 'on': cls.ALWAYS, 'fixed': cls.ALWAYS,
        }
        try:
            return mapping[value.strip().lower()]
        except KeyError:
            raise ValueError(f"Unknown presence policy: {value}") from None

    def for_openpgp(self) -> str:
        return {'none': 'off', 'cached': 'cached', 'always': 'on'}[self.value]

    def for_piv(self) -> str:
        return {'none': 'never', 'cached': 'cached', 'always': 'always'}[self.value]


class SecretPolicy(Enum):
    """How often the unlock secret is required."""
    ONCE = "once"
    ALWAYS = "always"
    NEVER = "never"

    @classmethod
    def parse(cls, value: str) -> 'SecretPolicy':
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown secret policy: {value}") from None


class SecretKind(Enum):
    """Kinds of ephemeral secrets the engine handles."""
    ROOT_PASSPHRASE = "root_passphrase"
    UNLOCK_PIN = "pin"
    RECOVERY_CODE = "recovery_code"      # OpenPGP reset code / PIV PUK
    MANAGEMENT_SECRET = "management"     # OpenPGP admin PIN / PIV management key

    @classmethod
    def parse(cls, value: str) -> 'SecretKind':
        aliases = {
            'passphrase': cls.ROOT_PASSPHRASE,
            'root_passphrase': cls.ROOT_PASSPHRASE,
            'pin': cls.UNLOCK_PIN,
            'puk': cls.RECOVERY_CODE,
            'reset-code': cls.RECOVERY_CODE,
            'recovery_code': cls.RECOVERY_CODE,
            'admin-pin': cls.MANAGEMENT_SECRET,
            'management-key': cls.MANAGEMENT_SECRET,
            'management': cls.MANAGEMENT_SECRET,
        }
        try:
            return aliases[value.strip().lower()]
        except KeyError:
            raise ValueError(f"Unknown secret kind: {value}") from None


def secret_label(kind: SecretKind, domain: Optional[AppletDomain]) -> str:
    """Human name of a secret, e.g. 'OpenPGP admin PIN'."""
    if kind is SecretKind.ROOT_PASSPHRASE or domain is None:
        return "master key passphrase"
    names = {
        (AppletDomain.OPENPGP, SecretKind.UNLOCK_PIN): "OpenPGP user PIN",
        (AppletDomain.OPENPGP, SecretKind.RECOVERY_CODE): "OpenPGP reset code",
        (AppletDomain.OPENPGP, SecretKind.MANAGEMENT_SECRET): "OpenPGP admin PIN",
        (AppletDomain.PIV, SecretKind.UNLOCK_PIN): "PIV PIN",
        (AppletDomain.PIV, SecretKind.RECOVERY_CODE): "PIV PUK",
        (AppletDomain.PIV, SecretKind.MANAGEMENT_SECRET): "PIV management key",
    }
    return names[(domain, kind)]


@dataclass(frozen=True)
class SlotRef:
    """Address of a slot on a specific token."""
    serial: str
    domain: AppletDomain
    slot: str

    def __str__(self) -> str:
        return f"{self.serial}/{self.domain.value}/{self.slot}"


@dataclass(frozen=True)
class CredentialSlot:
    """Observed state of one slot."""
    domain: AppletDomain
    index: str
    occupancy: Occupancy
    bound_id: Optional[str] = None
    capabilities: Optional[CapabilityProfile] = None
    presence_policy: Optional[PresencePolicy] = None
    secret_policy: Optional[SecretPolicy] = None
    label: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.occupancy is Occupancy.EMPTY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain.value,
            'index': self.index,
            'occupancy': self.occupancy.value,
            'bound_id': self.bound_id,
            'capabilities': self.capabilities.letters if self.capabilities else None,
            'presence_policy': self.presence_policy.value if self.presence_policy else None,
            'secret_policy': self.secret_policy.value if self.secret_policy else None,
            'label': self.label,
        }


@dataclass(frozen=True)
class RetryCounter:
    """Remaining verification attempts for one unlock secret."""
    kind: SecretKind
    remaining: int
    maximum: int

    @property
    def is_critical(self) -> bool:
        """One more failure locks the secret (or it is already locked)."""
        return self.remaining <= 1

    @property
    def is_full(self) -> bool:
        return self.remaining == self.maximum

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind.value, 'remaining': self.remaining, 'maximum': self.maximum}


@dataclass(frozen=True)
class AppletState:
    """One applet on one token. available=False marks a degraded read."""
    domain: AppletDomain
    available: bool
    slots: Tuple[CredentialSlot, ...] = ()
    retry_counters: Tuple[RetryCounter, ...] = ()
    degraded_reason: Optional[str] = None

    def slot(self, index: str) -> Optional[CredentialSlot]:
        for s in self.slots:
            if s.index == index.lower():
                return s
        return None

    def counter(self, kind: SecretKind) -> Optional[RetryCounter]:
        for c in self.retry_counters:
            if c.kind is kind:
                return c
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain.value,
            'available': self.available,
            'degraded_reason': self.degraded_reason,
            'slots': [s.to_dict() for s in self.slots],
            'retry_counters': [c.to_dict() for c in self.retry_counters],
        }


@dataclass(frozen=True)
class TokenState:
    """One physical token."""
    serial: str
    applets: Tuple[AppletState, ...] = ()

    def applet(self, domain: AppletDomain) -> Optional[AppletState]:
        for a in self.applets:
            if a.domain is domain:
                return a
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {'serial': self.serial, 'applets': [a.to_dict() for a in self.applets]}


@dataclass(frozen=True)
class StateSnapshot:
    """
    Immutable view of the offline store and the requested tokens.

    taken_at is excluded from state_dict() so two snapshots of an
    unchanged system compare equal.
    """
    master_id: str
    master: Optional[MasterCredential]
    derived: Tuple[DerivedCredential, ...]
    tokens: Tuple[TokenState, ...]
    recipients: Tuple[str, ...] = ()
    taken_at: datetime = field(default_factory=utcnow, compare=False)

    def token(self, serial: str) -> Optional[TokenState]:
        for t in self.tokens:
            if t.serial == serial:
                return t
        return None

    def slot(self, ref: SlotRef) -> Optional[CredentialSlot]:
        token = self.token(ref.serial)
        if token is None:
            return None
        applet = token.applet(ref.domain)
        if applet is None or not applet.available:
            return None
        return applet.slot(ref.slot)

    def credential(self, fingerprint: str) -> Optional[DerivedCredential]:
        for d in self.derived:
            if d.fingerprint == fingerprint:
                return d
        return None

    def active_derived(self, capability: Capability) -> Tuple[DerivedCredential, ...]:
        """Active credentials whose capability set is exactly `capability`."""
        now = self.taken_at
        return tuple(d for d in self.derived if d.has_exactly(capability) and d.is_active(now))

    def placements(self, fingerprint: str) -> Tuple[SlotRef, ...]:
        """Every observed slot currently bound to the credential."""
        refs = []
        for token in self.tokens:
            for applet in token.applets:
                for s in applet.slots:
                    if s.bound_id == fingerprint:
                        refs.append(SlotRef(token.serial, applet.domain, s.index))
        return tuple(refs)

    def state_dict(self) -> Dict[str, Any]:
        return {
            'master_id': self.master_id,
            'master': self.master.to_dict() if self.master else None,
            'derived': [d.to_dict() for d in self.derived],
            'tokens': [t.to_dict() for t in self.tokens],
            'recipients': list(self.recipients),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.state_dict()
        data['taken_at'] = self.taken_at.isoformat()
        return data


# =============================================================================
# DESIRED STATE AND ACTIONS
# =============================================================================

class SlotIntent(Enum):
    """What the caller wants for one desired entry."""
    PROVISION = "provision"   # the active credential lives in this slot
    CLONE = "clone"           # same material as another token
    ROTATE = "rotate"         # retire the active credential, issue a successor
    REDUNDANT = "redundant"   # distinct on-device identity, added to recipients


@dataclass(frozen=True)
class DesiredSlot:
    """One (capability, token) requirement."""
    capability: Capability
    token_serial: str
    domain: AppletDomain = AppletDomain.OPENPGP
    slot: Optional[str] = None
    intent: SlotIntent = SlotIntent.PROVISION
    presence_policy: PresencePolicy = PresencePolicy.CACHED
    secret_policy: SecretPolicy = SecretPolicy.ONCE
    label: Optional[str] = None

    @property
    def slot_index(self) -> str:
        if self.slot:
            return self.slot.lower()
        if self.domain is AppletDomain.OPENPGP:
            return {
                Capability.SIGN: "sig",
                Capability.ENCRYPT: "enc",
                Capability.AUTHENTICATE: "aut",
            }.get(self.capability, "")
        return "82"

    @property
    def ref(self) -> SlotRef:
        return SlotRef(self.token_serial, self.domain, self.slot_index)


@dataclass(frozen=True)
class DesiredState:
    """Declarative descriptor the planner diffs against a snapshot."""
    master_id: str
    entries: Tuple[DesiredSlot, ...]
    allow_destructive: bool = False
    retain_local_stub: bool = True
    # Per run only (provisionctl apply --override-critical); descriptors cannot set it
    override_critical: bool = False

    @property
    def token_serials(self) -> Tuple[str, ...]:
        seen = []
        for entry in self.entries:
            if entry.token_serial not in seen:
                seen.append(entry.token_serial)
        return tuple(seen)


class ActionKind(Enum):
    """Planner output kinds. BLOCKED is a result, not an executable action."""
    SKIP = "skip"
    CREATE = "create"
    RESET_AND_CREATE = "reset-and-create"
    ROTATE = "rotate"
    CLONE = "clone"
    PROVISION_REDUNDANT = "provision-redundant"
    SET_PRESENCE = "set-presence"   # right credential, touch policy differs
    BLOCKED = "blocked"


DESTRUCTIVE_KINDS = frozenset({ActionKind.RESET_AND_CREATE, ActionKind.PROVISION_REDUNDANT})


@dataclass(frozen=True)
class SecretRequirement:
    """A secret an action will ask for, by kind and applet."""
    kind: SecretKind
    domain: Optional[AppletDomain] = None
    serial: Optional[str] = None

    @property
    def label(self) -> str:
        name = secret_label(self.kind, self.domain)
        return f"{name} for token {self.serial}" if self.serial else name


@dataclass(frozen=True)
class ProvisioningAction:
    """One planned step. Never persisted."""
    kind: ActionKind
    capability: Capability
    target: Optional[SlotRef]
    credential_id: Optional[str] = None
    required_secrets: Tuple[SecretRequirement, ...] = ()
    rationale: str = ""
    presence_policy: Optional[PresencePolicy] = None
    secret_policy: Optional[SecretPolicy] = None
    label: Optional[str] = None

    @property
    def destructive(self) -> bool:
        return self.kind in DESTRUCTIVE_KINDS

    def describe(self) -> str:
        where = str(self.target) if self.target else "offline store"
        return f"{self.kind.value} {self.capability.name.lower()} @ {where}: {self.rationale}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'capability': self.capability.name.lower(),
            'target': str(self.target) if self.target else None,
            'credential_id': self.credential_id,
            'required_secrets': [r.label for r in self.required_secrets],
            'destructive': self.destructive,
            'rationale': self.rationale,
        }


def kinds(actions: Iterable[ProvisioningAction]) -> Tuple[ActionKind, ...]:
    return tuple(a.kind for a in actions)
