"""
Parsers for gpg, ykman and age-plugin-yubikey output.

This is the only module that interprets unstructured tool text. Every
function is pure: text in, typed values out. Adapters call these and
hand typed results to the engine, so format drift in a tool release is
contained here.

Formats handled:
- gpg --with-colons --fixed-list-mode --list-secret-keys
- gpg --card-status --with-colons
- ykman openpgp info
- ykman piv info
- age-plugin-yubikey --list / --generate
- ykman error text for wrong PIN/PUK/management key
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from ..models import (
    CapabilityProfile,
    DerivedCredential,
    LifecycleState,
    MasterCredential,
    PresencePolicy,
    SecretPolicy,
)

# OpenPGP card application identifier prefix (RID + PIX application)
OPENPGP_AID_PREFIX = "D276000124"

# gpg public-key algorithm numbers
GPG_ALGORITHMS = {
    '1': 'rsa',
    '16': 'elgamal',
    '17': 'dsa',
    '18': 'ecdh',
    '19': 'ecdsa',
    '22': 'eddsa',
}


# =============================================================================
# HELPERS
# =============================================================================

def parse_gpg_time(value: str) -> Optional[datetime]:
    """Colon time fields are epoch seconds, or ISO 8601 basic with --fixed-list-mode off."""
    value = value.strip()
    if not value:
        return None
    if value.isdigit():
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    try:
        return datetime.strptime(value, '%Y%m%dT%H%M%S').replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def card_serial_from_aid(value: str) -> Optional[str]:
    """
    YubiKey serial from an OpenPGP AID or a plain card serial.

    The AID embeds the serial as 8 BCD digits after the manufacturer id;
    YubiKeys use their decimal serial there.
    """
    value = value.strip()
    if not value or value in ('+', '#'):
        return None
    if value.upper().startswith(OPENPGP_AID_PREFIX) and len(value) >= 28:
        digits = value[20:28]
    else:
        digits = value
    if digits.isdigit():
        return str(int(digits))
    return digits.upper()


def _field(fields: List[str], index: int) -> str:
    return fields[index] if index < len(fields) else ""


def _algorithm(fields: List[str]) -> str:
    algo = GPG_ALGORITHMS.get(_field(fields, 3), f"algo{_field(fields, 3)}")
    curve = _field(fields, 16)
    if curve:
        return curve.lower()
    if algo == 'rsa':
        return f"rsa{_field(fields, 2)}"
    return algo


# =============================================================================
# GPG KEY LISTINGS
# =============================================================================

@dataclass
class _KeyRecord:
    record_type: str
    fields: List[str]
    fingerprint: str = ""
    user_ids: List[str] = field(default_factory=list)


def _group_records(text: str) -> List[_KeyRecord]:
    records: List[_KeyRecord] = []
    for line in text.splitlines():
        fields = line.split(':')
        rtype = fields[0]
        if rtype in ('sec', 'ssb', 'pub', 'sub'):
            records.append(_KeyRecord(rtype, fields))
        elif rtype == 'fpr' and records and not records[-1].fingerprint:
            records[-1].fingerprint = _field(fields, 9).upper()
        elif rtype == 'uid' and records:
            records[-1].user_ids.append(_field(fields, 9))
    return records


def parse_secret_key_listing(
    text: str,
    master_id: str,
    now: Optional[datetime] = None,
) -> Tuple[Optional[MasterCredential], List[DerivedCredential]]:
    """
    Parse `gpg --with-colons --fixed-list-mode --list-secret-keys`.

    Field 15 of sec/ssb records tells where the secret lives: '+' means
    local material, '#' means no secret here, anything else is the card
    serial the stub points to.

    Returns the master matching `master_id` (key id or fingerprint suffix)
    and its subkeys in keyblock order.
    """
    now = now or datetime.now(timezone.utc)
    wanted = master_id.upper().replace(' ', '')
    if wanted.startswith('0X'):
        wanted = wanted[2:]

    master: Optional[MasterCredential] = None
    derived: List[DerivedCredential] = []
    in_block = False
    position = 0

    for rec in _group_records(text):
        if rec.record_type in ('sec', 'pub'):
            key_id = _field(rec.fields, 4).upper()
            in_block = bool(wanted) and (rec.fingerprint.endswith(wanted) or key_id.endswith(wanted))
            if not in_block:
                continue
            position = 0
            master = MasterCredential(
                fingerprint=rec.fingerprint or key_id,
                key_id=key_id,
                capabilities=CapabilityProfile.from_letters(_field(rec.fields, 11)),
                created_at=parse_gpg_time(_field(rec.fields, 5)) or now,
                expires_at=parse_gpg_time(_field(rec.fields, 6)),
                has_secret_material=_field(rec.fields, 14) == '+',
                user_ids=tuple(rec.user_ids),
            )
        elif rec.record_type in ('ssb', 'sub') and in_block:
            position += 1
            derived.append(_derived_from_record(rec, master.fingerprint, position, now))

    return master, derived


def primary_fingerprints(text: str) -> List[str]:
    """Fingerprints of every primary key in a listing, in order."""
    return [rec.fingerprint for rec in _group_records(text) if rec.record_type in ('sec', 'pub')]


def _derived_from_record(rec: _KeyRecord, master_fpr: str, position: int,
                         now: datetime) -> DerivedCredential:
    validity = _field(rec.fields, 1)
    token = _field(rec.fields, 14).strip()
    expires_at = parse_gpg_time(_field(rec.fields, 6))
    has_local = token == '+'
    card_serial = None if token in ('', '+', '#') else card_serial_from_aid(token)

    if validity == 'r':
        state = LifecycleState.REVOKED
    elif validity == 'e' or (expires_at is not None and expires_at <= now):
        state = LifecycleState.EXPIRED
    elif has_local:
        state = LifecycleState.LOCAL_ONLY
    else:
        state = LifecycleState.TRANSFERRED

    key_id = _field(rec.fields, 4).upper()
    return DerivedCredential(
        fingerprint=rec.fingerprint or key_id,
        key_id=key_id,
        master_id=master_fpr,
        capabilities=CapabilityProfile.from_letters(_field(rec.fields, 11)),
        algorithm=_algorithm(rec.fields),
        key_length=int(_field(rec.fields, 2) or 0),
        created_at=parse_gpg_time(_field(rec.fields, 5)) or now,
        expires_at=expires_at,
        state=state,
        has_local_material=has_local,
        card_serial=card_serial,
        position=position,
    )


# =============================================================================
# OPENPGP CARD
# =============================================================================

@dataclass
class CardStatus:
    """Subset of `gpg --card-status --with-colons`."""
    serial: Optional[str] = None
    fingerprints: Dict[str, Optional[str]] = field(default_factory=dict)
    pin_retries: Tuple[int, int, int] = (0, 0, 0)  # user PIN, reset code, admin PIN


def parse_card_status(text: str) -> CardStatus:
    status = CardStatus(fingerprints={'sig': None, 'enc': None, 'aut': None})
    for line in text.splitlines():
        fields = line.split(':')
        tag = fields[0]
        if tag == 'serial':
            status.serial = card_serial_from_aid(_field(fields, 1))
        elif tag == 'Reader' and status.serial is None:
            # Reader:<name>:AID:<aid>:openpgp-card
            for value in fields[1:]:
                if value.upper().startswith(OPENPGP_AID_PREFIX):
                    status.serial = card_serial_from_aid(value)
                    break
        elif tag == 'fpr':
            for slot, value in zip(('sig', 'enc', 'aut'), fields[1:4]):
                status.fingerprints[slot] = value.upper() or None
        elif tag == 'pinretry':
            counts = [int(v) if v.isdigit() else 0 for v in fields[1:4]]
            counts += [0] * (3 - len(counts))
            status.pin_retries = (counts[0], counts[1], counts[2])
    return status


@dataclass
class OpenPgpInfo:
    """Subset of `ykman openpgp info`."""
    pin_tries: Optional[int] = None
    reset_code_tries: Optional[int] = None
    admin_pin_tries: Optional[int] = None
    touch_policies: Dict[str, PresencePolicy] = field(default_factory=dict)


_TOUCH_KEYS = {'signature': 'sig', 'encryption': 'enc', 'authentication': 'aut'}


def parse_openpgp_info(text: str) -> OpenPgpInfo:
    info = OpenPgpInfo()
    in_touch = False
    for raw in text.splitlines():
        line = raw.strip()
        lower = line.lower()
        if lower.startswith('touch policies'):
            in_touch = True
            continue
        if in_touch:
            m = re.match(r'^(signature|encryption|authentication|attestation) key:?\s+(\S+)',
                         line, re.IGNORECASE)
            if m:
                slot = _TOUCH_KEYS.get(m.group(1).lower())
                if slot:
                    try:
                        info.touch_policies[slot] = PresencePolicy.parse(m.group(2))
                    except ValueError:
                        pass
                continue
            if raw and not raw[0].isspace():
                in_touch = False

        m = re.match(r'^(pin|reset code|admin pin) tries remaining:\s*(\d+)', lower)
        if m:
            value = int(m.group(2))
            if m.group(1) == 'pin':
                info.pin_tries = value
            elif m.group(1) == 'reset code':
                info.reset_code_tries = value
            else:
                info.admin_pin_tries = value
    return info


# =============================================================================
# PIV
# =============================================================================

@dataclass
class PivSlotInfo:
    slot: str
    algorithm: Optional[str] = None
    subject: Optional[str] = None
    fingerprint: Optional[str] = None


@dataclass
class PivInfo:
    """Subset of `ykman piv info`."""
    pin_tries: Optional[Tuple[int, Optional[int]]] = None
    puk_tries: Optional[Tuple[int, Optional[int]]] = None
    slots: Dict[str, PivSlotInfo] = field(default_factory=dict)


_SLOT_HEADER = re.compile(r'^Slot\s+([0-9a-fA-F]{2})\b.*:\s*$')
_TRIES = re.compile(r'^(PIN|PUK) tries remaining:\s*(\d+)(?:\s*/\s*(\d+))?', re.IGNORECASE)


def parse_piv_info(text: str) -> PivInfo:
    info = PivInfo()
    current: Optional[PivSlotInfo] = None
    for raw in text.splitlines():
        if not raw.strip():
            continue
        header = _SLOT_HEADER.match(raw)
        if header:
            current = PivSlotInfo(slot=header.group(1).lower())
            info.slots[current.slot] = current
            continue
        if raw[0].isspace() and current is not None:
            key, _, value = raw.strip().partition(':')
            key = key.strip().lower()
            value = value.strip()
            if key in ('algorithm', 'private key type', 'public key type') and not current.algorithm:
                current.algorithm = value
            elif key == 'subject dn':
                current.subject = value
            elif key.startswith('fingerprint'):
                current.fingerprint = value.lower()
            continue
        current = None
        tries = _TRIES.match(raw.strip())
        if tries:
            maximum = int(tries.group(3)) if tries.group(3) else None
            pair = (int(tries.group(2)), maximum)
            if tries.group(1).upper() == 'PIN':
                info.pin_tries = pair
            else:
                info.puk_tries = pair
    return info


# =============================================================================
# AGE-PLUGIN-YUBIKEY
# =============================================================================

@dataclass
class AgeIdentityInfo:
    serial: str
    slot_number: int
    recipient: str
    name: Optional[str] = None
    secret_policy: Optional[SecretPolicy] = None
    presence_policy: Optional[PresencePolicy] = None


def parse_age_list(text: str) -> List[AgeIdentityInfo]:
    """Parse `age-plugin-yubikey --list` (one comment block + recipient per identity)."""
    identities: List[AgeIdentityInfo] = []
    pending: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith('#'):
            body = line.lstrip('#').strip()
            m = re.match(r'^Serial:\s*(\d+),\s*Slot:\s*(\d+)', body)
            if m:
                pending = {'serial': m.group(1), 'slot': m.group(2)}
                continue
            key, _, value = body.partition(':')
            if key.strip().lower() in ('name', 'pin policy', 'touch policy'):
                pending[key.strip().lower()] = value.strip()
        elif line.startswith('age1') and 'serial' in pending:
            identities.append(AgeIdentityInfo(
                serial=str(int(pending['serial'])),
                slot_number=int(pending['slot']),
                recipient=line.split()[0],
                name=pending.get('name'),
                secret_policy=_first_word_policy(pending.get('pin policy'), SecretPolicy),
                presence_policy=_first_word_policy(pending.get('touch policy'), PresencePolicy),
            ))
            pending = {}
    return identities


def _first_word_policy(value: Optional[str], enum_cls):
    if not value:
        return None
    try:
        return enum_cls.parse(value.split()[0])
    except ValueError:
        return None


def parse_generated_identity(text: str) -> Tuple[Optional[str], str]:
    """
    Public key and identity text from `age-plugin-yubikey --generate`.

    The identity text is a pointer to the slot (not secret material) and
    is returned without the public key comment.
    """
    public_key = None
    identity_lines = []
    for raw in text.splitlines():
        line = raw.strip()
        m = re.match(r'^#\s*(?:public key|recipient):\s*(age1\S+)', line, re.IGNORECASE)
        if m:
            public_key = m.group(1)
            continue
        if line.startswith('age1yubikey1') and public_key is None:
            public_key = line
            continue
        identity_lines.append(raw)
    return public_key, "\n".join(identity_lines).strip() + "\n"


# =============================================================================
# YKMAN ERRORS
# =============================================================================

_WRONG_SECRET = re.compile(
    r'(wrong|invalid|incorrect)\s+(pin|puk|admin pin|reset code|management key)'
    r'|(pin|puk) verification failed'
    r'|authentication with management key failed',
    re.IGNORECASE,
)
_TRIES_LEFT = re.compile(r'(\d+)\s+(?:tries|attempts)\s+(?:left|remaining)', re.IGNORECASE)
_APPLET_DISABLED = re.compile(
    r'(application|applet).{0,40}(disabled|not enabled|not supported)'
    r'|not (enabled|supported)',
    re.IGNORECASE,
)


def detect_wrong_secret(text: str) -> Tuple[bool, Optional[int]]:
    """(matched, tries_left) for ykman verification failures."""
    if not _WRONG_SECRET.search(text):
        return False, None
    tries = _TRIES_LEFT.search(text)
    return True, int(tries.group(1)) if tries else None


def detect_applet_disabled(text: str) -> bool:
    return bool(_APPLET_DISABLED.search(text))


def detect_device_missing(text: str) -> bool:
    """ykman --device SERIAL with no such token attached."""
    lower = text.lower()
    return 'failed connecting to' in lower or 'no yubikey' in lower or 'device not found' in lower
