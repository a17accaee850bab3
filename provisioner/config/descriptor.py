"""
Desired-state descriptor loading.

A descriptor names the master credential and, per token, the
capabilities that should live there:

    master_key_id: "0xABCDEF0123456789"
    allow_destructive: false
    retain_local_stub: true
    tokens:
      "12345678":
        - capability: sign
        - capability: encrypt
          touch_policy: always
        - capability: authenticate
      "87654321":
        - capability: encrypt
          intent: clone
        - capability: encrypt
          intent: redundant
          domain: piv
          slot: "82"
          pin_policy: once
          label: backup-key

Defaults for touch and PIN policy come from ProvisionerSettings so a
bare `- capability: sign` entry picks up GPG_TOUCH_POLICY_SIG.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..constants import OPENPGP_SLOTS, PIV_SLOTS
from ..errors import ConfigError
from ..logging_config import get_logger
from ..models import (
    AppletDomain,
    Capability,
    DesiredSlot,
    DesiredState,
    PresencePolicy,
    SecretPolicy,
    SlotIntent,
)
from .settings import ProvisionerSettings, normalize_key_id, load_yaml

logger = get_logger(__name__)

ENTRY_KEYS = frozenset({
    'capability', 'intent', 'domain', 'slot', 'touch_policy', 'pin_policy', 'label',
})

_OPENPGP_SLOT_FOR = {
    Capability.SIGN: 'sig',
    Capability.ENCRYPT: 'enc',
    Capability.AUTHENTICATE: 'aut',
}


def _entry(serial: str, raw: Dict[str, Any], settings: ProvisionerSettings,
           position: str) -> DesiredSlot:
    if not isinstance(raw, dict):
        raise ConfigError(f"{position}: entry must be a mapping")
    unknown = set(raw) - ENTRY_KEYS
    if unknown:
        raise ConfigError(f"{position}: unknown key(s) {', '.join(sorted(unknown))}")
    if 'capability' not in raw:
        raise ConfigError(f"{position}: capability is required")

    try:
        capability = Capability.from_name(str(raw['capability']))
        intent = SlotIntent(str(raw.get('intent', 'provision')).lower())
        default_domain = 'piv' if intent is SlotIntent.REDUNDANT else 'openpgp'
        domain = AppletDomain(str(raw.get('domain', default_domain)).lower())
    except ValueError as e:
        raise ConfigError(f"{position}: {e}") from None

    if domain is AppletDomain.PIV:
        slot = str(raw.get('slot', settings.age.piv_slot)).lower()
        known = PIV_SLOTS
        default_touch = settings.age.touch_policy
        default_pin = settings.age.pin_policy
    else:
        slot = str(raw['slot']).lower() if 'slot' in raw else _OPENPGP_SLOT_FOR.get(capability)
        known = OPENPGP_SLOTS
        default_touch = settings.touch_policy.get(slot or '', PresencePolicy.CACHED)
        default_pin = SecretPolicy.ONCE
    if slot is not None and slot not in known:
        raise ConfigError(f"{position}: {slot!r} is not a {domain.value} slot")

    try:
        touch = (PresencePolicy.parse(str(raw['touch_policy']))
                 if 'touch_policy' in raw else default_touch)
        pin = SecretPolicy.parse(str(raw['pin_policy'])) if 'pin_policy' in raw else default_pin
    except ValueError as e:
        raise ConfigError(f"{position}: {e}") from None

    return DesiredSlot(
        capability=capability,
        token_serial=serial,
        domain=domain,
        slot=slot,
        intent=intent,
        presence_policy=touch,
        secret_policy=pin,
        label=raw.get('label'),
    )


def desired_state_from_dict(data: Dict[str, Any], settings: ProvisionerSettings,
                            master_id: Optional[str] = None) -> DesiredState:
    """Build a DesiredState; ConfigError on anything malformed."""
    tokens = data.get('tokens')
    if not isinstance(tokens, dict) or not tokens:
        raise ConfigError("Descriptor needs a non-empty 'tokens' mapping")

    entries: List[DesiredSlot] = []
    for serial, items in tokens.items():
        serial = str(serial)
        if not serial.isdigit():
            raise ConfigError(f"Token serial must be numeric, got {serial!r}")
        if not isinstance(items, list) or not items:
            raise ConfigError(f"Token {serial}: expected a list of entries")
        for i, raw in enumerate(items, 1):
            entries.append(_entry(serial, raw, settings, f"token {serial} entry {i}"))

    master = settings.resolve_master_id(master_id or normalize_key_id(data.get('master_key_id')))
    return DesiredState(
        master_id=str(master),
        entries=tuple(entries),
        allow_destructive=bool(data.get('allow_destructive', False)),
        retain_local_stub=bool(data.get('retain_local_stub', True)),
    )


def load_descriptor(path: Union[str, Path], settings: ProvisionerSettings,
                    master_id: Optional[str] = None,
                    allow_destructive: Optional[bool] = None) -> DesiredState:
    """Load a descriptor file. A CLI flag for allow_destructive wins over the file."""
    data = load_yaml(path)
    if allow_destructive is not None:
        data = dict(data, allow_destructive=allow_destructive)
    desired = desired_state_from_dict(data, settings, master_id)
    logger.info(f"Loaded descriptor {path}: {len(desired.entries)} entries, "
                f"{len(desired.token_serials)} token(s)")
    return desired
