"""
Provisioner settings.

Settings are layered, later layers winning:

    1. Built-in defaults
    2. YAML file (path argument, or PROVISIONER_CONFIG)
    3. Environment variables

Configuration Structure:
    gnupghome: /mnt/offline/gnupg
    master_key_id: "0xABCDEF0123456789"
    key_type: ed25519
    expiration: 2y
    min_lengths:
      passphrase: 12
      openpgp_user_pin: 6
      openpgp_admin_pin: 8
      piv_pin: 6
      piv_puk: 8
    touch_policy:
      sig: cached
      enc: cached
      aut: cached
    age:
      piv_slot: "82"
      pin_policy: once
      touch_policy: cached
      recipients_file: age-recipients.txt
      identity_dir: age-identities
    revocation_dir: revocation
    expiry_threshold_days: 30
    allow_weak_secrets: false

Usage:
    from provisioner.config import load_settings

    settings = load_settings()
    scope = settings.secret_scope(confirm_weak=ask_yes_no)
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import yaml

from ..constants import PIV_RETIRED_SLOTS, Paths, SecretLengths
from ..errors import ConfigError
from ..logging_config import get_logger
from ..models import AppletDomain, PresencePolicy, SecretKind, SecretPolicy
from ..security.secret_scope import LengthKey, SecretScopeManager, SecretSource

logger = get_logger(__name__)

CONFIG_ENV = 'PROVISIONER_CONFIG'

SUPPORTED_KEY_TYPES = ('ed25519', 'rsa2048', 'rsa3072', 'rsa4096')


@dataclass
class MinLengths:
    """Minimum secret lengths."""
    passphrase: int = SecretLengths.ROOT_PASSPHRASE
    openpgp_user_pin: int = SecretLengths.OPENPGP_USER_PIN
    openpgp_admin_pin: int = SecretLengths.OPENPGP_ADMIN_PIN
    openpgp_reset_code: int = SecretLengths.OPENPGP_RESET_CODE
    piv_pin: int = SecretLengths.PIV_PIN
    piv_puk: int = SecretLengths.PIV_PUK
    piv_management_key: int = SecretLengths.PIV_MANAGEMENT_KEY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MinLengths':
        defaults = cls()
        return cls(**{k: int(data.get(k, getattr(defaults, k))) for k in asdict(defaults)})

    def as_policy(self) -> Dict[LengthKey, int]:
        return {
            (SecretKind.ROOT_PASSPHRASE, None): self.passphrase,
            (SecretKind.UNLOCK_PIN, AppletDomain.OPENPGP): self.openpgp_user_pin,
            (SecretKind.MANAGEMENT_SECRET, AppletDomain.OPENPGP): self.openpgp_admin_pin,
            (SecretKind.RECOVERY_CODE, AppletDomain.OPENPGP): self.openpgp_reset_code,
            (SecretKind.UNLOCK_PIN, AppletDomain.PIV): self.piv_pin,
            (SecretKind.RECOVERY_CODE, AppletDomain.PIV): self.piv_puk,
            (SecretKind.MANAGEMENT_SECRET, AppletDomain.PIV): self.piv_management_key,
        }


@dataclass
class AgeSettings:
    """Defaults for redundant age identities."""
    piv_slot: str = "82"
    pin_policy: SecretPolicy = SecretPolicy.ONCE
    touch_policy: PresencePolicy = PresencePolicy.CACHED
    recipients_file: str = Paths.RECIPIENTS_FILE
    identity_dir: str = Paths.IDENTITY_DIR

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgeSettings':
        defaults = cls()
        return cls(
            piv_slot=str(data.get('piv_slot', defaults.piv_slot)).lower(),
            pin_policy=SecretPolicy.parse(str(data.get('pin_policy', defaults.pin_policy.value))),
            touch_policy=PresencePolicy.parse(
                str(data.get('touch_policy', defaults.touch_policy.value))),
            recipients_file=data.get('recipients_file', defaults.recipients_file),
            identity_dir=data.get('identity_dir', defaults.identity_dir),
        )


@dataclass
class ProvisionerSettings:
    """All settings for one provisioner invocation."""
    gnupghome: str = field(default_factory=lambda: os.path.expanduser('~/.gnupg'))
    master_key_id: Optional[str] = None
    key_type: str = "rsa4096"
    expiration: str = "2y"
    min_lengths: MinLengths = field(default_factory=MinLengths)
    touch_policy: Dict[str, PresencePolicy] = field(default_factory=lambda: {
        'sig': PresencePolicy.CACHED,
        'enc': PresencePolicy.CACHED,
        'aut': PresencePolicy.CACHED,
    })
    age: AgeSettings = field(default_factory=AgeSettings)
    revocation_dir: str = Paths.REVOCATION_DIR
    expiry_threshold_days: int = 30
    allow_weak_secrets: bool = False
    touch_reminder_seconds: float = 15.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProvisionerSettings':
        """Create from a parsed YAML mapping."""
        defaults = cls()
        touch = dict(defaults.touch_policy)
        for slot, value in (data.get('touch_policy') or {}).items():
            touch[str(slot).lower()] = PresencePolicy.parse(str(value))
        return cls(
            gnupghome=os.path.expanduser(str(data.get('gnupghome', defaults.gnupghome))),
            master_key_id=normalize_key_id(data.get('master_key_id', defaults.master_key_id)),
            key_type=str(data.get('key_type', defaults.key_type)).lower(),
            expiration=str(data.get('expiration', defaults.expiration)),
            min_lengths=MinLengths.from_dict(data.get('min_lengths') or {}),
            touch_policy=touch,
            age=AgeSettings.from_dict(data.get('age') or {}),
            revocation_dir=data.get('revocation_dir', defaults.revocation_dir),
            expiry_threshold_days=int(data.get('expiry_threshold_days',
                                               defaults.expiry_threshold_days)),
            allow_weak_secrets=bool(data.get('allow_weak_secrets', defaults.allow_weak_secrets)),
            touch_reminder_seconds=float(data.get('touch_reminder_seconds',
                                                  defaults.touch_reminder_seconds)),
        )

    def apply_environment(self, env: Optional[Dict[str, str]] = None) -> None:
        """Override fields from the environment variables the shell tooling used."""
        env = os.environ if env is None else env

        if env.get('GNUPGHOME'):
            self.gnupghome = env['GNUPGHOME']
        if env.get('GPG_KEY_TYPE'):
            self.key_type = env['GPG_KEY_TYPE'].lower()
        if env.get('GPG_EXPIRATION'):
            self.expiration = env['GPG_EXPIRATION']

        lengths = {
            'GPG_MIN_PASSPHRASE_LENGTH': 'passphrase',
            'OPENPGP_MIN_USER_PIN_LENGTH': 'openpgp_user_pin',
            'OPENPGP_MIN_ADMIN_PIN_LENGTH': 'openpgp_admin_pin',
            'PIV_MIN_PIN_LENGTH': 'piv_pin',
            'PIV_MIN_PUK_LENGTH': 'piv_puk',
        }
        for var, attr in lengths.items():
            if env.get(var):
                setattr(self.min_lengths, attr, _int(var, env[var]))

        for slot in ('sig', 'enc', 'aut'):
            var = f"GPG_TOUCH_POLICY_{slot.upper()}"
            if env.get(var):
                self.touch_policy[slot] = _parse(var, env[var], PresencePolicy.parse)

        if env.get('ADDITIONAL_AGE_PIV_SLOT'):
            self.age.piv_slot = env['ADDITIONAL_AGE_PIV_SLOT'].lower()
        if env.get('ADDITIONAL_AGE_PIN_POLICY'):
            self.age.pin_policy = _parse('ADDITIONAL_AGE_PIN_POLICY',
                                         env['ADDITIONAL_AGE_PIN_POLICY'], SecretPolicy.parse)
        if env.get('ADDITIONAL_AGE_TOUCH_POLICY'):
            self.age.touch_policy = _parse('ADDITIONAL_AGE_TOUCH_POLICY',
                                           env['ADDITIONAL_AGE_TOUCH_POLICY'], PresencePolicy.parse)
        if env.get('AGE_RECIPIENTS_FILE'):
            self.age.recipients_file = env['AGE_RECIPIENTS_FILE']
        if env.get('GPG_EXPIRY_CHECK_THRESHOLD_DAYS'):
            self.expiry_threshold_days = _int('GPG_EXPIRY_CHECK_THRESHOLD_DAYS',
                                              env['GPG_EXPIRY_CHECK_THRESHOLD_DAYS'])
        if env.get('PROVISIONER_ALLOW_WEAK_SECRETS'):
            self.allow_weak_secrets = env['PROVISIONER_ALLOW_WEAK_SECRETS'].lower() in ('1', 'true', 'yes')

    def validate(self) -> None:
        """Raise ConfigError on values the engine cannot use."""
        if self.key_type not in SUPPORTED_KEY_TYPES:
            raise ConfigError(f"key_type must be one of {', '.join(SUPPORTED_KEY_TYPES)}, "
                              f"got {self.key_type!r}")
        if self.age.piv_slot not in PIV_RETIRED_SLOTS:
            raise ConfigError(f"age identities use retired PIV slots 82-95, got {self.age.piv_slot!r}")
        for attr, value in asdict(self.min_lengths).items():
            if value < 1:
                raise ConfigError(f"min_lengths.{attr} must be positive")
        if self.expiry_threshold_days < 0:
            raise ConfigError("expiry_threshold_days must not be negative")
        if self.touch_reminder_seconds <= 0:
            raise ConfigError("touch_reminder_seconds must be positive")

    def resolve_master_id(self, explicit: Optional[str] = None) -> str:
        """Master id from the argument, settings, or the id file in the working directory."""
        if explicit:
            return explicit
        if self.master_key_id:
            return str(self.master_key_id)
        id_file = Path(Paths.MASTER_KEY_ID_FILE)
        if id_file.exists():
            value = id_file.read_text().strip()
            if value:
                return value
        raise ConfigError(f"No master key id: pass --master, set master_key_id, "
                          f"or create {Paths.MASTER_KEY_ID_FILE}")

    def secret_scope(self, source: Optional[SecretSource] = None,
                     confirm_weak: Optional[Callable[[str], bool]] = None) -> SecretScopeManager:
        return SecretScopeManager(
            source=source,
            min_lengths=self.min_lengths.as_policy(),
            allow_weak=self.allow_weak_secrets,
            confirm_weak=confirm_weak,
        )


def normalize_key_id(value: Any) -> Optional[str]:
    """YAML reads an unquoted 0xABCD... as an integer; the hex spelling is lost."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        raise ConfigError(f"master_key_id must be quoted in YAML, got the integer {value}")
    return str(value)


def _int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def _parse(name: str, value: str, parser):
    try:
        return parser(value)
    except ValueError as e:
        raise ConfigError(f"{name}: {e}") from None


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML mapping; an empty file is an empty mapping."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def load_settings(path: Optional[Union[str, Path]] = None,
                  env: Optional[Dict[str, str]] = None) -> ProvisionerSettings:
    """Defaults, then YAML, then environment. Validated."""
    env = os.environ if env is None else env
    path = path or env.get(CONFIG_ENV)

    if path:
        data = load_yaml(path)
        try:
            settings = ProvisionerSettings.from_dict(data)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid settings in {path}: {e}") from e
        logger.info(f"Loaded settings from {path}")
    else:
        settings = ProvisionerSettings()

    settings.apply_environment(env)
    settings.validate()
    return settings
