"""
YubiKey Provisioner - Core Components

Converges an offline OpenPGP keyring and a set of YubiKeys onto a
declared desired state, idempotently.
"""

# Installs the logger class before any module asks for a logger
from .logging_config import get_logger, setup_logging, configure_from_environment

from .constants import FactoryDefaults, SecretLengths, Timeouts, Paths
from .errors import ProvisioningError, ConfigError
from .models import (
    Capability,
    CapabilityProfile,
    AppletDomain,
    SlotIntent,
    DesiredSlot,
    DesiredState,
    StateSnapshot,
    ProvisioningAction,
    ActionKind,
)
from .engine import ProvisioningEngine, RunReport, ActionOutcome
from .config import ProvisionerSettings, load_settings, load_descriptor

__version__ = '0.1.0'

__all__ = [
    'get_logger',
    'setup_logging',
    'configure_from_environment',
    'FactoryDefaults',
    'SecretLengths',
    'Timeouts',
    'Paths',
    'ProvisioningError',
    'ConfigError',
    'Capability',
    'CapabilityProfile',
    'AppletDomain',
    'SlotIntent',
    'DesiredSlot',
    'DesiredState',
    'StateSnapshot',
    'ProvisioningAction',
    'ActionKind',
    'ProvisioningEngine',
    'RunReport',
    'ActionOutcome',
    'ProvisionerSettings',
    'load_settings',
    'load_descriptor',
]
