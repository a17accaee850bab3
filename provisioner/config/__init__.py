"""
Configuration for the YubiKey Provisioner.

Provides:
- ProvisionerSettings: layered defaults, YAML and environment
- Desired-state descriptor loading
"""

from .settings import (
    AgeSettings,
    MinLengths,
    ProvisionerSettings,
    SUPPORTED_KEY_TYPES,
    load_settings,
    load_yaml,
)
from .descriptor import desired_state_from_dict, load_descriptor

__all__ = [
    'AgeSettings',
    'MinLengths',
    'ProvisionerSettings',
    'SUPPORTED_KEY_TYPES',
    'load_settings',
    'load_yaml',
    'desired_state_from_dict',
    'load_descriptor',
]
