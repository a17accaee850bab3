"""
CLI Module for the YubiKey Provisioner

Provides command-line tools:
- provisionctl: inspect, plan, apply, rotate and secure tokens

Usage:
    python -m provisioner.cli.provisionctl inspect
    python -m provisioner.cli.provisionctl apply desired.yaml
"""

from .provisionctl import ProvisionCLI, main as provisionctl_main

__all__ = [
    'ProvisionCLI',
    'provisionctl_main',
]
