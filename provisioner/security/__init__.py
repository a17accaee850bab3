"""
Secret handling for the YubiKey Provisioner.

Provides:
- Zeroable secret buffers
- Scoped secret acquisition with length policy
- Pipe helpers for handing secrets to gpg/ykman
"""

from .secure_memory import SecretBuffer, secure_zero_memory, secure_compare
from .secret_scope import (
    SecretSource,
    TerminalSecretSource,
    SecretScopeManager,
    SecretPipe,
    default_min_lengths,
    feed_secrets,
)

__all__ = [
    'SecretBuffer',
    'secure_zero_memory',
    'secure_compare',
    'SecretSource',
    'TerminalSecretSource',
    'SecretScopeManager',
    'SecretPipe',
    'default_min_lengths',
    'feed_secrets',
]
