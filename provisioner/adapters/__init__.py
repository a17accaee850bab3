"""
Adapters between the engine and the outside world.

Provides:
- Collaborator interfaces (offline store, token backend, recipients, revocation)
- gpg, YubiKey and file implementations
- Tool output parsers
"""

from .interfaces import (
    OfflineCredentialStore,
    TokenBackend,
    RecipientSet,
    RevocationArtifactStore,
    PrivateMaterialHandle,
    GeneratedIdentity,
)
from .process import ToolRunner, ToolResult
from .gpg_store import GpgOfflineStore
from .yubikey import YubiKeyBackend, list_serials_with_ykman
from .recipients import RecipientFile
from .revocation import RevocationDirectory, archive_revocation

__all__ = [
    'OfflineCredentialStore',
    'TokenBackend',
    'RecipientSet',
    'RevocationArtifactStore',
    'PrivateMaterialHandle',
    'GeneratedIdentity',
    'ToolRunner',
    'ToolResult',
    'GpgOfflineStore',
    'YubiKeyBackend',
    'list_serials_with_ykman',
    'RecipientFile',
    'RevocationDirectory',
    'archive_revocation',
]
