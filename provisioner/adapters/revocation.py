"""
Write-once storage for revocation certificates.

A certificate is created with O_EXCL and made read-only. Persisting the
identical bytes again is a no-op; persisting different bytes for the same
subject raises ArtifactImmutable and leaves the stored copy untouched.
"""

import hmac
import os
from pathlib import Path

from ..constants import READ_ONLY_FILE_MODE, SECURE_DIR_MODE
from ..errors import ArtifactImmutable, NoMasterMaterial
from ..logging_config import get_logger
from .interfaces import OfflineCredentialStore, RevocationArtifactStore

logger = get_logger(__name__)


class RevocationDirectory(RevocationArtifactStore):
    """One `<subject>.rev` file per subject in a private directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, subject_id: str) -> Path:
        safe = "".join(ch for ch in subject_id.upper() if ch.isalnum())
        if not safe:
            raise ValueError(f"Invalid subject id: {subject_id!r}")
        return self.directory / f"{safe}.rev"

    def exists(self, subject_id: str) -> bool:
        return self._path(subject_id).exists()

    def persist(self, subject_id: str, artifact: bytes) -> str:
        path = self._path(subject_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        os.chmod(self.directory, SECURE_DIR_MODE)

        try:
            fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, READ_ONLY_FILE_MODE)
        except FileExistsError:
            if hmac.compare_digest(path.read_bytes(), artifact):
                logger.debug(f"Revocation certificate for {subject_id} already archived")
                return str(path)
            raise ArtifactImmutable(
                f"A different revocation certificate for {subject_id} already exists at {path}"
            )

        with os.fdopen(fd, 'wb') as f:
            f.write(artifact)
            f.flush()
            os.fsync(f.fileno())
        logger.info(f"Archived revocation certificate for {subject_id} at {path}")
        return str(path)


def archive_revocation(store: OfflineCredentialStore, artifacts: RevocationArtifactStore,
                       master_id: str) -> str:
    """Copy the certificate gpg generated with the master into write-once storage."""
    master = store.master(master_id)
    if master is None:
        raise NoMasterMaterial(f"Master {master_id} is not in the offline store")
    certificate = store.revocation_certificate(master_id)
    if certificate is None:
        raise NoMasterMaterial(f"No revocation certificate found for {master.fingerprint}")
    return artifacts.persist(master.fingerprint, certificate)
