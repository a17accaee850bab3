"""
Secret Scope Manager - acquire, use and erase ephemeral secrets.

Provides:
- SecretSource: where secrets come from (terminal, or a scripted source in tests)
- SecretScopeManager: scoped access with length policy and guaranteed wipe
- SecretPipe: hand a secret to a child process through an anonymous pipe
- feed_secrets(): write secrets to a child's stdin pipe

Every secret lives in a SecretBuffer for exactly one scope. The buffer is
zeroed when the scope exits, whether the body returned, raised, or was
interrupted with Ctrl-C. Secrets are never logged, never written to
files and never placed on a command line.
"""

import getpass
import os
from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from typing import Callable, Dict, Iterator, Optional, Sequence, Tuple, TypeVar

from ..constants import SecretLengths
from ..errors import SecretMismatch, WeakSecretRejected
from ..logging_config import get_logger
from ..models import AppletDomain, SecretKind, SecretRequirement, secret_label
from .secure_memory import SecretBuffer

logger = get_logger(__name__)

T = TypeVar('T')

LengthKey = Tuple[SecretKind, Optional[AppletDomain]]


def default_min_lengths() -> Dict[LengthKey, int]:
    """Minimum lengths keyed by (kind, applet domain)."""
    return {
        (SecretKind.ROOT_PASSPHRASE, None): SecretLengths.ROOT_PASSPHRASE,
        (SecretKind.UNLOCK_PIN, AppletDomain.OPENPGP): SecretLengths.OPENPGP_USER_PIN,
        (SecretKind.MANAGEMENT_SECRET, AppletDomain.OPENPGP): SecretLengths.OPENPGP_ADMIN_PIN,
        (SecretKind.RECOVERY_CODE, AppletDomain.OPENPGP): SecretLengths.OPENPGP_RESET_CODE,
        (SecretKind.UNLOCK_PIN, AppletDomain.PIV): SecretLengths.PIV_PIN,
        (SecretKind.RECOVERY_CODE, AppletDomain.PIV): SecretLengths.PIV_PUK,
        (SecretKind.MANAGEMENT_SECRET, AppletDomain.PIV): SecretLengths.PIV_MANAGEMENT_KEY,
    }


# =============================================================================
# SECRET SOURCES
# =============================================================================

class SecretSource(ABC):
    """Supplies raw secret bytes for a prompt."""

    @abstractmethod
    def read(self, prompt: str) -> bytearray:
        """Return the entered secret. The caller owns and wipes the buffer."""
        pass


class TerminalSecretSource(SecretSource):
    """Reads from the controlling terminal without echo."""

    def read(self, prompt: str) -> bytearray:
        value = getpass.getpass(f"{prompt}: ")
        buf = bytearray(value.encode('utf-8'))
        # str is immutable; drop the only reference as soon as possible
        del value
        return buf


# =============================================================================
# SCOPE MANAGER
# =============================================================================

class SecretScopeManager:
    """
    Scoped access to ephemeral secrets.

    New secrets (values about to be written to a token or store) are
    checked against the minimum-length policy. A shorter value is only
    accepted when weak secrets are allowed in configuration AND the
    confirm_weak callback approves that specific value. There is no
    silent downgrade.
    """

    def __init__(
        self,
        source: Optional[SecretSource] = None,
        min_lengths: Optional[Dict[LengthKey, int]] = None,
        allow_weak: bool = False,
        confirm_weak: Optional[Callable[[str], bool]] = None,
    ):
        self.source = source or TerminalSecretSource()
        self.min_lengths = default_min_lengths()
        if min_lengths:
            self.min_lengths.update(min_lengths)
        self.allow_weak = allow_weak
        self.confirm_weak = confirm_weak

    def minimum_length(self, kind: SecretKind, domain: Optional[AppletDomain] = None) -> int:
        if kind is SecretKind.ROOT_PASSPHRASE:
            domain = None
        return self.min_lengths.get((kind, domain), 0)

    def check_policy(self, secret: SecretBuffer, kind: SecretKind,
                     domain: Optional[AppletDomain] = None) -> None:
        """Raise WeakSecretRejected unless the value meets policy or an override is confirmed."""
        label = secret_label(kind, domain)

        if kind is SecretKind.MANAGEMENT_SECRET and domain is AppletDomain.PIV:
            if not secret.is_hex():
                raise WeakSecretRejected(f"{label} must be hexadecimal")

        minimum = self.minimum_length(kind, domain)
        if len(secret) >= minimum:
            return

        question = f"{label} is shorter than the minimum of {minimum} characters. Use it anyway?"
        if not self.allow_weak or self.confirm_weak is None:
            raise WeakSecretRejected(
                f"{label} is shorter than the minimum of {minimum} characters"
            )
        if not self.confirm_weak(question):
            raise WeakSecretRejected(f"Weak {label} was not confirmed")

        logger.warning("Accepted %s below minimum length %d after explicit confirmation",
                       label, minimum)

    @contextmanager
    def acquire(self, prompt: str, kind: SecretKind,
                domain: Optional[AppletDomain] = None) -> Iterator[SecretBuffer]:
        """Read an existing secret (current PIN, passphrase) for one scope."""
        secret = SecretBuffer(self.source.read(prompt))
        try:
            logger.debug("Acquired %s", secret_label(kind, domain))
            yield secret
        finally:
            secret.clear()

    @contextmanager
    def acquire_new(self, prompt: str, kind: SecretKind,
                    domain: Optional[AppletDomain] = None) -> Iterator[SecretBuffer]:
        """Read a new secret twice, enforce policy, and scope it."""
        secret = SecretBuffer(self.source.read(prompt))
        try:
            with SecretBuffer(self.source.read(f"{prompt} (again)")) as confirmation:
                if not secret.equals(confirmation):
                    raise SecretMismatch(f"{secret_label(kind, domain)} entries do not match")
            self.check_policy(secret, kind, domain)
            yield secret
        finally:
            secret.clear()

    def with_secret(self, prompt: str, kind: SecretKind, func: Callable[[SecretBuffer], T],
                    domain: Optional[AppletDomain] = None, new: bool = False) -> T:
        """
        Call func with a scoped secret and return its result.

        The secret is zeroed on every exit path before this returns or
        re-raises.
        """
        scope = self.acquire_new if new else self.acquire
        with scope(prompt, kind, domain) as secret:
            return func(secret)

    @contextmanager
    def acquire_all(self, requirements: Sequence[SecretRequirement]
                    ) -> Iterator[Dict[SecretRequirement, SecretBuffer]]:
        """Acquire several existing secrets; all are wiped together."""
        with ExitStack() as stack:
            secrets = {}
            for req in requirements:
                if req in secrets:
                    continue
                prompt = f"Enter {req.label}"
                secrets[req] = stack.enter_context(self.acquire(prompt, req.kind, req.domain))
            yield secrets


# =============================================================================
# PIPES
# =============================================================================

class SecretPipe:
    """
    Anonymous pipe carrying secrets to a child process.

    The secrets are written into the kernel pipe buffer before the child
    starts; the child receives only the read descriptor (for example
    gpg --passphrase-fd N). Both ends are closed on exit.

        with SecretPipe(passphrase) as fd:
            subprocess.run([... '--passphrase-fd', str(fd)], pass_fds=(fd,))
    """

    def __init__(self, *secrets: SecretBuffer):
        self._secrets = secrets
        self._read_fd: Optional[int] = None

    def __enter__(self) -> int:
        read_fd, write_fd = os.pipe()
        try:
            for secret in self._secrets:
                view = memoryview(secret.data)
                try:
                    os.write(write_fd, view)
                finally:
                    view.release()
                os.write(write_fd, b"\n")
        except BaseException:
            os.close(read_fd)
            raise
        finally:
            os.close(write_fd)
        self._read_fd = read_fd
        return read_fd

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._read_fd is not None:
            try:
                os.close(self._read_fd)
            except OSError:
                pass
            self._read_fd = None


def feed_secrets(stream, *items) -> None:
    """
    Write newline-terminated lines to a child's stdin.

    Items are SecretBuffers (written from the live buffer) or plain
    command strings such as 'keytocard'. The stream is not closed.
    """
    for item in items:
        if isinstance(item, SecretBuffer):
            stream.write(item.data)
        else:
            stream.write(item.encode('utf-8'))
        stream.write(b"\n")
    stream.flush()

