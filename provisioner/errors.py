"""
Exception hierarchy for the provisioning engine.

Errors fall into the categories the executor acts on:

- Observation errors (token absent, tool missing): recoverable, nothing
  was mutated.
- Precondition errors (no local stub, wrong current secret, retry
  counter critical): recoverable only by a different caller decision.
- Consistency errors (post-action state differs from what was expected):
  fatal for the rest of the action queue.

A declined confirmation is not an error and has no class here.
"""

from typing import Optional

from .utils.error_handling import ErrorCategory


class ProvisioningError(Exception):
    """Base exception for provisioning operations"""
    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, serial: Optional[str] = None):
        super().__init__(message)
        self.serial = serial


# -----------------------------------------------------------------------------
# Observation
# -----------------------------------------------------------------------------

class ObservationError(ProvisioningError):
    """State could not be observed"""
    category = ErrorCategory.OBSERVATION


class ToolUnavailable(ObservationError):
    """A required external tool (gpg, ykman, age-plugin-yubikey) is missing"""
    pass


class TokenNotPresent(ObservationError):
    """A requested token serial is not attached"""
    pass


class AppletUnavailable(ObservationError):
    """An applet on a present token is disabled or unreadable"""
    pass


class ToolError(ProvisioningError):
    """An external tool ran but failed or produced unusable output"""
    category = ErrorCategory.TOOL

    def __init__(self, message: str, serial: Optional[str] = None,
                 returncode: Optional[int] = None, output: str = ""):
        super().__init__(message, serial)
        self.returncode = returncode
        self.output = output


# -----------------------------------------------------------------------------
# Precondition
# -----------------------------------------------------------------------------

class PreconditionError(ProvisioningError):
    """The operation cannot proceed without a different caller decision"""
    category = ErrorCategory.PRECONDITION


class NoLocalMaterial(PreconditionError):
    """The offline store holds no private material for the credential"""
    pass


class WrongCurrentSecret(PreconditionError):
    """The token rejected the current unlock secret"""

    def __init__(self, message: str, serial: Optional[str] = None,
                 remaining: Optional[int] = None):
        super().__init__(message, serial)
        self.remaining = remaining


class RetryCounterCritical(PreconditionError):
    """A retry counter is at 1 (or 0); another failure would lock the secret"""
    pass


class WeakSecretRejected(PreconditionError):
    """A secret is shorter than policy and no override was confirmed"""
    pass


class SecretMismatch(PreconditionError):
    """The confirmation entry did not match"""
    pass


class NoMasterMaterial(PreconditionError):
    """The master credential's secret material is not in the offline store"""
    pass


class RotationRejected(PreconditionError):
    """Rotation would violate credential continuity"""
    pass


class TransferRejected(PreconditionError):
    """The credential cannot be placed in the requested slot"""
    pass


class UnsupportedSlot(PreconditionError):
    """The slot does not exist or cannot hold this kind of credential"""
    pass


class ArtifactImmutable(PreconditionError):
    """A write-once artifact already exists with different content"""
    pass


# -----------------------------------------------------------------------------
# Consistency
# -----------------------------------------------------------------------------

class ConsistencyError(ProvisioningError):
    """Observed state after an action does not match the expected state"""
    category = ErrorCategory.CONSISTENCY


class RetryCounterNotReset(ConsistencyError):
    """A retry counter did not return to its maximum after a secret change"""
    pass


class PostconditionFailed(ConsistencyError):
    """An action completed but its effect is not visible on re-inspection"""
    pass


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

class ConfigError(ProvisioningError):
    """Invalid settings or desired-state descriptor"""
    category = ErrorCategory.CONFIG


__all__ = [
    'ProvisioningError',
    'ObservationError',
    'ToolUnavailable',
    'TokenNotPresent',
    'AppletUnavailable',
    'ToolError',
    'PreconditionError',
    'NoLocalMaterial',
    'WrongCurrentSecret',
    'RetryCounterCritical',
    'WeakSecretRejected',
    'SecretMismatch',
    'NoMasterMaterial',
    'RotationRejected',
    'TransferRejected',
    'UnsupportedSlot',
    'ArtifactImmutable',
    'ConsistencyError',
    'RetryCounterNotReset',
    'PostconditionFailed',
    'ConfigError',
]
