"""
Token Credential Lifecycle Manager - unlock secrets and touch policies.

Changing a PIN, PUK, reset code or management key is guarded by the
retry counter the change would decrement if the current value were
wrong:

    OpenPGP user PIN    -> user PIN counter
    OpenPGP admin PIN   -> admin PIN counter
    OpenPGP reset code  -> admin PIN counter (the admin PIN authorises it)
    PIV PIN             -> PIN counter
    PIV PUK             -> PUK counter
    PIV management key  -> no counter

At 1 (or 0) remaining attempts the change is refused unless the caller
explicitly overrides. After a successful change the authorising counter
must be back at its maximum.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..constants import FactoryDefaults
from ..errors import (
    PostconditionFailed,
    RetryCounterCritical,
    RetryCounterNotReset,
    WrongCurrentSecret,
)
from ..adapters.interfaces import TokenBackend
from ..logging_config import get_logger
from ..models import AppletDomain, PresencePolicy, RetryCounter, SecretKind, secret_label
from ..security.secret_scope import SecretScopeManager
from ..security.secure_memory import SecretBuffer
from .inspector import StateInspector

logger = get_logger(__name__)

AUTHORIZING_COUNTER: Dict[Tuple[AppletDomain, SecretKind], Optional[SecretKind]] = {
    (AppletDomain.OPENPGP, SecretKind.UNLOCK_PIN): SecretKind.UNLOCK_PIN,
    (AppletDomain.OPENPGP, SecretKind.MANAGEMENT_SECRET): SecretKind.MANAGEMENT_SECRET,
    (AppletDomain.OPENPGP, SecretKind.RECOVERY_CODE): SecretKind.MANAGEMENT_SECRET,
    (AppletDomain.PIV, SecretKind.UNLOCK_PIN): SecretKind.UNLOCK_PIN,
    (AppletDomain.PIV, SecretKind.RECOVERY_CODE): SecretKind.RECOVERY_CODE,
    (AppletDomain.PIV, SecretKind.MANAGEMENT_SECRET): None,
}

FACTORY_VALUES: Dict[Tuple[AppletDomain, SecretKind], str] = {
    (AppletDomain.OPENPGP, SecretKind.UNLOCK_PIN): FactoryDefaults.OPENPGP_USER_PIN,
    (AppletDomain.OPENPGP, SecretKind.MANAGEMENT_SECRET): FactoryDefaults.OPENPGP_ADMIN_PIN,
    (AppletDomain.PIV, SecretKind.UNLOCK_PIN): FactoryDefaults.PIV_PIN,
    (AppletDomain.PIV, SecretKind.RECOVERY_CODE): FactoryDefaults.PIV_PUK,
    (AppletDomain.PIV, SecretKind.MANAGEMENT_SECRET): FactoryDefaults.PIV_MANAGEMENT_KEY,
}

# Order used by secure_token(); the OpenPGP reset code is authorised by
# the admin PIN, so it comes after the admin PIN change
SECURE_ORDER: Dict[AppletDomain, Tuple[SecretKind, ...]] = {
    AppletDomain.OPENPGP: (SecretKind.UNLOCK_PIN, SecretKind.MANAGEMENT_SECRET,
                           SecretKind.RECOVERY_CODE),
    AppletDomain.PIV: (SecretKind.UNLOCK_PIN, SecretKind.RECOVERY_CODE,
                       SecretKind.MANAGEMENT_SECRET),
}


def authorizing_kind(domain: AppletDomain, kind: SecretKind) -> Optional[SecretKind]:
    return AUTHORIZING_COUNTER[(domain, kind)]


@dataclass
class SecretChangeResult:
    """Outcome of one unlock secret change."""
    serial: str
    domain: AppletDomain
    kind: SecretKind
    counter_before: Optional[RetryCounter] = None
    counter_after: Optional[RetryCounter] = None
    verified: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'serial': self.serial,
            'domain': self.domain.value,
            'secret': secret_label(self.kind, self.domain),
            'counter_before': self.counter_before.to_dict() if self.counter_before else None,
            'counter_after': self.counter_after.to_dict() if self.counter_after else None,
            'verified': self.verified,
            'warnings': list(self.warnings),
        }


class TokenLifecycleManager:
    """Changes unlock secrets and touch policies without risking lockout."""

    def __init__(self, inspector: StateInspector, tokens: TokenBackend):
        self.inspector = inspector
        self.tokens = tokens

    def change_unlock_secret(
        self,
        serial: str,
        domain: AppletDomain,
        kind: SecretKind,
        current: SecretBuffer,
        new: SecretBuffer,
        override_critical: bool = False,
    ) -> SecretChangeResult:
        """
        Change one unlock secret.

        Raises:
            RetryCounterCritical: authorising counter at 1 or 0 without override
            WrongCurrentSecret: the token rejected `current`
            RetryCounterNotReset: the counter is not at maximum afterwards
            ToolError: the tool failed for another reason
        """
        label = secret_label(kind, domain)
        auth_kind = authorizing_kind(domain, kind)
        result = SecretChangeResult(serial, domain, kind)

        if auth_kind is not None:
            result.counter_before = self.inspector.retry_counters(serial, domain).get(auth_kind)
            before = result.counter_before
            if before is not None and before.is_critical:
                if not override_critical:
                    raise RetryCounterCritical(
                        f"{secret_label(auth_kind, domain)} has {before.remaining} "
                        f"attempt(s) left; refusing to change the {label}",
                        serial,
                    )
                logger.security(f"Changing {label} on {serial} with "
                                f"{before.remaining} attempt(s) left (override acknowledged)")

        default = FACTORY_VALUES.get((domain, kind))
        if default is not None and new.equals(default):
            warning = f"New {label} is the manufacturer default"
            result.warnings.append(warning)
            logger.notice(f"{warning} on {serial}")

        try:
            self.tokens.change_secret(serial, domain, kind, current, new)
        except WrongCurrentSecret as e:
            if e.remaining is None and auth_kind is not None:
                counter = self.inspector.retry_counters(serial, domain).get(auth_kind)
                e.remaining = counter.remaining if counter else None
            logger.warning(f"{label} change on {serial} rejected; "
                           f"{e.remaining if e.remaining is not None else 'unknown'} attempt(s) left")
            raise

        if auth_kind is None:
            logger.notice(f"{label} has no retry counter; change on {serial} is unverifiable")
            return result

        after = self.inspector.retry_counters(serial, domain).get(auth_kind)
        result.counter_after = after
        if after is None:
            logger.notice(f"{secret_label(auth_kind, domain)} counter not reported; "
                          f"change on {serial} is unverifiable")
            return result
        if not after.is_full:
            raise RetryCounterNotReset(
                f"{secret_label(auth_kind, domain)} counter is {after.remaining}/{after.maximum} "
                f"after changing the {label}",
                serial,
            )
        result.verified = True
        logger.info(f"Changed {label} on {serial}; counter {after.remaining}/{after.maximum}")
        return result

    def secure_token(
        self,
        serial: str,
        domain: AppletDomain,
        scope: SecretScopeManager,
        kinds: Optional[Sequence[SecretKind]] = None,
        override_critical: bool = False,
    ) -> List[SecretChangeResult]:
        """
        Replace the unlock secrets of one applet, one at a time.

        Each current/new pair lives only for its own change. Stops at
        the first failure; earlier changes stay in effect.
        """
        results = []
        for kind in kinds or SECURE_ORDER[domain]:
            auth_kind = authorizing_kind(domain, kind) or kind
            current_label = secret_label(auth_kind, domain)
            new_label = secret_label(kind, domain)
            with scope.acquire(f"Current {current_label}", auth_kind, domain) as current:
                with scope.acquire_new(f"New {new_label}", kind, domain) as new:
                    results.append(self.change_unlock_secret(
                        serial, domain, kind, current, new, override_critical))
        return results

    def apply_presence_policy(self, serial: str, domain: AppletDomain, slot: str,
                              policy: PresencePolicy, admin: SecretBuffer) -> None:
        """Set a slot's touch policy and confirm the token reports it."""
        self.tokens.set_presence_policy(serial, domain, slot, policy, admin)
        observed = self.tokens.slot_status(serial, domain, slot).presence_policy
        if observed is not None and observed is not policy:
            raise PostconditionFailed(
                f"Touch policy on {serial}/{slot} is {observed.value}, expected {policy.value}",
                serial,
            )
        logger.info(f"Touch policy on {serial}/{domain.value}/{slot}: {policy.value}")
