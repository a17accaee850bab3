"""
Provisioning Engine - snapshot, plan, execute, re-snapshot.

Execution rules:
- Actions run strictly in plan order.
- `skip` and `blocked` actions are reported, never executed. Blocked
  actions do not stop the run.
- Destructive actions run only after the confirm callback approves that
  specific action. A refusal is a `declined` outcome, not an error.
- Secrets are acquired per action, after confirmation, and wiped when
  the action ends.
- The first error halts the queue; the rest is reported as `not-run`.
- Cancellation is only honoured between actions.
- Before a token-side action the retry counter it could decrement is
  read again; at 1 (or 0) the action fails unless the run overrides.
- Every mutating action is followed by a fresh read of its target slot.

A halted run is resumed by running again: the plan is recomputed from
fresh state, so completed placements come back as `skip`.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..adapters.interfaces import OfflineCredentialStore, RecipientSet, TokenBackend
from ..errors import (
    PostconditionFailed,
    ProvisioningError,
    RetryCounterCritical,
    TokenNotPresent,
)
from ..logging_config import get_logger
from ..models import (
    ActionKind,
    AppletDomain,
    Capability,
    DerivedCredential,
    DesiredState,
    ProvisioningAction,
    SecretKind,
    SecretRequirement,
    SlotIntent,
    SlotRef,
    StateSnapshot,
    secret_label,
)
from ..security.secret_scope import SecretScopeManager
from ..security.secure_memory import SecretBuffer
from ..utils.error_handling import ErrorCategory, categorize, handle_error
from .coordinator import MultiTokenCoordinator
from .inspector import StateInspector
from .lifecycle import TokenLifecycleManager
from .planner import IdempotencyPlanner, critical_counter
from .rotation import RotationEngine
from .transfer import TransferOrchestrator

logger = get_logger(__name__)

ConfirmCallback = Callable[[ProvisioningAction], bool]
CancelCheck = Callable[[], bool]


class ActionOutcome(Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    DECLINED = "declined"
    BLOCKED = "blocked"
    FAILED = "failed"
    NOT_RUN = "not-run"


@dataclass
class ActionResult:
    action: ProvisioningAction
    outcome: ActionOutcome
    detail: str = ""
    error: Optional[ProvisioningError] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'action': self.action.to_dict(),
            'outcome': self.outcome.value,
            'detail': self.detail,
        }
        if self.error is not None:
            result['error'] = {'type': type(self.error).__name__, 'message': str(self.error),
                               'category': categorize(self.error).value}
        if self.data:
            result['data'] = self.data
        return result


@dataclass
class RunReport:
    """Everything one engine run did, in plan order."""
    desired: DesiredState
    before: StateSnapshot
    actions: List[ProvisioningAction] = field(default_factory=list)
    results: List[ActionResult] = field(default_factory=list)
    after: Optional[StateSnapshot] = None
    cancelled: bool = False

    @property
    def failure(self) -> Optional[ActionResult]:
        for result in self.results:
            if result.outcome is ActionOutcome.FAILED:
                return result
        return None

    @property
    def halted_by(self) -> Optional[ProvisioningError]:
        failure = self.failure
        return failure.error if failure else None

    @property
    def ok(self) -> bool:
        return self.failure is None and not self.cancelled

    def outcomes(self) -> Tuple[ActionOutcome, ...]:
        return tuple(r.outcome for r in self.results)

    def count(self, outcome: ActionOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    def to_dict(self) -> Dict[str, Any]:
        halted = self.halted_by
        return {
            'master_id': self.desired.master_id,
            'ok': self.ok,
            'cancelled': self.cancelled,
            'halted_by': categorize(halted).value if halted else None,
            'results': [r.to_dict() for r in self.results],
            'after': self.after.to_dict() if self.after else None,
        }


@dataclass
class _RunContext:
    """Credentials issued and slots filled during one run."""
    created: Dict[Capability, str] = field(default_factory=dict)
    placed: Dict[str, List[SlotRef]] = field(default_factory=dict)


def _secret(secrets: Dict[SecretRequirement, SecretBuffer], kind: SecretKind) -> SecretBuffer:
    for req, buf in secrets.items():
        if req.kind is kind:
            return buf
    raise KeyError(kind)


class ProvisioningEngine:
    """
    Drives one desired state to completion.

    Collaborators not passed in are built from the store and token
    backend.
    """

    def __init__(
        self,
        store: OfflineCredentialStore,
        tokens: TokenBackend,
        scope: SecretScopeManager,
        recipients: Optional[RecipientSet] = None,
        inspector: Optional[StateInspector] = None,
        planner: Optional[IdempotencyPlanner] = None,
        rotation: Optional[RotationEngine] = None,
        transfer: Optional[TransferOrchestrator] = None,
        coordinator: Optional[MultiTokenCoordinator] = None,
        lifecycle: Optional[TokenLifecycleManager] = None,
    ):
        self.store = store
        self.tokens = tokens
        self.scope = scope
        self.inspector = inspector or StateInspector(store, tokens, recipients)
        self.planner = planner or IdempotencyPlanner()
        self.rotation = rotation or RotationEngine(store)
        self.transfer = transfer or TransferOrchestrator(store, tokens)
        self.coordinator = coordinator or MultiTokenCoordinator(store, tokens, self.transfer,
                                                                recipients)
        self.lifecycle = lifecycle or TokenLifecycleManager(self.inspector, tokens)

    # -------------------------------------------------------------------------
    # Observation and planning
    # -------------------------------------------------------------------------

    def observe(self, desired: DesiredState) -> StateSnapshot:
        """Snapshot everything the desired state refers to."""
        placed = [e for e in desired.entries if e.intent is not SlotIntent.ROTATE]
        serials = [s for s in dict.fromkeys(e.token_serial for e in placed) if s]
        domains = tuple(d for d in AppletDomain if any(e.domain is d for e in placed))
        return self.inspector.snapshot(
            desired.master_id,
            serials,
            domains=domains,
            require_all=False,
            extra_slots=[e.ref for e in placed if e.token_serial],
        )

    def plan(self, desired: DesiredState) -> Tuple[StateSnapshot, List[ProvisioningAction]]:
        snapshot = self.observe(desired)
        return snapshot, self.planner.plan(desired, snapshot)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def run(self, desired: DesiredState, confirm: ConfirmCallback,
            cancel: Optional[CancelCheck] = None) -> RunReport:
        """
        Execute the plan for `desired`.

        Args:
            desired: Target state
            confirm: Called once per destructive action; True to proceed
            cancel: Polled between actions; True stops the run
        """
        before, actions = self.plan(desired)
        report = RunReport(desired=desired, before=before, actions=actions)
        ctx = _RunContext()
        for fpr in {d.fingerprint for d in before.derived}:
            ctx.placed[fpr] = list(before.placements(fpr))

        halted = False
        for action in actions:
            if halted:
                report.results.append(ActionResult(action, ActionOutcome.NOT_RUN))
                continue
            if cancel is not None and cancel():
                logger.warning("Cancelled; remaining actions not run")
                report.cancelled = True
                halted = True
                report.results.append(ActionResult(action, ActionOutcome.NOT_RUN, "cancelled"))
                continue

            if action.kind is ActionKind.SKIP:
                report.results.append(ActionResult(action, ActionOutcome.SKIPPED, action.rationale))
                continue
            if action.kind is ActionKind.BLOCKED:
                logger.warning(f"Blocked: {action.describe()}")
                report.results.append(ActionResult(action, ActionOutcome.BLOCKED, action.rationale))
                continue
            if action.destructive:
                if not confirm(action):
                    logger.info(f"Declined: {action.describe()}")
                    report.results.append(ActionResult(action, ActionOutcome.DECLINED))
                    continue
                logger.security(f"Confirmed destructive action: {action.describe()}")

            logger.action_start(action.kind.value, target=str(action.target or 'offline store'),
                                capability=action.capability.name.lower())
            try:
                detail, data = self._execute(action, desired, ctx)
            except ProvisioningError as e:
                handle_error(e, action.kind.value,
                             additional_context={'target': str(action.target or 'offline store')})
                logger.action_end(action.kind.value, 'failed', error=type(e).__name__)
                report.results.append(ActionResult(action, ActionOutcome.FAILED, str(e), e))
                halted = True
                if categorize(e) is ErrorCategory.CONSISTENCY:
                    logger.critical("Consistency error; inspect the token and re-run to resume")
                continue

            logger.action_end(action.kind.value, 'completed')
            report.results.append(ActionResult(action, ActionOutcome.COMPLETED, detail, data=data))

        try:
            report.after = self.observe(desired)
        except ProvisioningError as e:
            handle_error(e, "final snapshot")
        return report

    def _execute(self, action: ProvisioningAction, desired: DesiredState,
                 ctx: _RunContext) -> Tuple[str, Dict[str, Any]]:
        if action.kind is ActionKind.ROTATE:
            with self.scope.acquire_all(action.required_secrets) as secrets:
                result = self.rotation.rotate(desired.master_id, action.capability,
                                              _secret(secrets, SecretKind.ROOT_PASSPHRASE))
            if result.new_credential is not None:
                ctx.created[action.capability] = result.new_credential.fingerprint
            return f"retired {result.retired_id}", result.to_dict()

        target = action.target
        if action.destructive and not self.inspector.is_attached(target.serial):
            raise TokenNotPresent(f"YubiKey {target.serial} was removed", target.serial)
        self._check_counters(action, desired)

        if action.kind is ActionKind.SET_PRESENCE:
            with self.scope.acquire_all(action.required_secrets) as secrets:
                self.lifecycle.apply_presence_policy(
                    target.serial, target.domain, target.slot, action.presence_policy,
                    _secret(secrets, SecretKind.MANAGEMENT_SECRET))
            return f"touch policy {action.presence_policy.value} on {target}", {}
        if target.domain is AppletDomain.PIV:
            return self._execute_redundant(action, target)
        return self._execute_placement(action, desired, target, ctx)

    def _check_counters(self, action: ProvisioningAction, desired: DesiredState) -> None:
        """Re-read the counter the action could lock; the snapshot may be stale."""
        target = action.target
        counter = critical_counter(action, self.inspector.retry_counters(target.serial,
                                                                         target.domain))
        if counter is None:
            return
        label = secret_label(counter.kind, target.domain)
        if not desired.override_critical:
            raise RetryCounterCritical(
                f"{label} has {counter.remaining} attempt(s) left; refusing "
                f"{action.kind.value} on {target}", target.serial)
        logger.security(f"{action.kind.value} on {target} with {label} at "
                        f"{counter.remaining} attempt(s) (override acknowledged)")

    def _execute_redundant(self, action: ProvisioningAction,
                           target: SlotRef) -> Tuple[str, Dict[str, Any]]:
        if action.kind is ActionKind.RESET_AND_CREATE:
            with self.scope.acquire_all(action.required_secrets) as secrets:
                self.tokens.reset(target.serial, target.domain,
                                  _secret(secrets, SecretKind.MANAGEMENT_SECRET), slot=target.slot)
        result = self.coordinator.provision_redundant(
            target.serial, target.slot, action.secret_policy, action.presence_policy, action.label)
        self._verify_slot(target, result.identity.public_identifier)
        return f"generated {result.identity.public_identifier}", result.to_dict()

    def _execute_placement(self, action: ProvisioningAction, desired: DesiredState,
                           target: SlotRef, ctx: _RunContext) -> Tuple[str, Dict[str, Any]]:
        replace = action.kind is ActionKind.RESET_AND_CREATE
        with self.scope.acquire_all(action.required_secrets) as secrets:
            passphrase = _secret(secrets, SecretKind.ROOT_PASSPHRASE)
            admin = _secret(secrets, SecretKind.MANAGEMENT_SECRET)
            credential = self._resolve(action, desired, ctx, passphrase)
            elsewhere = [r for r in ctx.placed.get(credential.fingerprint, []) if r != target]

            if action.kind is ActionKind.CLONE or (replace and elsewhere):
                result = self.coordinator.clone(credential, target, action.presence_policy,
                                                passphrase, admin, replace=replace)
            else:
                result = self.transfer.transfer(credential, target, desired.retain_local_stub,
                                                passphrase, admin, replace=replace)
                if action.presence_policy is not None:
                    self.lifecycle.apply_presence_policy(target.serial, target.domain, target.slot,
                                                         action.presence_policy, admin)

        ctx.placed.setdefault(credential.fingerprint, []).append(target)
        self._verify_slot(target, credential.fingerprint)
        return f"{credential.fingerprint} placed on {target}", result.to_dict()

    def _resolve(self, action: ProvisioningAction, desired: DesiredState, ctx: _RunContext,
                 passphrase: SecretBuffer) -> DerivedCredential:
        """The credential to place, issuing one if none is active yet."""
        # Only a credential issued earlier in this run fills an unplanned id;
        # a planned id is kept so a clone matches what its source token holds
        fingerprint = action.credential_id or ctx.created.get(action.capability)
        if fingerprint is None:
            credential = self.rotation.issue(desired.master_id, action.capability, passphrase)
            ctx.created[action.capability] = credential.fingerprint
            return credential
        for credential in self.store.list_derived(desired.master_id):
            if credential.fingerprint == fingerprint:
                return credential
        raise PostconditionFailed(f"Credential {fingerprint} is no longer in the offline store")

    def _verify_slot(self, target: SlotRef, expected_id: str) -> None:
        slot = self.inspector.slot(target)
        if slot.bound_id is None or slot.bound_id.upper() != expected_id.upper():
            raise PostconditionFailed(
                f"{target} holds {slot.bound_id or 'nothing'} after the action, "
                f"expected {expected_id}", target.serial)
        logger.verbose(f"Verified {target} holds {expected_id}")
