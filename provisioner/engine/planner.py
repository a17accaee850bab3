"""
Idempotency Planner - diff a desired state against a snapshot.

Pure: no I/O, no clock reads beyond the snapshot's own timestamp. The
same desired state and snapshot always produce the same plan, and a
snapshot that already satisfies the desired state produces only `skip`
actions.

Ordering: non-destructive actions first, destructive ones (slot resets
and on-device generation) last, each group in descriptor order.

An action that would present a secret whose retry counter is at 1 (or
0) is planned as `blocked` unless the run carries override_critical.
"""

from typing import Dict, List, Optional, Set, Tuple

from ..logging_config import get_logger
from ..models import (
    ActionKind,
    AppletDomain,
    Capability,
    CapabilityProfile,
    DerivedCredential,
    DesiredSlot,
    DesiredState,
    ProvisioningAction,
    RetryCounter,
    SecretKind,
    SecretRequirement,
    SlotIntent,
    SlotRef,
    StateSnapshot,
    secret_label,
)

logger = get_logger(__name__)

# Capability each OpenPGP slot holds
OPENPGP_SLOT_CAPABILITY: Dict[str, Capability] = {
    'sig': Capability.SIGN,
    'enc': Capability.ENCRYPT,
    'aut': Capability.AUTHENTICATE,
}

PASSPHRASE = SecretRequirement(SecretKind.ROOT_PASSPHRASE)

# Retry counter a token-side action decrements if the secret it presents
# is wrong: keytocard and touch changes use the OpenPGP admin PIN,
# on-device generation asks for the PIV PIN
COUNTER_AT_RISK: Dict[AppletDomain, SecretKind] = {
    AppletDomain.OPENPGP: SecretKind.MANAGEMENT_SECRET,
    AppletDomain.PIV: SecretKind.UNLOCK_PIN,
}


def newest_active(snapshot: StateSnapshot, capability: Capability) -> Optional[DerivedCredential]:
    """During a rotation window the newest active credential is the one to place."""
    active = snapshot.active_derived(capability)
    if not active:
        return None
    return max(active, key=lambda d: d.created_at)


def critical_counter(action: ProvisioningAction,
                     counters: Dict[SecretKind, RetryCounter]) -> Optional[RetryCounter]:
    """The counter this action could lock, if it is already at 1 or 0."""
    if action.target is None or action.kind in (ActionKind.SKIP, ActionKind.BLOCKED):
        return None
    counter = counters.get(COUNTER_AT_RISK[action.target.domain])
    if counter is not None and counter.is_critical:
        return counter
    return None


class IdempotencyPlanner:
    """Computes the minimal action list for a desired state."""

    def plan(self, desired: DesiredState, snapshot: StateSnapshot) -> List[ProvisioningAction]:
        actions: List[ProvisioningAction] = []
        # Credential fingerprint (or capability for not-yet-issued ones) -> slots planned
        planned: Dict[str, List[SlotRef]] = {}
        rotated: Set[Capability] = set()

        for entry in desired.entries:
            action = self._plan_entry(entry, desired, snapshot, planned, rotated)
            action = self._guard_counters(action, entry, desired, snapshot, planned)
            logger.verbose(action.describe())
            actions.append(action)

        ordered = [a for a in actions if not a.destructive] + [a for a in actions if a.destructive]
        return ordered

    # -------------------------------------------------------------------------

    def _action(self, kind: ActionKind, entry: DesiredSlot, rationale: str,
                credential_id: Optional[str] = None,
                secrets: Tuple[SecretRequirement, ...] = (),
                offline: bool = False) -> ProvisioningAction:
        return ProvisioningAction(
            kind=kind,
            capability=entry.capability,
            target=None if offline else entry.ref,
            credential_id=credential_id,
            required_secrets=secrets,
            rationale=rationale,
            presence_policy=entry.presence_policy,
            secret_policy=entry.secret_policy,
            label=entry.label,
        )

    def _blocked(self, entry: DesiredSlot, rationale: str,
                 credential_id: Optional[str] = None) -> ProvisioningAction:
        return self._action(ActionKind.BLOCKED, entry, rationale, credential_id)

    def _guard_counters(self, action: ProvisioningAction, entry: DesiredSlot,
                        desired: DesiredState, snapshot: StateSnapshot,
                        planned: Dict[str, List[SlotRef]]) -> ProvisioningAction:
        if action.target is None:
            return action
        token = snapshot.token(action.target.serial)
        applet = token.applet(action.target.domain) if token else None
        counters = {c.kind: c for c in applet.retry_counters} if applet else {}
        counter = critical_counter(action, counters)
        if counter is None:
            return action
        label = secret_label(counter.kind, action.target.domain)
        if desired.override_critical:
            logger.warning(f"{label} on {action.target.serial} has {counter.remaining} "
                           f"attempt(s) left; planning {action.kind.value} under override")
            return action
        for refs in planned.values():
            if action.target in refs:
                refs.remove(action.target)
        return self._blocked(
            entry,
            f"{label} has {counter.remaining} attempt(s) left; one wrong entry would lock it",
            action.credential_id,
        )

    def _plan_entry(self, entry: DesiredSlot, desired: DesiredState, snapshot: StateSnapshot,
                    planned: Dict[str, List[SlotRef]], rotated: Set[Capability]) -> ProvisioningAction:
        if entry.capability is Capability.CERTIFY:
            return self._blocked(entry, "the certify capability stays with the offline master")

        if entry.intent is SlotIntent.ROTATE:
            return self._plan_rotation(entry, snapshot, rotated)

        ref = entry.ref
        token = snapshot.token(ref.serial)
        if token is None:
            return self._blocked(entry, f"token {ref.serial} is not attached")
        applet = token.applet(ref.domain)
        if applet is None or not applet.available:
            reason = applet.degraded_reason if applet else "not inspected"
            return self._blocked(entry, f"{ref.domain.value} applet unavailable: {reason}")
        slot = applet.slot(ref.slot)
        if slot is None:
            return self._blocked(entry, f"slot {ref.slot} was not inspected or does not exist")

        if entry.intent is SlotIntent.REDUNDANT:
            return self._plan_redundant(entry, desired, slot)

        if ref.domain is AppletDomain.PIV:
            return self._blocked(entry, "PIV slots only hold identities generated on the device; "
                                        "use the redundant intent")
        if OPENPGP_SLOT_CAPABILITY.get(ref.slot) is not entry.capability:
            return self._blocked(entry, f"OpenPGP slot {ref.slot} cannot hold a "
                                        f"{entry.capability.name.lower()} credential")

        active = newest_active(snapshot, entry.capability)
        wanted_profile = CapabilityProfile.exactly(entry.capability)

        if (active is not None and slot.bound_id == active.fingerprint
                and slot.capabilities is wanted_profile):
            if slot.presence_policy is not None and slot.presence_policy is not entry.presence_policy:
                return self._action(
                    ActionKind.SET_PRESENCE, entry,
                    f"touch policy is {slot.presence_policy.value}, "
                    f"wanted {entry.presence_policy.value}",
                    active.fingerprint,
                    (SecretRequirement(SecretKind.MANAGEMENT_SECRET, ref.domain, ref.serial),),
                )
            return self._action(ActionKind.SKIP, entry, "active credential already in slot",
                                active.fingerprint)

        key = active.fingerprint if active else f"new:{entry.capability.value}"
        elsewhere = [r for r in snapshot.placements(active.fingerprint) if r != ref] if active else []
        elsewhere += [r for r in planned.get(key, []) if r != ref]

        secrets = (PASSPHRASE,
                   SecretRequirement(SecretKind.MANAGEMENT_SECRET, ref.domain, ref.serial))
        credential_id = active.fingerprint if active else None

        if active is not None and not active.has_local_material:
            where = active.card_serial or (str(elsewhere[0]) if elsewhere else "another token")
            return self._blocked(
                entry,
                f"credential lives only on {where}; no local material is retained "
                f"to place or clone it from",
                credential_id,
            )
        if not elsewhere and active is not None and active.card_serial not in (None, ref.serial):
            # Placed on a token this descriptor does not name
            elsewhere = [SlotRef(active.card_serial, ref.domain, ref.slot)]
        if entry.intent is SlotIntent.CLONE and not elsewhere:
            return self._blocked(entry, "nothing to clone: the credential is not placed on "
                                        "any other token", credential_id)

        if elsewhere:
            # Second placement: only possible from a retained local copy
            if not desired.retain_local_stub:
                return self._blocked(
                    entry,
                    f"credential already placed on {elsewhere[0]} and no local material "
                    f"is retained to clone from",
                    credential_id,
                )

        if slot.is_empty:
            kind = ActionKind.CLONE if elsewhere else ActionKind.CREATE
            if kind is ActionKind.CLONE:
                rationale = f"clone of the credential on {elsewhere[0]}"
            elif active is None:
                rationale = "no active credential; issue one and place it"
            else:
                rationale = "slot empty; place the active credential"
            planned.setdefault(key, []).append(ref)
            return self._action(kind, entry, rationale, credential_id, secrets)

        if not desired.allow_destructive:
            return self._blocked(
                entry,
                f"slot occupied by {slot.bound_id or 'an unknown credential'}; "
                f"destructive actions are not allowed",
                credential_id,
            )
        planned.setdefault(key, []).append(ref)
        return self._action(
            ActionKind.RESET_AND_CREATE, entry,
            f"slot occupied by {slot.bound_id or 'an unknown credential'}; replace it",
            credential_id, secrets,
        )

    def _plan_rotation(self, entry: DesiredSlot, snapshot: StateSnapshot,
                       rotated: Set[Capability]) -> ProvisioningAction:
        if entry.capability in rotated:
            return self._action(ActionKind.SKIP, entry, "rotation already planned for this capability",
                                offline=True)
        active = newest_active(snapshot, entry.capability)
        if active is None:
            return self._action(ActionKind.BLOCKED, entry,
                                "no active credential of this capability to rotate", offline=True)
        rotated.add(entry.capability)
        return self._action(ActionKind.ROTATE, entry,
                            "retire the active credential and issue a successor",
                            active.fingerprint, (PASSPHRASE,), offline=True)

    def _plan_redundant(self, entry: DesiredSlot, desired: DesiredState, slot) -> ProvisioningAction:
        ref = entry.ref
        if ref.domain is not AppletDomain.PIV or entry.capability is not Capability.ENCRYPT:
            return self._blocked(entry, "redundant identities are encryption identities on PIV slots")
        if slot.is_empty:
            return self._action(ActionKind.PROVISION_REDUNDANT, entry,
                                "generate an independent identity on the device")
        if slot.capabilities is CapabilityProfile.ENCRYPT:
            return self._action(ActionKind.SKIP, entry, "identity already present in slot",
                                slot.bound_id)
        if not desired.allow_destructive:
            return self._blocked(entry, f"PIV slot {ref.slot} holds another credential; "
                                        f"destructive actions are not allowed")
        return self._action(
            ActionKind.RESET_AND_CREATE, entry,
            f"PIV slot {ref.slot} holds another credential; clear it and generate",
            secrets=(SecretRequirement(SecretKind.MANAGEMENT_SECRET, ref.domain, ref.serial),),
        )


def plan(desired: DesiredState, snapshot: StateSnapshot) -> List[ProvisioningAction]:
    """Module-level shortcut for IdempotencyPlanner().plan()."""
    return IdempotencyPlanner().plan(desired, snapshot)
