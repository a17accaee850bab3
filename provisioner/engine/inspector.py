"""
State Inspector - read-only snapshots of the offline store and tokens.

The inspector never writes. It asks the offline store for the master
and derived credentials, asks the token backend for every inspected slot
and retry counter, and returns a frozen StateSnapshot.

An applet that is disabled or unreadable is reported as degraded instead
of failing the whole snapshot. A missing tool always fails.
"""

from dataclasses import replace
from typing import Dict, Iterable, Optional, Sequence, Tuple

from ..adapters.interfaces import OfflineCredentialStore, RecipientSet, TokenBackend
from ..constants import OPENPGP_SLOTS, PIV_INSPECTED_SLOTS
from ..errors import AppletUnavailable, TokenNotPresent, ToolError
from ..logging_config import get_logger
from ..models import (
    AppletDomain,
    AppletState,
    CredentialSlot,
    DerivedCredential,
    RetryCounter,
    SecretKind,
    SlotRef,
    StateSnapshot,
    TokenState,
)

logger = get_logger(__name__)

ALL_DOMAINS: Tuple[AppletDomain, ...] = (AppletDomain.OPENPGP, AppletDomain.PIV)


class StateInspector:
    """
    Builds StateSnapshots.

    Args:
        store: Offline credential store
        tokens: Token backend
        recipients: Recipient set (optional)
        piv_slots: PIV slots to inspect
    """

    def __init__(
        self,
        store: OfflineCredentialStore,
        tokens: TokenBackend,
        recipients: Optional[RecipientSet] = None,
        piv_slots: Sequence[str] = PIV_INSPECTED_SLOTS,
    ):
        self.store = store
        self.tokens = tokens
        self.recipients = recipients
        self.piv_slots = tuple(s.lower() for s in piv_slots)

    def slots_for(self, domain: AppletDomain) -> Tuple[str, ...]:
        return OPENPGP_SLOTS if domain is AppletDomain.OPENPGP else self.piv_slots

    def snapshot(
        self,
        master_id: str,
        token_serials: Iterable[str],
        domains: Sequence[AppletDomain] = ALL_DOMAINS,
        require_all: bool = True,
        extra_slots: Iterable[SlotRef] = (),
    ) -> StateSnapshot:
        """
        Read the whole observable state.

        Args:
            master_id: Master credential id or fingerprint
            token_serials: Tokens to inspect
            domains: Applet domains to inspect on each token
            require_all: Raise TokenNotPresent for a missing token; when
                False the token is simply left out of the snapshot
            extra_slots: Slots to inspect beyond the defaults

        Raises:
            ToolUnavailable: gpg or a token tool is missing
            TokenNotPresent: a requested token is not attached
        """
        self.store.check_available()
        master = self.store.master(master_id)
        derived = tuple(self.store.list_derived(master_id))

        attached = set(self.tokens.enumerate())
        extra = list(extra_slots)
        tokens = []
        for serial in dict.fromkeys(token_serials):
            if serial not in attached:
                if require_all:
                    raise TokenNotPresent(f"YubiKey {serial} is not attached", serial)
                logger.warning(f"YubiKey {serial} is not attached; its entries will be blocked")
                continue
            applets = []
            for domain in domains:
                wanted = list(self.slots_for(domain))
                for ref in extra:
                    if ref.serial == serial and ref.domain is domain and ref.slot not in wanted:
                        wanted.append(ref.slot)
                applets.append(self._inspect_applet(serial, domain, wanted, derived))
            tokens.append(TokenState(serial=serial, applets=tuple(applets)))

        recipients = tuple(self.recipients.snapshot()) if self.recipients else ()

        snapshot = StateSnapshot(
            master_id=master_id,
            master=master,
            derived=derived,
            tokens=tuple(tokens),
            recipients=recipients,
        )
        logger.verbose(f"Snapshot: {len(derived)} derived credentials, "
                       f"{len(tokens)} tokens, {len(recipients)} recipients")
        return snapshot

    def _inspect_applet(self, serial: str, domain: AppletDomain, slots: Sequence[str],
                        derived: Tuple[DerivedCredential, ...]) -> AppletState:
        try:
            counters = self.tokens.retry_counters(serial, domain)
            observed = tuple(
                self._classify(self.tokens.slot_status(serial, domain, slot), derived)
                for slot in slots
            )
        except (AppletUnavailable, ToolError) as e:
            logger.warning(f"{domain.value} applet on {serial} is degraded: {e}")
            return AppletState(domain=domain, available=False, degraded_reason=str(e))

        return AppletState(
            domain=domain,
            available=True,
            slots=observed,
            retry_counters=tuple(counters[k] for k in SecretKind if k in counters),
        )

    def _classify(self, slot: CredentialSlot,
                  derived: Tuple[DerivedCredential, ...]) -> CredentialSlot:
        """Attach the exact capability profile of an OpenPGP slot's occupant."""
        if slot.domain is not AppletDomain.OPENPGP or slot.bound_id is None:
            return slot
        for cred in derived:
            if cred.fingerprint == slot.bound_id.upper():
                return replace(slot, bound_id=cred.fingerprint, capabilities=cred.capabilities)
        # Occupant unknown to this keyring
        return replace(slot, capabilities=None)

    def slot(self, ref: SlotRef) -> CredentialSlot:
        """Fresh status of one slot."""
        return self.tokens.slot_status(ref.serial, ref.domain, ref.slot)

    def retry_counters(self, serial: str, domain: AppletDomain) -> Dict[SecretKind, RetryCounter]:
        """Current counters, read straight from the token."""
        return self.tokens.retry_counters(serial, domain)

    def is_attached(self, serial: str) -> bool:
        return serial in self.tokens.enumerate()
