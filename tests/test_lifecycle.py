"""
Tests for the Token Credential Lifecycle Manager.

Changing an unlock secret must never risk locking the token: critical
counters are refused, wrong current secrets report the remaining
attempts, and the authorising counter must be full afterwards.
"""

import pytest

from provisioner.constants import FactoryDefaults
from provisioner.engine import StateInspector, TokenLifecycleManager, authorizing_kind
from provisioner.errors import (
    PostconditionFailed,
    RetryCounterCritical,
    RetryCounterNotReset,
    WrongCurrentSecret,
)
from provisioner.models import AppletDomain, PresencePolicy, SecretKind
from provisioner.security.secure_memory import SecretBuffer

from conftest import PRIMARY
from doubles import ScriptedSecretSource, make_scope

NEW_ADMIN = "24681357"
NEW_PIN = "975310"


@pytest.fixture
def lifecycle(store, tokens, recipients):
    return TokenLifecycleManager(StateInspector(store, tokens, recipients), tokens)


def buf(value: str) -> SecretBuffer:
    return SecretBuffer(value.encode())


# ===========================================================================
# Authorising Counters
# ===========================================================================

class TestAuthorizingKind:
    def test_openpgp_reset_code_guarded_by_admin_counter(self):
        assert authorizing_kind(AppletDomain.OPENPGP, SecretKind.RECOVERY_CODE) \
            is SecretKind.MANAGEMENT_SECRET

    def test_piv_management_key_has_no_counter(self):
        assert authorizing_kind(AppletDomain.PIV, SecretKind.MANAGEMENT_SECRET) is None

    def test_pins_guard_themselves(self):
        for domain in AppletDomain:
            assert authorizing_kind(domain, SecretKind.UNLOCK_PIN) is SecretKind.UNLOCK_PIN


# ===========================================================================
# change_unlock_secret
# ===========================================================================

@pytest.mark.security
class TestChangeUnlockSecret:
    """Tests for TokenLifecycleManager.change_unlock_secret."""

    def test_admin_pin_changed_and_verified(self, lifecycle, tokens):
        result = lifecycle.change_unlock_secret(
            PRIMARY, AppletDomain.OPENPGP, SecretKind.MANAGEMENT_SECRET,
            buf(FactoryDefaults.OPENPGP_ADMIN_PIN), buf(NEW_ADMIN))
        assert result.verified
        assert result.counter_before.remaining == 3
        assert result.counter_after.is_full
        assert result.warnings == []
        assert tokens.secret(PRIMARY, AppletDomain.OPENPGP,
                             SecretKind.MANAGEMENT_SECRET) == NEW_ADMIN.encode()

    def test_reset_code_uses_admin_counter(self, lifecycle, tokens):
        result = lifecycle.change_unlock_secret(
            PRIMARY, AppletDomain.OPENPGP, SecretKind.RECOVERY_CODE,
            buf(FactoryDefaults.OPENPGP_ADMIN_PIN), buf("11223344"))
        assert result.verified
        assert result.counter_before.kind is SecretKind.MANAGEMENT_SECRET

    def test_piv_puk_changed(self, lifecycle, tokens):
        result = lifecycle.change_unlock_secret(
            PRIMARY, AppletDomain.PIV, SecretKind.RECOVERY_CODE,
            buf(FactoryDefaults.PIV_PUK), buf("87654321"))
        assert result.verified
        assert tokens.changes == [(PRIMARY, AppletDomain.PIV, SecretKind.RECOVERY_CODE)]

    def test_piv_management_key_is_unverifiable(self, lifecycle):
        result = lifecycle.change_unlock_secret(
            PRIMARY, AppletDomain.PIV, SecretKind.MANAGEMENT_SECRET,
            buf(FactoryDefaults.PIV_MANAGEMENT_KEY), buf("ab" * 24))
        assert not result.verified
        assert result.counter_before is None
        assert result.counter_after is None

    @pytest.mark.parametrize("domain, kind, guard, current", [
        (AppletDomain.OPENPGP, SecretKind.UNLOCK_PIN, SecretKind.UNLOCK_PIN,
         FactoryDefaults.OPENPGP_USER_PIN),
        (AppletDomain.OPENPGP, SecretKind.RECOVERY_CODE, SecretKind.MANAGEMENT_SECRET,
         FactoryDefaults.OPENPGP_ADMIN_PIN),
        (AppletDomain.OPENPGP, SecretKind.MANAGEMENT_SECRET, SecretKind.MANAGEMENT_SECRET,
         FactoryDefaults.OPENPGP_ADMIN_PIN),
        (AppletDomain.PIV, SecretKind.UNLOCK_PIN, SecretKind.UNLOCK_PIN,
         FactoryDefaults.PIV_PIN),
        (AppletDomain.PIV, SecretKind.RECOVERY_CODE, SecretKind.RECOVERY_CODE,
         FactoryDefaults.PIV_PUK),
    ])
    def test_critical_counter_refused(self, lifecycle, tokens, domain, kind, guard, current):
        tokens.set_counter(PRIMARY, domain, guard, 1)
        with pytest.raises(RetryCounterCritical):
            lifecycle.change_unlock_secret(PRIMARY, domain, kind, buf(current), buf("86420864"))
        assert tokens.changes == []
        assert tokens.counter(PRIMARY, domain, guard) == 1
        assert tokens.secret(PRIMARY, domain, kind) != b"86420864"

    def test_critical_counter_with_override(self, lifecycle, tokens):
        tokens.set_counter(PRIMARY, AppletDomain.OPENPGP, SecretKind.MANAGEMENT_SECRET, 1)
        result = lifecycle.change_unlock_secret(
            PRIMARY, AppletDomain.OPENPGP, SecretKind.MANAGEMENT_SECRET,
            buf(FactoryDefaults.OPENPGP_ADMIN_PIN), buf(NEW_ADMIN), override_critical=True)
        assert result.verified
        assert result.counter_before.remaining == 1

    def test_wrong_current_secret_reports_remaining(self, lifecycle, tokens):
        with pytest.raises(WrongCurrentSecret) as exc_info:
            lifecycle.change_unlock_secret(
                PRIMARY, AppletDomain.OPENPGP, SecretKind.UNLOCK_PIN,
                buf("000000"), buf(NEW_PIN))
        assert exc_info.value.remaining == 2
        assert tokens.secret(PRIMARY, AppletDomain.OPENPGP,
                             SecretKind.UNLOCK_PIN) == FactoryDefaults.OPENPGP_USER_PIN.encode()

    def test_counter_not_reset_is_consistency_error(self, lifecycle, tokens):
        tokens.set_counter(PRIMARY, AppletDomain.PIV, SecretKind.UNLOCK_PIN, 2)
        tokens.counter_stuck = True
        with pytest.raises(RetryCounterNotReset):
            lifecycle.change_unlock_secret(
                PRIMARY, AppletDomain.PIV, SecretKind.UNLOCK_PIN,
                buf(FactoryDefaults.PIV_PIN), buf(NEW_PIN))

    def test_factory_default_warns(self, lifecycle):
        result = lifecycle.change_unlock_secret(
            PRIMARY, AppletDomain.OPENPGP, SecretKind.UNLOCK_PIN,
            buf(FactoryDefaults.OPENPGP_USER_PIN), buf(FactoryDefaults.OPENPGP_USER_PIN))
        assert result.verified
        assert len(result.warnings) == 1
        assert "manufacturer default" in result.warnings[0]

    def test_result_serializes_without_secrets(self, lifecycle):
        result = lifecycle.change_unlock_secret(
            PRIMARY, AppletDomain.OPENPGP, SecretKind.MANAGEMENT_SECRET,
            buf(FactoryDefaults.OPENPGP_ADMIN_PIN), buf(NEW_ADMIN))
        data = result.to_dict()
        assert data['secret'] == "OpenPGP admin PIN"
        assert NEW_ADMIN not in repr(data)


# ===========================================================================
# secure_token
# ===========================================================================

@pytest.mark.security
class TestSecureToken:
    """Tests for TokenLifecycleManager.secure_token."""

    def test_openpgp_order_and_prompts(self, lifecycle, tokens):
        source = ScriptedSecretSource([
            FactoryDefaults.OPENPGP_USER_PIN, NEW_PIN, NEW_PIN,
            FactoryDefaults.OPENPGP_ADMIN_PIN, NEW_ADMIN, NEW_ADMIN,
            NEW_ADMIN, "11223344", "11223344",
        ])
        results = lifecycle.secure_token(PRIMARY, AppletDomain.OPENPGP, make_scope(source))
        assert [r.kind for r in results] == [
            SecretKind.UNLOCK_PIN, SecretKind.MANAGEMENT_SECRET, SecretKind.RECOVERY_CODE]
        assert all(r.verified for r in results)
        assert source.prompts[0] == "Current OpenPGP user PIN"
        assert source.prompts[6] == "Current OpenPGP admin PIN"
        assert source.prompts[7] == "New OpenPGP reset code"
        assert source.all_wiped()

    def test_stops_at_first_failure(self, lifecycle, tokens):
        source = ScriptedSecretSource(["000000", NEW_PIN, NEW_PIN])
        with pytest.raises(WrongCurrentSecret):
            lifecycle.secure_token(PRIMARY, AppletDomain.OPENPGP, make_scope(source))
        assert tokens.changes == []
        assert len(source.prompts) == 3
        assert source.all_wiped()

    def test_selected_kinds_only(self, lifecycle, tokens):
        source = ScriptedSecretSource([FactoryDefaults.PIV_PIN, NEW_PIN, NEW_PIN])
        results = lifecycle.secure_token(PRIMARY, AppletDomain.PIV, make_scope(source),
                                         kinds=[SecretKind.UNLOCK_PIN])
        assert len(results) == 1
        assert tokens.changes == [(PRIMARY, AppletDomain.PIV, SecretKind.UNLOCK_PIN)]


# ===========================================================================
# Presence Policy
# ===========================================================================

class TestPresencePolicy:
    def test_policy_applied(self, lifecycle, tokens):
        lifecycle.apply_presence_policy(PRIMARY, AppletDomain.OPENPGP, "sig",
                                        PresencePolicy.ALWAYS,
                                        buf(FactoryDefaults.OPENPGP_ADMIN_PIN))
        slot = tokens.slot_status(PRIMARY, AppletDomain.OPENPGP, "sig")
        assert slot.presence_policy is PresencePolicy.ALWAYS

    def test_policy_not_reported_back(self, lifecycle, tokens, monkeypatch):
        monkeypatch.setattr(tokens, "set_presence_policy", lambda *args, **kwargs: None)
        tokens.occupy(PRIMARY, AppletDomain.OPENPGP, "sig", "F" * 40,
                      presence_policy=PresencePolicy.NONE)
        with pytest.raises(PostconditionFailed):
            lifecycle.apply_presence_policy(PRIMARY, AppletDomain.OPENPGP, "sig",
                                            PresencePolicy.ALWAYS,
                                            buf(FactoryDefaults.OPENPGP_ADMIN_PIN))
