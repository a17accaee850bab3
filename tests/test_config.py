"""
Tests for settings layering and descriptor loading.
"""

import pytest

from provisioner.config import (
    ProvisionerSettings,
    desired_state_from_dict,
    load_descriptor,
    load_settings,
)
from provisioner.errors import ConfigError
from provisioner.models import (
    AppletDomain,
    Capability,
    PresencePolicy,
    SecretKind,
    SecretPolicy,
    SlotIntent,
)

MASTER = "0xABCDEF0123456789"


def write(temp_dir, name, text):
    path = temp_dir / name
    path.write_text(text)
    return path


# ===========================================================================
# Settings
# ===========================================================================

class TestSettings:
    """Defaults, then YAML, then environment."""

    def test_defaults(self):
        settings = load_settings(env={})
        assert settings.key_type == "rsa4096"
        assert settings.age.piv_slot == "82"
        assert settings.touch_policy['sig'] is PresencePolicy.CACHED
        assert settings.min_lengths.passphrase == 12
        assert settings.expiry_threshold_days == 30

    def test_yaml_overrides_defaults(self, temp_dir):
        path = write(temp_dir, "settings.yaml", (
            "gnupghome: /mnt/offline/gnupg\n"
            f"master_key_id: \"{MASTER}\"\n"
            "key_type: ed25519\n"
            "touch_policy:\n"
            "  sig: always\n"
            "age:\n"
            "  piv_slot: \"83\"\n"
            "  pin_policy: never\n"
            "min_lengths:\n"
            "  passphrase: 20\n"
        ))
        settings = load_settings(path, env={})
        assert settings.gnupghome == "/mnt/offline/gnupg"
        assert settings.master_key_id == MASTER
        assert settings.key_type == "ed25519"
        assert settings.touch_policy['sig'] is PresencePolicy.ALWAYS
        assert settings.touch_policy['enc'] is PresencePolicy.CACHED
        assert settings.age.piv_slot == "83"
        assert settings.age.pin_policy is SecretPolicy.NEVER
        assert settings.min_lengths.passphrase == 20

    def test_config_path_from_environment(self, temp_dir):
        path = write(temp_dir, "settings.yaml", "expiration: 1y\n")
        settings = load_settings(env={'PROVISIONER_CONFIG': str(path)})
        assert settings.expiration == "1y"

    def test_environment_overrides_yaml(self, temp_dir):
        path = write(temp_dir, "settings.yaml", "key_type: ed25519\n")
        settings = load_settings(path, env={
            'GPG_KEY_TYPE': 'RSA4096',
            'GNUPGHOME': '/tmp/gnupg',
            'GPG_TOUCH_POLICY_AUT': 'on',
            'ADDITIONAL_AGE_PIV_SLOT': '84',
            'ADDITIONAL_AGE_TOUCH_POLICY': 'always',
            'PIV_MIN_PIN_LENGTH': '8',
            'GPG_EXPIRY_CHECK_THRESHOLD_DAYS': '60',
            'PROVISIONER_ALLOW_WEAK_SECRETS': 'yes',
        })
        assert settings.key_type == "rsa4096"
        assert settings.gnupghome == "/tmp/gnupg"
        assert settings.touch_policy['aut'] is PresencePolicy.ALWAYS
        assert settings.age.piv_slot == "84"
        assert settings.age.touch_policy is PresencePolicy.ALWAYS
        assert settings.min_lengths.piv_pin == 8
        assert settings.expiry_threshold_days == 60
        assert settings.allow_weak_secrets

    def test_bad_environment_integer(self):
        with pytest.raises(ConfigError):
            load_settings(env={'PIV_MIN_PIN_LENGTH': 'six'})

    def test_bad_environment_policy(self):
        with pytest.raises(ConfigError):
            load_settings(env={'GPG_TOUCH_POLICY_SIG': 'sometimes'})

    def test_age_slot_must_be_retired(self):
        with pytest.raises(ConfigError):
            load_settings(env={'ADDITIONAL_AGE_PIV_SLOT': '9a'})

    def test_unsupported_key_type(self):
        with pytest.raises(ConfigError):
            load_settings(env={'GPG_KEY_TYPE': 'dsa1024'})

    def test_unquoted_hex_key_id_rejected(self, temp_dir):
        path = write(temp_dir, "settings.yaml", "master_key_id: 0xABCDEF0123456789\n")
        with pytest.raises(ConfigError):
            load_settings(path, env={})

    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigError):
            load_settings(temp_dir / "absent.yaml", env={})

    def test_invalid_yaml(self, temp_dir):
        path = write(temp_dir, "settings.yaml", "key_type: [unclosed\n")
        with pytest.raises(ConfigError):
            load_settings(path, env={})

    def test_top_level_must_be_mapping(self, temp_dir):
        path = write(temp_dir, "settings.yaml", "- a\n- b\n")
        with pytest.raises(ConfigError):
            load_settings(path, env={})

    def test_empty_file_is_defaults(self, temp_dir):
        path = write(temp_dir, "settings.yaml", "")
        assert load_settings(path, env={}).key_type == "rsa4096"

    def test_secret_scope_uses_lengths(self):
        settings = ProvisionerSettings()
        settings.min_lengths.openpgp_admin_pin = 10
        scope = settings.secret_scope()
        assert scope.minimum_length(SecretKind.MANAGEMENT_SECRET, AppletDomain.OPENPGP) == 10

    def test_resolve_master_id(self):
        settings = ProvisionerSettings(master_key_id=MASTER)
        assert settings.resolve_master_id() == MASTER
        assert settings.resolve_master_id("0x1111") == "0x1111"


# ===========================================================================
# Descriptor
# ===========================================================================

class TestDescriptor:
    """Tests for desired-state descriptor loading."""

    def test_full_descriptor(self, temp_dir):
        path = write(temp_dir, "desired.yaml", (
            f"master_key_id: \"{MASTER}\"\n"
            "tokens:\n"
            "  \"12345678\":\n"
            "    - capability: sign\n"
            "    - capability: encrypt\n"
            "      touch_policy: always\n"
            "    - capability: auth\n"
            "  \"87654321\":\n"
            "    - capability: encrypt\n"
            "      intent: clone\n"
            "    - capability: encrypt\n"
            "      intent: redundant\n"
            "      label: backup-key\n"
        ))
        desired = load_descriptor(path, ProvisionerSettings())
        assert desired.master_id == MASTER
        assert desired.token_serials == ("12345678", "87654321")
        assert not desired.allow_destructive
        assert desired.retain_local_stub

        sign, enc, auth, clone, redundant = desired.entries
        assert sign.ref.slot == "sig"
        assert enc.presence_policy is PresencePolicy.ALWAYS
        assert auth.capability is Capability.AUTHENTICATE
        assert clone.intent is SlotIntent.CLONE
        assert redundant.domain is AppletDomain.PIV
        assert redundant.slot == "82"
        assert redundant.label == "backup-key"

    def test_flag_overrides_allow_destructive(self, temp_dir):
        path = write(temp_dir, "desired.yaml", (
            f"master_key_id: \"{MASTER}\"\n"
            "allow_destructive: false\n"
            "tokens:\n"
            "  \"12345678\":\n"
            "    - capability: sign\n"
        ))
        assert load_descriptor(path, ProvisionerSettings(), allow_destructive=True).allow_destructive

    def test_settings_supply_defaults(self):
        settings = ProvisionerSettings()
        settings.touch_policy['sig'] = PresencePolicy.NONE
        settings.age.piv_slot = "85"
        desired = desired_state_from_dict({
            'master_key_id': MASTER,
            'tokens': {12345678: [{'capability': 'sign'},
                                  {'capability': 'encrypt', 'intent': 'redundant'}]},
        }, settings)
        sign, redundant = desired.entries
        assert sign.token_serial == "12345678"
        assert sign.presence_policy is PresencePolicy.NONE
        assert redundant.slot == "85"

    @pytest.mark.parametrize("tokens", [
        None,
        {},
        {"12345678": []},
        {"not-a-serial": [{'capability': 'sign'}]},
        {"12345678": [{'capability': 'frobnicate'}]},
        {"12345678": [{'capability': 'sign', 'colour': 'blue'}]},
        {"12345678": [{'intent': 'clone'}]},
        {"12345678": [{'capability': 'sign', 'slot': 'xyz'}]},
        {"12345678": [{'capability': 'encrypt', 'domain': 'piv', 'slot': '77'}]},
        {"12345678": [{'capability': 'sign', 'touch_policy': 'maybe'}]},
    ])
    def test_malformed(self, tokens):
        with pytest.raises(ConfigError):
            desired_state_from_dict({'master_key_id': MASTER, 'tokens': tokens},
                                    ProvisionerSettings())

    def test_explicit_master_wins(self):
        desired = desired_state_from_dict(
            {'master_key_id': MASTER, 'tokens': {"1": [{'capability': 'sign'}]}},
            ProvisionerSettings(), master_id="0x2222")
        assert desired.master_id == "0x2222"
