"""
Tests for the durable 2FA profile store (SQLite).
"""
import pytest
from unittest.mock import patch

from orthrus.auth.models import TwoFactorMethod
from orthrus.database.profile_db import SecurityProfileDB


class TestProfiles:
    """Reading and enabling profiles."""

    def test_missing_profile_is_empty(self, profiles):
        profile = profiles.get("nobody")
        assert profile.enabled is False
        assert profile.active_method == TwoFactorMethod.NONE
        assert profile.backup_codes == []
        assert profile.trusted_devices == {}

    def test_enable_and_read_back(self, profiles, user):
        profiles.enable(user["user_id"], TwoFactorMethod.TOTP, "JBSWY3DPEHPK3PXP")
        profile = profiles.get(user["user_id"])

        assert profile.enabled is True
        assert profile.method == TwoFactorMethod.TOTP
        assert profile.totp_secret == "JBSWY3DPEHPK3PXP"

    def test_email_method_drops_secret(self, profiles, user):
        profiles.enable(user["user_id"], TwoFactorMethod.EMAIL, "JBSWY3DPEHPK3PXP")
        assert profiles.get(user["user_id"]).totp_secret is None

    def test_count_enabled(self, profiles, make_user):
        profiles.enable(make_user()["user_id"], TwoFactorMethod.EMAIL)
        profiles.enable(make_user()["user_id"], TwoFactorMethod.TOTP, "JBSWY3DPEHPK3PXP")

        assert profiles.count_enabled() == 2
        assert profiles.count_enabled(TwoFactorMethod.EMAIL) == 1

    def test_disable_removes_rows(self, profiles, user):
        profiles.enable(user["user_id"], TwoFactorMethod.EMAIL)
        profiles.set_backup_codes(user["user_id"], ["h1", "h2"])
        profiles.disable(user["user_id"])

        profile = profiles.get(user["user_id"])
        assert profile.enabled is False
        assert profile.backup_codes == []

    def test_init_schema_is_idempotent(self, db_engine, profiles):
        SecurityProfileDB(engine=db_engine).init_schema()


class TestBackupCodeRows:
    """Hashed backup codes and single-use marking."""

    def test_mark_used_once(self, profiles, user, clock):
        profiles.set_backup_codes(user["user_id"], ["h1", "h2", "h3"])

        assert profiles.mark_backup_code_used(user["user_id"], 1) is True
        assert profiles.mark_backup_code_used(user["user_id"], 1) is False

        profile = profiles.get(user["user_id"])
        assert profile.backup_codes_used == {1}
        assert [c.index for c in profile.unused_backup_codes()] == [0, 2]

    def test_set_replaces_used_state(self, profiles, user):
        profiles.set_backup_codes(user["user_id"], ["h1"])
        profiles.mark_backup_code_used(user["user_id"], 0)
        profiles.set_backup_codes(user["user_id"], ["h9"])

        assert profiles.get(user["user_id"]).backup_codes_remaining == 1


class TestTrustedDeviceRows:
    """Trusted-device map persistence."""

    def test_replace_is_conditional(self, profiles, user):
        profiles.add_trusted_device(user["user_id"], "a", 100.0)

        assert profiles.replace_trusted_device(user["user_id"], "a", "b", 100.0) is True
        assert profiles.replace_trusted_device(user["user_id"], "a", "c", 100.0) is False
        assert profiles.get(user["user_id"]).trusted_devices == {"b": 100.0}

    def test_remove(self, profiles, user):
        profiles.add_trusted_device(user["user_id"], "a", 100.0)
        assert profiles.remove_trusted_device(user["user_id"], "a") is True
        assert profiles.remove_trusted_device(user["user_id"], "a") is False

    @staticmethod
    def stale_reads(profiles, user_id):
        """Make the next device read return the map as it is now, then read normally."""
        with profiles.get_session() as session:
            stale = [profiles._read_devices(session, user_id)]
        real = profiles._read_devices

        def read(session, uid):
            return stale.pop() if stale else real(session, uid)
        return patch.object(profiles, "_read_devices", side_effect=read)

    def test_rotation_from_stale_read_loses(self, profiles, user):
        user_id = user["user_id"]
        profiles.add_trusted_device(user_id, "a", 100.0)
        reads = self.stale_reads(profiles, user_id)

        assert profiles.replace_trusted_device(user_id, "a", "b", 100.0) is True
        with reads:
            assert profiles.replace_trusted_device(user_id, "a", "c", 100.0) is False

        assert profiles.get(user_id).trusted_devices == {"b": 100.0}

    def test_add_racing_rotation_keeps_both(self, profiles, user):
        user_id = user["user_id"]
        profiles.add_trusted_device(user_id, "a", 100.0)
        reads = self.stale_reads(profiles, user_id)

        profiles.replace_trusted_device(user_id, "a", "b", 100.0)
        with reads:
            profiles.add_trusted_device(user_id, "x", 200.0)

        assert profiles.get(user_id).trusted_devices == {"b": 100.0, "x": 200.0}

    def test_prune(self, profiles, user):
        user_id = user["user_id"]
        profiles.add_trusted_device(user_id, "old", 100.0)
        profiles.add_trusted_device(user_id, "new", 300.0)

        assert profiles.prune_trusted_devices(user_id, 200.0) == 1
        assert profiles.prune_trusted_devices(user_id, 200.0) == 0
        assert profiles.get(user_id).trusted_devices == {"new": 300.0}


class TestGraceAnchor:
    """forced_at is written once."""

    def test_first_anchor_wins(self, profiles, user):
        assert profiles.anchor_forced_at(user["user_id"], 1000.0) == 1000.0
        assert profiles.anchor_forced_at(user["user_id"], 2000.0) == 1000.0

    def test_set_forced_at_overrides(self, profiles, user):
        profiles.anchor_forced_at(user["user_id"], 1000.0)
        profiles.set_forced_at(user["user_id"], None)
        assert profiles.get(user["user_id"]).forced_at is None

    @pytest.mark.parametrize("method", [TwoFactorMethod.EMAIL, TwoFactorMethod.BOTH])
    def test_enable_clears_anchor(self, profiles, user, method):
        profiles.anchor_forced_at(user["user_id"], 1000.0)
        profiles.enable(user["user_id"], method, "JBSWY3DPEHPK3PXP")
        assert profiles.get(user["user_id"]).forced_at is None
