"""
Tests for the 2FA policy engine.

Covers:
- Required-method resolution per site setting and role
- Grace period anchoring and countdown
- Challenge decisions
"""
import pytest

from orthrus.config import TwoFactorConfig
from orthrus.auth.device_trust import DeviceTrustManager
from orthrus.auth.models import TwoFactorMethod
from orthrus.auth.policy import PolicyEngine


DAY = 86400


def build_policy(profiles, clock, **overrides):
    config = TwoFactorConfig(overrides)
    return PolicyEngine(profiles, DeviceTrustManager(profiles, config, clock=clock), config, clock=clock)


class TestRequirement:
    """Which method the site mandates."""

    def test_optional_requires_nothing(self, profiles, clock, user):
        policy = build_policy(profiles, clock)
        assert policy.is_required(user) is False
        assert policy.required_method(user) == TwoFactorMethod.NONE

    def test_required_all(self, profiles, clock, user):
        policy = build_policy(profiles, clock, email_method="required_all")
        assert policy.is_required(user) is True
        assert policy.required_method(user) == TwoFactorMethod.EMAIL

    def test_required_admin_only_applies_to_admins(self, profiles, clock, make_user):
        policy = build_policy(profiles, clock, totp_method="required_admin")
        assert policy.is_required(make_user(role="user")) is False
        assert policy.required_method(make_user(role="admin")) == TwoFactorMethod.TOTP

    def test_totp_wins_when_both_required(self, profiles, clock, user):
        policy = build_policy(profiles, clock, email_method="required_all", totp_method="required_all")
        assert policy.required_method(user) == TwoFactorMethod.TOTP

    def test_available_methods(self, profiles, clock):
        policy = build_policy(profiles, clock, email_method="disabled")
        assert policy.available_methods() == [TwoFactorMethod.TOTP]

    def test_unknown_setting_is_disabled(self, profiles, clock, user):
        policy = build_policy(profiles, clock, email_method="sometimes")
        assert policy.available_methods() == [TwoFactorMethod.TOTP]
        assert policy.is_required(user) is False

    def test_resolve_prefers_user_method(self, profiles, clock, email_user):
        policy = build_policy(profiles, clock, totp_method="required_all")
        assert policy.resolve_method(email_user) == TwoFactorMethod.EMAIL

    def test_setup_required(self, profiles, clock, user, totp_user):
        policy = build_policy(profiles, clock, totp_method="required_all")
        assert policy.setup_required(user) is True
        assert policy.setup_required(totp_user) is False


class TestGracePeriod:
    """Countdown for required-but-unconfigured users."""

    def test_admin_under_required_admin(self, profiles, clock, make_user, ctx):
        policy = build_policy(profiles, clock, totp_method="required_admin", grace_period=7)
        admin = make_user(role="admin")

        # Day 0: anchor recorded, full grace left, no challenge
        assert policy.should_challenge(admin, ctx) is False
        anchor = profiles.get(admin["user_id"]).forced_at
        assert anchor == clock()
        assert policy.grace_period_remaining(admin) == 7

        # Day 6.5: half a day left rounds up
        clock.advance(6.5 * DAY)
        assert policy.grace_period_remaining(admin) == 1
        assert policy.should_challenge(admin, ctx) is False

        # Day 7+: grace over, challenge to force setup
        clock.advance(0.5 * DAY + 1)
        assert policy.grace_period_remaining(admin) == 0
        assert policy.should_challenge(admin, ctx) is True

        # The anchor never moves
        assert profiles.get(admin["user_id"]).forced_at == anchor

    def test_regular_user_not_anchored(self, profiles, clock, user, ctx):
        policy = build_policy(profiles, clock, totp_method="required_admin")
        assert policy.should_challenge(user, ctx) is False
        assert profiles.get(user["user_id"]).forced_at is None

    def test_zero_grace_challenges_immediately(self, profiles, clock, user, ctx):
        policy = build_policy(profiles, clock, email_method="required_all", grace_period=0)
        assert policy.should_challenge(user, ctx) is True

    def test_enabling_clears_anchor(self, profiles, clock, user):
        policy = build_policy(profiles, clock, email_method="required_all")
        policy.grace_period_remaining(user)
        assert profiles.get(user["user_id"]).forced_at is not None

        profiles.enable(user["user_id"], TwoFactorMethod.EMAIL)
        assert profiles.get(user["user_id"]).forced_at is None

    @pytest.mark.parametrize("elapsed_days,expected", [(0, 7), (0.1, 7), (1, 6), (6.99, 1), (7, 0), (30, 0)])
    def test_remaining_days_round_up(self, profiles, clock, elapsed_days, expected):
        policy = build_policy(profiles, clock, grace_period=7)
        anchor = clock()
        clock.advance(elapsed_days * DAY)
        assert policy.remaining_grace_days(anchor) == expected


class TestChallengeDecision:
    """should_challenge for users with 2FA configured."""

    def test_enabled_user_is_challenged(self, profiles, clock, email_user, ctx):
        assert build_policy(profiles, clock).should_challenge(email_user, ctx) is True

    def test_trusted_device_skips_challenge(self, profiles, clock, email_user, ctx):
        policy = build_policy(profiles, clock)
        policy.device_trust.trust(email_user["user_id"], ctx)
        assert policy.should_challenge(email_user, ctx) is False

    def test_user_without_2fa_on_optional_site(self, profiles, clock, user, ctx):
        assert build_policy(profiles, clock).should_challenge(user, ctx) is False
