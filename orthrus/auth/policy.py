"""
2FA Policy Engine.

Decides whether a login must be challenged, which method the challenge
uses, and how much of the setup grace period a user has left.
"""
import math
import time
import logging
from typing import Callable, Dict, List, Optional

from ..config import (
    METHOD_DISABLED,
    METHOD_REQUIRED_ADMIN,
    METHOD_REQUIRED_ALL,
    TwoFactorConfig,
)
from ..database.profile_db import SecurityProfileDB
from .device_trust import DeviceTrustManager
from .models import RequestContext, TwoFactorMethod, UserSecurityProfile, is_privileged

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class PolicyEngine:
    """
    Site policy evaluation for a single user.

    Users are plain dicts with at least "user_id"; privilege checks use
    "role"/"is_admin" (see is_privileged).
    """

    def __init__(
        self,
        profiles: SecurityProfileDB,
        device_trust: DeviceTrustManager,
        config: TwoFactorConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.profiles = profiles
        self.device_trust = device_trust
        self.config = config
        self.clock = clock

    # ==========================================
    # Requirement
    # ==========================================

    def _mandates(self, setting: str, user: Dict) -> bool:
        if setting == METHOD_REQUIRED_ALL:
            return True
        return setting == METHOD_REQUIRED_ADMIN and is_privileged(user)

    def is_required(self, user: Dict) -> bool:
        """True if site policy makes 2FA mandatory for this user."""
        return (
            self._mandates(self.config.email_method, user)
            or self._mandates(self.config.totp_method, user)
        )

    def required_method(self, user: Dict) -> TwoFactorMethod:
        """
        Method the site mandates for this user.

        TOTP wins when both settings mandate 2FA.
        """
        if self._mandates(self.config.totp_method, user):
            return TwoFactorMethod.TOTP
        if self._mandates(self.config.email_method, user):
            return TwoFactorMethod.EMAIL
        return TwoFactorMethod.NONE

    def available_methods(self) -> List[TwoFactorMethod]:
        methods = []
        if self.config.email_method != METHOD_DISABLED:
            methods.append(TwoFactorMethod.EMAIL)
        if self.config.totp_method != METHOD_DISABLED:
            methods.append(TwoFactorMethod.TOTP)
        return methods

    def resolve_method(self, user: Dict, profile: Optional[UserSecurityProfile] = None) -> TwoFactorMethod:
        """Challenge method: the user's own, else the site-required one."""
        if profile is None:
            profile = self.profiles.get(str(user["user_id"]))
        if profile.active_method != TwoFactorMethod.NONE:
            return profile.active_method
        return self.required_method(user)

    def setup_required(self, user: Dict, profile: Optional[UserSecurityProfile] = None) -> bool:
        """True when the site mandates TOTP and the user has no authenticator yet."""
        if self.required_method(user) != TwoFactorMethod.TOTP:
            return False
        if profile is None:
            profile = self.profiles.get(str(user["user_id"]))
        return not (profile.enabled and profile.method.includes_totp and profile.totp_secret)

    # ==========================================
    # Grace period
    # ==========================================

    def ensure_anchored(self, user: Dict, profile: Optional[UserSecurityProfile] = None) -> Optional[float]:
        """
        Record when a required-but-unconfigured user was first seen.

        Returns:
            The forced_at anchor, or None if the user is not in that state.
        """
        user_id = str(user["user_id"])
        if profile is None:
            profile = self.profiles.get(user_id)

        if profile.forced_at is not None:
            return profile.forced_at

        if profile.enabled or not self.is_required(user):
            return None

        forced_at = self.profiles.anchor_forced_at(user_id, self.clock())
        profile.forced_at = forced_at
        logger.info(f"2FA grace period started for user {user_id}")
        return forced_at

    def remaining_grace_days(self, forced_at: Optional[float]) -> int:
        """Whole days of grace left for an anchor (ceiling, never negative)."""
        if forced_at is None:
            return 0
        grace_end = forced_at + self.config.grace_period_days * SECONDS_PER_DAY
        days_left = math.ceil((grace_end - self.clock()) / SECONDS_PER_DAY)
        return max(0, days_left)

    def grace_period_remaining(self, user: Dict, profile: Optional[UserSecurityProfile] = None) -> int:
        return self.remaining_grace_days(self.ensure_anchored(user, profile))

    # ==========================================
    # Challenge decision
    # ==========================================

    def should_challenge(self, user: Dict, ctx: RequestContext) -> bool:
        """
        Decide whether this login must pass a second factor.

        Users without 2FA are only challenged once a mandatory requirement's
        grace period has run out (to force setup). Users with 2FA are
        challenged unless the request presents a valid device trust token.
        """
        user_id = str(user["user_id"])
        profile = self.profiles.get(user_id)

        if not profile.enabled:
            if self.is_required(user) and self.grace_period_remaining(user, profile) <= 0:
                return True
            return False

        if self.device_trust.is_trusted(user_id, ctx):
            return False

        return True
