"""
Device Trust Manager.

"Remember this device" support: after a successful second factor the client
may receive a long-lived opaque token that skips the challenge on later
logins. Only the SHA-256 of the token is stored server-side, and the token
is replaced with a fresh one every time it is used.
"""
import time
import hashlib
import secrets
import logging
from typing import Callable, Optional

from ..config import TwoFactorConfig
from ..database.profile_db import SecurityProfileDB
from .models import RequestContext

logger = logging.getLogger(__name__)

TRUST_COOKIE_PREFIX = "orthrus_2fa_trust_"


def hash_device_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def trust_cookie_name(user_id: str) -> str:
    """Trust credentials are scoped per user so shared browsers stay separate."""
    return f"{TRUST_COOKIE_PREFIX}{user_id}"


class DeviceTrustManager:
    """Issue, check, rotate and revoke device trust tokens."""

    def __init__(
        self,
        profiles: SecurityProfileDB,
        config: TwoFactorConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.profiles = profiles
        self.config = config
        self.clock = clock

    def _issue(self, ctx: RequestContext, user_id: str, token: str, max_age: float) -> None:
        if not ctx.is_secure:
            logger.warning(f"Issuing device trust for user {user_id} over an insecure request")
        ctx.carrier.set(
            trust_cookie_name(user_id),
            token,
            max_age=int(max_age),
            secure=True,
            httponly=True,
            samesite="lax",
        )

    def is_trusted(self, user_id: str, ctx: RequestContext) -> bool:
        """
        Check the presented trust token and rotate it on success.

        The replacement keeps the remaining lifetime of the old token, so
        rotation never extends trust.

        Returns:
            True if the device is trusted for this user.
        """
        if not self.config.device_trust_enabled:
            return False

        cookie_name = trust_cookie_name(user_id)
        token = ctx.carrier.get(cookie_name)
        if not token:
            return False

        token_hash = hash_device_token(token)
        expires_at = self.profiles.get(user_id).trusted_devices.get(token_hash)
        if expires_at is None:
            ctx.carrier.clear(cookie_name)
            return False

        now = self.clock()
        if expires_at <= now:
            self.profiles.remove_trusted_device(user_id, token_hash)
            ctx.carrier.clear(cookie_name)
            logger.info(f"Expired device trust removed for user {user_id}")
            return False

        new_token = secrets.token_hex(32)
        if not self.profiles.replace_trusted_device(user_id, token_hash, hash_device_token(new_token), expires_at):
            # Another request rotated this token first
            return False

        self._issue(ctx, user_id, new_token, expires_at - now)
        logger.info(f"Trusted device recognized for user {user_id}")
        return True

    def trust(self, user_id: str, ctx: RequestContext, duration: Optional[int] = None) -> str:
        """
        Trust the current device.

        Args:
            duration: Seconds of trust (defaults to the configured days).

        Returns:
            The raw token (also issued through the carrier).
        """
        if duration is None:
            duration = self.config.device_trust_seconds

        now = self.clock()
        self.profiles.prune_trusted_devices(user_id, now)

        token = secrets.token_hex(32)
        self.profiles.add_trusted_device(user_id, hash_device_token(token), now + duration)
        self._issue(ctx, user_id, token, duration)

        logger.info(f"Device trusted for user {user_id} ({duration // 86400} days)")
        return token

    def prune_expired(self, user_id: str) -> int:
        return self.profiles.prune_trusted_devices(user_id, self.clock())

    def revoke_all(self, user_id: str, ctx: Optional[RequestContext] = None) -> None:
        """Forget every trusted device for the user."""
        self.profiles.clear_trusted_devices(user_id)
        if ctx is not None:
            ctx.carrier.clear(trust_cookie_name(user_id))
        logger.info(f"All trusted devices revoked for user {user_id}")
