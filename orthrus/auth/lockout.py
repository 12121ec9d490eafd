"""
Failed-attempt tracking and lockout for second-factor verification.
"""
import logging

from ..config import TwoFactorConfig
from ..store.ephemeral import EphemeralStore

logger = logging.getLogger(__name__)


class LockoutTracker:
    """
    Per-user failure counter with a sliding window.

    Every failure restarts the window TTL. Once the counter reaches the
    configured maximum a lock flag is written with the same TTL; both keys
    disappear on their own when the window elapses, or together on clear().
    """

    def __init__(self, store: EphemeralStore, config: TwoFactorConfig):
        self.store = store
        self.config = config

    @staticmethod
    def _attempts_key(user_id: str) -> str:
        return f"2fa:attempts:{user_id}"

    @staticmethod
    def _lockout_key(user_id: str) -> str:
        return f"2fa:lockout:{user_id}"

    def record_failed_attempt(self, user_id: str) -> bool:
        """
        Record a failed verification.

        Returns:
            True if the user is now locked out.
        """
        window = self.config.rate_window_seconds
        attempts = self.store.incr(self._attempts_key(user_id), window)

        if attempts >= self.config.lockout_attempts:
            self.store.set(self._lockout_key(user_id), True, ttl=window)
            logger.warning(f"2FA lockout for user {user_id} after {attempts} failed attempts")
            return True

        logger.info(f"2FA failed attempt {attempts}/{self.config.lockout_attempts} for user {user_id}")
        return False

    def is_locked_out(self, user_id: str) -> bool:
        return bool(self.store.get(self._lockout_key(user_id)))

    def attempt_count(self, user_id: str) -> int:
        return int(self.store.get(self._attempts_key(user_id)) or 0)

    def clear(self, user_id: str) -> None:
        """Remove counter and lock flag."""
        self.store.delete(self._attempts_key(user_id))
        self.store.delete(self._lockout_key(user_id))
