"""
Slow hashing for short-lived secrets (e-mail codes, backup codes).
"""
import secrets
import logging
from typing import Optional

import bcrypt

logger = logging.getLogger(__name__)


class BcryptHasher:
    """
    Password-hash provider backed by bcrypt.

    bcrypt's checkpw is constant-time with respect to the candidate, and its
    cost makes offline guessing of 6-digit codes from a leaked hash costly.
    """

    def __init__(self, rounds: int = 10):
        self.rounds = rounds
        self._dummy_hash: Optional[str] = None

    def hash(self, plaintext: str) -> str:
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(plaintext.encode('utf-8'), salt).decode('utf-8')

    def verify(self, plaintext: str, digest: str) -> bool:
        try:
            return bcrypt.checkpw(plaintext.encode('utf-8'), digest.encode('utf-8'))
        except ValueError:
            # Malformed digest in storage
            logger.warning("Stored hash is not a valid bcrypt digest")
            return False

    @property
    def dummy_hash(self) -> str:
        """
        Hash of a random throwaway value with the same cost factor.

        Verified against when no real code exists so both paths pay for one
        full bcrypt check.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(f"dummy_2fa_timing_protection_{secrets.token_hex(16)}")
        return self._dummy_hash
