"""
Verification Code Engine.

Issues and checks the three kinds of second factor:
- E-mail one-time codes (numeric, hashed at rest, short TTL)
- TOTP authenticator codes (RFC 6238)
- Backup codes (single-use, hashed at rest)

SECURITY NOTES:
- Plaintext e-mail and backup codes exist only in memory while being sent
  or displayed; storage only ever sees bcrypt hashes.
- E-mail verification performs exactly one bcrypt check per call, whether
  or not a code exists, so response time does not reveal code state.
"""
import re
import time
import secrets
import logging
from typing import Callable, Dict, List, Optional

from ..config import TwoFactorConfig
from ..database.profile_db import SecurityProfileDB
from ..errors import (
    BackupCodeInvalid,
    CodeExpired,
    CodeInvalid,
    LockedOut,
    NoBackupCodes,
    RateLimited,
    VerificationFailed,
)
from ..store.ephemeral import EphemeralStore
from .hashing import BcryptHasher
from .lockout import LockoutTracker
from .notifications import Notifier
from .totp import TOTPProvider

logger = logging.getLogger(__name__)

# No 0/O or 1/I/L so codes survive being read aloud or handwritten
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

# How long the per-user issuance lock is waited for
ISSUE_LOCK_TIMEOUT = 1.0

_NON_DIGITS = re.compile(r"[^0-9]")
_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def generate_numeric_code(length: int) -> str:
    """Uniformly random zero-padded numeric code."""
    return str(secrets.randbelow(10 ** length)).zfill(length)


def generate_backup_code(length: int) -> str:
    return "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))


def normalize_backup_code(code: str) -> str:
    """Uppercase and drop everything but letters and digits (dashes, spaces)."""
    return _NON_ALNUM.sub("", (code or "").upper())


def format_backup_code(code: str) -> str:
    """Split a code into dash-separated groups of four for display."""
    return "-".join(code[i:i + 4] for i in range(0, len(code), 4))


class VerificationCodeEngine:
    """
    Issue and verify second-factor codes for a user.

    Example usage:
        engine = VerificationCodeEngine(store, profiles, lockout, hasher,
                                        TOTPProvider(), config, notifier)
        engine.issue_email_code(user)
        engine.verify_email_code(user_id, "123456")
    """

    def __init__(
        self,
        store: EphemeralStore,
        profiles: SecurityProfileDB,
        lockout: LockoutTracker,
        hasher: BcryptHasher,
        totp_provider: TOTPProvider,
        config: TwoFactorConfig,
        notifier: Notifier,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.profiles = profiles
        self.lockout = lockout
        self.hasher = hasher
        self.totp_provider = totp_provider
        self.config = config
        self.notifier = notifier
        self.clock = clock

    @staticmethod
    def _code_key(user_id: str) -> str:
        return f"2fa:email_code:{user_id}"

    @staticmethod
    def _rate_key(user_id: str) -> str:
        return f"2fa:email_rate:{user_id}"

    def _succeed(self, user_id: str) -> None:
        self.lockout.clear(user_id)
        self.profiles.set_last_used(user_id, self.clock())

    # ==========================================
    # E-mail codes
    # ==========================================

    def issue_email_code(self, user: Dict) -> bool:
        """
        Generate, store and send a fresh e-mail code.

        At most one code is issued per user per cooldown window; the named
        lock serializes concurrent requests for the same user.

        Args:
            user: User dict with "user_id" and "email".

        Returns:
            True if the notification was handed off successfully.

        Raises:
            RateLimited: Another request holds the lock or the cooldown is active.
        """
        user_id = str(user["user_id"])
        cooldown = self.config.email_cooldown_seconds
        expiration = self.config.email_expiration_seconds

        with self.store.lock(f"2fa_{user_id}", timeout=ISSUE_LOCK_TIMEOUT) as acquired:
            if not acquired:
                raise RateLimited(retry_after=cooldown)

            if not self.store.insert_if_absent(self._rate_key(user_id), self.clock(), ttl=cooldown):
                raise RateLimited(retry_after=cooldown)

            code = generate_numeric_code(self.config.email_code_length)
            self.store.set(
                self._code_key(user_id),
                {"hash": self.hasher.hash(code), "issued_at": self.clock()},
                ttl=expiration,
            )

        sent = self.notifier.send_verification_code(user, code, expiration // 60)
        if sent:
            logger.info(f"E-mail verification code issued for user {user_id}")
        else:
            logger.error(f"E-mail verification code for user {user_id} could not be delivered")
        return sent

    def verify_email_code(self, user_id: str, code: str, record_failure: bool = True) -> None:
        """
        Verify a submitted e-mail code.

        The submitted value is normalized to the configured length before
        hashing and the bcrypt check always runs once (against a dummy hash
        when no code exists). Only after that check does the method decide
        which error to report.

        Raises:
            LockedOut: Too many recent failures.
            CodeExpired: No live code for the user.
            CodeInvalid: Code does not match (or had the wrong length).
        """
        if self.lockout.is_locked_out(user_id):
            raise LockedOut()

        length = self.config.email_code_length
        digits = _NON_DIGITS.sub("", code or "")
        submitted_length = len(digits)
        candidate = digits.zfill(length)[:length]

        stored = self.store.get(self._code_key(user_id))
        code_exists = bool(stored) and bool(stored.get("hash"))
        digest = stored["hash"] if code_exists else self.hasher.dummy_hash

        matched = self.hasher.verify(candidate, digest)

        if not code_exists:
            if record_failure:
                self.lockout.record_failed_attempt(user_id)
            raise CodeExpired()

        if submitted_length != length or not matched:
            if record_failure:
                self.lockout.record_failed_attempt(user_id)
            raise CodeInvalid()

        # A concurrent request may have consumed the code after our read
        if not self.store.delete(self._code_key(user_id)):
            if record_failure:
                self.lockout.record_failed_attempt(user_id)
            raise CodeExpired()

        self._succeed(user_id)
        logger.info(f"E-mail code verified for user {user_id}")

    def discard_email_code(self, user_id: str) -> None:
        self.store.delete(self._code_key(user_id))

    # ==========================================
    # TOTP
    # ==========================================

    def check_totp(self, secret: str, code: str) -> bool:
        """Pure TOTP check against an explicit secret with site settings."""
        return self.totp_provider.verify(
            secret,
            code,
            tolerance=self.config.totp_tolerance,
            digits=self.config.totp_code_length,
            period=self.config.totp_time_window,
        )

    def verify_totp(self, user_id: str, code: str, record_failure: bool = True) -> None:
        """
        Verify an authenticator code against the user's stored secret.

        Raises:
            LockedOut: Too many recent failures.
            VerificationFailed: No secret configured (generic on purpose).
            CodeInvalid: Code does not match.
        """
        if self.lockout.is_locked_out(user_id):
            raise LockedOut()

        profile = self.profiles.get(user_id)
        if not profile.totp_secret:
            if record_failure:
                self.lockout.record_failed_attempt(user_id)
            raise VerificationFailed()

        if not self.check_totp(profile.totp_secret, code):
            if record_failure:
                self.lockout.record_failed_attempt(user_id)
            raise CodeInvalid()

        self._succeed(user_id)
        logger.info(f"TOTP code verified for user {user_id}")

    # ==========================================
    # Backup codes
    # ==========================================

    def verify_backup_code(self, user_id: str, code: str) -> int:
        """
        Verify and consume a backup code.

        The lock flag is not consulted here: backup codes are the recovery
        path for users locked out of their primary method. Failures still
        count toward the lockout window.

        Returns:
            Number of unused backup codes left.

        Raises:
            NoBackupCodes: No codes were ever generated.
            BackupCodeInvalid: No unused code matches.
        """
        profile = self.profiles.get(user_id)
        if not profile.backup_codes:
            raise NoBackupCodes()

        normalized = normalize_backup_code(code)
        if normalized:
            for backup in profile.unused_backup_codes():
                if not self.hasher.verify(normalized, backup.hash):
                    continue
                if not self.profiles.mark_backup_code_used(user_id, backup.index):
                    # Consumed by a concurrent request
                    break
                self._succeed(user_id)
                remaining = profile.backup_codes_remaining - 1
                logger.info(f"Backup code used for user {user_id} ({remaining} remaining)")
                return remaining

        self.lockout.record_failed_attempt(user_id)
        raise BackupCodeInvalid()

    def generate_backup_codes(self, user_id: str, count: Optional[int] = None) -> List[str]:
        """
        Generate a fresh set of backup codes, replacing any previous set.

        Returns:
            Plaintext codes. Shown to the user once; only hashes are kept.
        """
        if count is None:
            count = self.config.backup_count
        length = self.config.backup_length

        codes = [generate_backup_code(length) for _ in range(count)]
        self.profiles.set_backup_codes(user_id, [self.hasher.hash(c) for c in codes])

        logger.info(f"Generated {count} backup codes for user {user_id}")
        return codes
