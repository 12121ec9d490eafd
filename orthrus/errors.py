"""
Error taxonomy for the two-factor layer.

Every error carries a stable machine code (used by the API and UI) and a
user-displayable message. Services raise these; only the API layer turns
them into HTTP responses.
"""
from typing import Optional


class TwoFactorError(Exception):
    """Base class for all 2FA errors."""

    code = "verification_failed"
    message = "Verification failed. Please try again."

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ChallengeRequired(TwoFactorError):
    """Control-flow signal: login must continue at the second-factor step."""

    code = "challenge_required"
    message = "Two-factor authentication required."


class CodeExpired(TwoFactorError):
    code = "code_expired"
    message = "Verification code has expired. Please request a new code."


class CodeInvalid(TwoFactorError):
    code = "invalid_code"
    message = "Invalid verification code. Please try again."


class LockedOut(TwoFactorError):
    code = "locked_out"
    message = "Too many failed attempts. Please try again later."


class NoBackupCodes(TwoFactorError):
    code = "no_backup_codes"
    message = "No backup codes have been generated for this account."


class BackupCodeInvalid(TwoFactorError):
    code = "invalid_backup_code"
    message = "Invalid backup code or code has already been used."


class MissingSecret(TwoFactorError):
    code = "missing_secret"
    message = "TOTP secret is required."


class TransportInsecure(TwoFactorError):
    code = "https_required"
    message = "Authenticator setup requires a secure (HTTPS) connection."


class InvalidMethod(TwoFactorError):
    code = "invalid_method"
    message = "Invalid 2FA method."


class VerificationFailed(TwoFactorError):
    """Generic failure that must not reveal configuration details."""

    code = "verification_failed"
    message = "Verification failed. Please try again."


class SessionExpired(TwoFactorError):
    """The pending challenge is unknown or its TTL elapsed."""

    code = "session_expired"
    message = "Session expired. Please log in again."


class RateLimited(TwoFactorError):
    code = "rate_limited"
    message = "Please wait before requesting another verification code."

    def __init__(self, message: Optional[str] = None, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class AccountBlocked(TwoFactorError):
    """Eligibility re-check failed (disabled, expired, unverified, pending approval)."""

    code = "account_blocked"

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or BLOCK_MESSAGES.get(reason, "Your account cannot log in right now."))


class StorageFailure(TwoFactorError):
    """The ephemeral store or the profile store is unavailable."""

    code = "storage_failure"
    message = "Security storage is temporarily unavailable. Please try again."


# Blocking reasons reported by the eligibility provider
REASON_DISABLED = "user_disabled"
REASON_EXPIRED = "account_expired"
REASON_UNVERIFIED = "email_unverified"
REASON_PENDING_APPROVAL = "pending_approval"

BLOCK_MESSAGES = {
    REASON_DISABLED: "Account is disabled.",
    REASON_EXPIRED: "Account has expired.",
    REASON_UNVERIFIED: "Please verify your e-mail address before logging in.",
    REASON_PENDING_APPROVAL: "Your account is awaiting approval.",
}
