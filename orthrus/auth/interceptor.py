"""
Login Interceptor (authentication state machine).

Runs after the password check has succeeded and decides how the login
continues:

    CredentialsVerified
        -> no challenge needed      -> Authenticated | Blocked
        -> challenge issued         -> ChallengeIssued
    ChallengeIssued + submission
        -> verified                 -> Authenticated | Blocked
        -> failed                   -> Retry (challenge stays usable, possibly locked out)

Also exposes the account-side 2FA management operations (enable, disable,
backup codes, authenticator enrollment, status), since they share the same
collaborators and audit trail.
"""
import time
import secrets
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from ..config import TwoFactorConfig
from ..database.auth_db import AuthDB
from ..database.profile_db import SecurityProfileDB
from ..errors import (
    BLOCK_MESSAGES,
    AccountBlocked,
    BackupCodeInvalid,
    CodeExpired,
    CodeInvalid,
    InvalidMethod,
    LockedOut,
    MissingSecret,
    NoBackupCodes,
    RateLimited,
    SessionExpired,
    TransportInsecure,
    VerificationFailed,
)
from ..store.ephemeral import EphemeralStore
from ..utils.secrets import mask_secret
from .audit import (
    EVENT_BACKUP_CODES_GENERATED,
    EVENT_BLOCKED,
    EVENT_DEVICE_TRUSTED,
    EVENT_DEVICES_REVOKED,
    EVENT_DISABLED,
    EVENT_ENABLED,
    EVENT_FAILED,
    EVENT_LOCKED_OUT,
    EVENT_LOGIN_SUCCESS,
    EVENT_VERIFIED,
    SecurityLog,
)
from .codes import VerificationCodeEngine
from .device_trust import DeviceTrustManager, trust_cookie_name
from .lockout import LockoutTracker
from .models import (
    CODE_TYPE_AUTO,
    CODE_TYPE_BACKUP,
    Authenticated,
    Blocked,
    ChallengeIssued,
    LoginOrigin,
    PendingChallenge,
    RequestContext,
    Retry,
    TwoFactorMethod,
    is_privileged,
)
from .notifications import Notifier
from .policy import PolicyEngine
from .totp import setup_totp

logger = logging.getLogger(__name__)

CHALLENGE_COOKIE = "orthrus_2fa_token"

# Pending authenticator enrollment lifetime (seconds)
ENROLLMENT_TTL = 600

# Errors that count as a failed submission and leave the challenge usable
_RETRYABLE = (CodeExpired, CodeInvalid, NoBackupCodes, BackupCodeInvalid, VerificationFailed)


class LoginInterceptor:
    """
    Second-factor gate between password check and session creation.

    Example usage:
        outcome = interceptor.intercept_login_after_credentials(user, ctx)
        if isinstance(outcome, ChallengeIssued):
            ...  # ask the client for a code
            outcome = interceptor.submit_verification(token, "123456", ctx=ctx)
    """

    def __init__(
        self,
        store: EphemeralStore,
        profiles: SecurityProfileDB,
        accounts: AuthDB,
        codes: VerificationCodeEngine,
        lockout: LockoutTracker,
        device_trust: DeviceTrustManager,
        policy: PolicyEngine,
        config: TwoFactorConfig,
        audit: SecurityLog,
        notifier: Notifier,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.profiles = profiles
        self.accounts = accounts
        self.codes = codes
        self.lockout = lockout
        self.device_trust = device_trust
        self.policy = policy
        self.config = config
        self.audit = audit
        self.notifier = notifier
        self.clock = clock

    @staticmethod
    def _pending_key(token: str) -> str:
        return f"2fa:pending:{token}"

    @staticmethod
    def _enrollment_key(user_id: str) -> str:
        return f"2fa:totp_pending:{user_id}"

    def _require_secure(self, ctx: Optional[RequestContext]) -> None:
        if self.config.require_https and not (ctx and ctx.is_secure):
            raise TransportInsecure()

    # ============================================
    # Login flow
    # ============================================

    def intercept_login_after_credentials(
        self,
        user: Dict,
        ctx: RequestContext,
        origin: LoginOrigin = LoginOrigin.LOGIN,
    ) -> Union[Authenticated, ChallengeIssued, Blocked]:
        """
        Decide how a login continues once the password has been accepted.

        Args:
            user: User dict (needs "user_id", "email"; "role" for privilege checks).
            ctx: Current request context.
            origin: REGISTRATION skips the challenge (registration verifies itself).

        Returns:
            Authenticated, ChallengeIssued or Blocked.
        """
        user_id = str(user["user_id"])

        if origin == LoginOrigin.REGISTRATION:
            return self._complete_login(user_id, ctx)

        if self.config.admin_bypass and is_privileged(user):
            logger.info(f"2FA admin bypass for user {user_id}")
            return self._complete_login(user_id, ctx)

        profile = self.profiles.get(user_id)
        if not self.policy.should_challenge(user, ctx):
            # An enabled profile only skips the challenge via a trusted device
            return self._complete_login(user_id, ctx, trusted_device=profile.enabled)

        return self._issue_challenge(user, ctx)

    def _issue_challenge(self, user: Dict, ctx: RequestContext) -> ChallengeIssued:
        user_id = str(user["user_id"])
        profile = self.profiles.get(user_id)
        method = self.policy.resolve_method(user, profile)
        ttl = self.config.challenge_ttl

        token = secrets.token_hex(32)
        challenge = PendingChallenge(token=token, user_id=user_id, method=method, issued_at=self.clock())
        self.store.set(self._pending_key(token), challenge.to_dict(), ttl=ttl)

        ctx.carrier.set(
            CHALLENGE_COOKIE,
            token,
            max_age=ttl,
            secure=ctx.is_secure or self.config.require_https,
            httponly=True,
            samesite="lax",
        )

        email_sent = False
        if method.includes_email:
            email_sent = self._send_challenge_email(user)

        self.audit.challenge_issued(user_id, method.value, token, ctx)

        return ChallengeIssued(
            token=token,
            method=method,
            expires_in=ttl,
            setup_required=self.policy.setup_required(user, profile),
            email_sent=email_sent,
        )

    def _send_challenge_email(self, user: Dict) -> bool:
        try:
            return self.codes.issue_email_code(user)
        except RateLimited:
            # The code sent within the cooldown window is still valid
            logger.info(f"E-mail code for user {user['user_id']} not re-sent (cooldown active)")
            return False

    def _load_challenge(self, token: Optional[str]) -> PendingChallenge:
        if not token:
            raise SessionExpired()
        data = self.store.get(self._pending_key(token))
        if not data:
            raise SessionExpired()
        return PendingChallenge.from_dict(token, data)

    def _discard_challenge(self, token: str, ctx: Optional[RequestContext]) -> None:
        self.store.delete(self._pending_key(token))
        if ctx is not None:
            ctx.carrier.clear(CHALLENGE_COOKIE)

    def submit_verification(
        self,
        token: Optional[str],
        code: Optional[str],
        code_type: str = CODE_TYPE_AUTO,
        trust_device: bool = False,
        ctx: Optional[RequestContext] = None,
    ) -> Union[Authenticated, Retry, Blocked]:
        """
        Verify a code submitted against a pending challenge.

        Args:
            token: Challenge token (from the carrier or the request body).
            code: Code as typed by the user.
            code_type: "backup" forces the backup-code path; anything else
                routes by the challenge's method.
            trust_device: Issue device trust after success.
            ctx: Current request context.

        Returns:
            Authenticated, Retry (challenge still usable) or Blocked.

        Raises:
            SessionExpired: Unknown or expired challenge token.
        """
        challenge = self._load_challenge(token)
        user_id = challenge.user_id

        code = (code or "").strip()
        if not code:
            return Retry("empty_code", "Please enter a verification code.")

        details = {"method": challenge.method.value, "code_type": code_type}

        try:
            backup_codes = self._route_verification(challenge, code, code_type, ctx)
        except AccountBlocked as e:
            return self._block(user_id, e.reason, ctx, challenge)
        except LockedOut as e:
            self.audit.record(EVENT_LOCKED_OUT, user_id, details, ctx)
            return Retry(e.code, e.message)
        except _RETRYABLE as e:
            self.audit.record(EVENT_FAILED, user_id, dict(details, error=e.code), ctx)
            if self.lockout.is_locked_out(user_id):
                self.audit.record(EVENT_LOCKED_OUT, user_id, details, ctx)
            return Retry(e.code, e.message)

        self.audit.record(EVENT_VERIFIED, user_id, details, ctx)

        return self._complete_login(
            user_id,
            ctx,
            challenge=challenge,
            trust_device=trust_device,
            backup_codes=backup_codes,
        )

    def _route_verification(
        self,
        challenge: PendingChallenge,
        code: str,
        code_type: str,
        ctx: Optional[RequestContext],
    ) -> List[str]:
        """
        Dispatch a submission to the right verifier.

        Returns:
            Plaintext backup codes when the submission completed an enforced
            authenticator setup, otherwise an empty list.
        """
        user_id = challenge.user_id

        if code_type == CODE_TYPE_BACKUP:
            self.codes.verify_backup_code(user_id, code)
            return []

        method = challenge.method
        if method == TwoFactorMethod.EMAIL:
            self.codes.verify_email_code(user_id, code)
        elif method == TwoFactorMethod.TOTP:
            if challenge.setup_secret:
                return self._finish_enforced_setup(challenge, code, ctx)
            self.codes.verify_totp(user_id, code)
        elif method == TwoFactorMethod.BOTH:
            # Authenticator first, then e-mail; one failure is recorded per submission
            try:
                self.codes.verify_totp(user_id, code, record_failure=False)
            except (CodeInvalid, VerificationFailed):
                self.codes.verify_email_code(user_id, code)
        else:
            raise InvalidMethod(f"Unhandled 2FA method: {method.value}")
        return []

    def _block(
        self,
        user_id: str,
        reason: str,
        ctx: Optional[RequestContext],
        challenge: Optional[PendingChallenge] = None,
    ) -> Blocked:
        if challenge is not None:
            self._discard_challenge(challenge.token, ctx)
        self.audit.record(EVENT_BLOCKED, user_id, {"reason": reason}, ctx)
        logger.warning(f"Login blocked for user {user_id}: {reason}")
        return Blocked(reason=reason, message=BLOCK_MESSAGES.get(reason, ""))

    def _complete_login(
        self,
        user_id: str,
        ctx: Optional[RequestContext],
        challenge: Optional[PendingChallenge] = None,
        trust_device: bool = False,
        trusted_device: bool = False,
        backup_codes: Optional[List[str]] = None,
    ) -> Union[Authenticated, Blocked]:
        """Re-check eligibility, then establish the session."""
        reason = self.accounts.check_eligibility(user_id)
        if reason is not None:
            return self._block(user_id, reason, ctx, challenge)

        if challenge is not None:
            self._discard_challenge(challenge.token, ctx)
            self.codes.discard_email_code(user_id)

        if trust_device and ctx is not None and self.config.device_trust_enabled:
            self.device_trust.trust(user_id, ctx)
            self.audit.record(EVENT_DEVICE_TRUSTED, user_id, None, ctx)
            trusted_device = True

        session_token = self.accounts.create_session(user_id)
        self.accounts.update_last_login(user_id)
        self.audit.record(EVENT_LOGIN_SUCCESS, user_id, {"two_factor": challenge is not None}, ctx)

        user = self.accounts.get_user_by_id(user_id) or {"user_id": user_id}
        return Authenticated(
            user_id=user_id,
            session_token=session_token,
            setup_required=self.policy.setup_required(user),
            trusted_device=trusted_device,
            backup_codes=backup_codes or [],
        )

    def clear_challenge(self, token: Optional[str], ctx: Optional[RequestContext] = None) -> None:
        """Abandon a pending challenge (e.g. the user cancelled or logged out)."""
        if token:
            self.store.delete(self._pending_key(token))
            logger.debug(f"Pending challenge {mask_secret(token)} cleared")
        if ctx is not None:
            ctx.carrier.clear(CHALLENGE_COOKIE)

    def resend_email_code(self, token: Optional[str]) -> bool:
        """
        Send a fresh e-mail code for an active challenge.

        Raises:
            SessionExpired: Unknown or expired challenge.
            InvalidMethod: The challenge does not use e-mail codes.
            RateLimited: Cooldown still active.
        """
        challenge = self._load_challenge(token)
        if not challenge.method.includes_email:
            raise InvalidMethod("This verification does not use e-mail codes.")

        user = self.accounts.get_user_by_id(challenge.user_id)
        if user is None:
            raise SessionExpired()
        return self.codes.issue_email_code(user)

    # ============================================
    # Enforced authenticator setup during login
    # ============================================

    def begin_totp_setup(self, token: Optional[str], ctx: Optional[RequestContext]) -> Dict[str, str]:
        """
        Offer an authenticator secret for a TOTP challenge whose user has none.

        The secret is bound to the pending challenge; the next correct code
        enables TOTP and completes login.

        Returns:
            Dict with secret, provisioning_uri and qr_code_base64.
        """
        challenge = self._load_challenge(token)
        if challenge.method != TwoFactorMethod.TOTP:
            raise InvalidMethod("Authenticator setup is not required for this login.")

        profile = self.profiles.get(challenge.user_id)
        if profile.enabled and profile.totp_secret:
            raise InvalidMethod("An authenticator is already configured.")

        self._require_secure(ctx)

        user = self.accounts.get_user_by_id(challenge.user_id)
        if user is None:
            raise SessionExpired()

        secret, uri, qr_base64 = setup_totp(
            user["email"],
            issuer=self.config.issuer,
            digits=self.config.totp_code_length,
            period=self.config.totp_time_window,
        )

        challenge.setup_secret = secret
        remaining = int(challenge.issued_at + self.config.challenge_ttl - self.clock())
        self.store.set(self._pending_key(challenge.token), challenge.to_dict(), ttl=max(1, remaining))

        logger.info(f"Enforced authenticator setup started for user {challenge.user_id}")
        return {"secret": secret, "provisioning_uri": uri, "qr_code_base64": qr_base64}

    def _finish_enforced_setup(
        self,
        challenge: PendingChallenge,
        code: str,
        ctx: Optional[RequestContext],
    ) -> List[str]:
        user_id = challenge.user_id
        if self.lockout.is_locked_out(user_id):
            raise LockedOut()

        if not self.codes.check_totp(challenge.setup_secret, code):
            self.lockout.record_failed_attempt(user_id)
            raise CodeInvalid()

        # Nothing is saved for an account that can no longer log in
        reason = self.accounts.check_eligibility(user_id)
        if reason is not None:
            raise AccountBlocked(reason)

        user = self.accounts.get_user_by_id(user_id) or {"user_id": user_id}
        self.enable(user, TwoFactorMethod.TOTP, challenge.setup_secret, ctx)
        self.lockout.clear(user_id)
        self.profiles.set_last_used(user_id, self.clock())

        if not self.config.backup_enabled:
            return []
        return self.codes.generate_backup_codes(user_id)

    # ============================================
    # Account 2FA management
    # ============================================

    def enable(
        self,
        user: Dict,
        method: Union[TwoFactorMethod, str],
        totp_secret: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> None:
        """
        Enable 2FA for a user.

        Raises:
            InvalidMethod: Method is not email, totp or both.
            TransportInsecure: TOTP over a non-HTTPS request.
            MissingSecret: TOTP without a secret.
        """
        user_id = str(user["user_id"])
        if not isinstance(method, TwoFactorMethod):
            method = TwoFactorMethod.parse(method)
        if method not in (TwoFactorMethod.EMAIL, TwoFactorMethod.TOTP, TwoFactorMethod.BOTH):
            raise InvalidMethod()

        if method.includes_totp:
            self._require_secure(ctx)
            if not totp_secret:
                raise MissingSecret()

        self.profiles.enable(user_id, method, totp_secret)
        self.audit.record(EVENT_ENABLED, user_id, {"method": method.value}, ctx)

        if user.get("email"):
            self.notifier.send_setup_confirmation(user, method.value)

    def disable(self, user: Dict, ctx: Optional[RequestContext] = None) -> None:
        """Remove all 2FA configuration, backup codes and trusted devices."""
        user_id = str(user["user_id"])
        self.profiles.disable(user_id)
        self.codes.discard_email_code(user_id)
        self.store.delete(self._enrollment_key(user_id))
        if ctx is not None:
            ctx.carrier.clear(trust_cookie_name(user_id))
        self.audit.record(EVENT_DISABLED, user_id, None, ctx)

    def disable_method(
        self,
        user: Dict,
        method: Union[TwoFactorMethod, str],
        ctx: Optional[RequestContext] = None,
    ) -> TwoFactorMethod:
        """
        Turn off one method.

        From "both" the other method stays active; otherwise this is a full
        disable.

        Returns:
            The method still active afterwards (NONE if 2FA is now off).
        """
        user_id = str(user["user_id"])
        if not isinstance(method, TwoFactorMethod):
            method = TwoFactorMethod.parse(method)
        if method not in (TwoFactorMethod.EMAIL, TwoFactorMethod.TOTP):
            raise InvalidMethod()

        profile = self.profiles.get(user_id)
        current = profile.active_method

        if current == TwoFactorMethod.BOTH:
            if method == TwoFactorMethod.EMAIL:
                remaining = TwoFactorMethod.TOTP
                self.profiles.update_method(user_id, remaining, profile.totp_secret)
            else:
                remaining = TwoFactorMethod.EMAIL
                self.profiles.update_method(user_id, remaining, None)
            self.audit.record(EVENT_DISABLED, user_id, {"method": method.value, "remaining": remaining.value}, ctx)
            return remaining

        if current != method:
            raise InvalidMethod(f"{method.value} two-factor authentication is not enabled.")

        self.disable(user, ctx)
        return TwoFactorMethod.NONE

    def generate_backup_codes(
        self,
        user: Dict,
        count: Optional[int] = None,
        ctx: Optional[RequestContext] = None,
    ) -> List[str]:
        """
        Replace the user's backup codes.

        Returns:
            Plaintext codes (shown once).
        """
        user_id = str(user["user_id"])
        if not self.config.backup_enabled:
            raise InvalidMethod("Backup codes are disabled.")
        if not self.profiles.get(user_id).enabled:
            raise InvalidMethod("Enable two-factor authentication before generating backup codes.")

        codes = self.codes.generate_backup_codes(user_id, count)
        self.audit.record(EVENT_BACKUP_CODES_GENERATED, user_id, {"count": len(codes)}, ctx)
        return codes

    def start_totp_enrollment(self, user: Dict, ctx: Optional[RequestContext] = None) -> Dict[str, str]:
        """
        Begin authenticator enrollment from the account page.

        The secret is held for ENROLLMENT_TTL seconds until confirmed.

        Returns:
            Dict with secret, provisioning_uri and qr_code_base64.
        """
        self._require_secure(ctx)
        user_id = str(user["user_id"])

        secret, uri, qr_base64 = setup_totp(
            user["email"],
            issuer=self.config.issuer,
            digits=self.config.totp_code_length,
            period=self.config.totp_time_window,
        )
        self.store.set(self._enrollment_key(user_id), secret, ttl=ENROLLMENT_TTL)

        logger.info(f"Authenticator enrollment started for user {user_id}")
        return {"secret": secret, "provisioning_uri": uri, "qr_code_base64": qr_base64}

    def confirm_totp_enrollment(
        self,
        user: Dict,
        code: str,
        ctx: Optional[RequestContext] = None,
    ) -> List[str]:
        """
        Confirm enrollment with a code from the new authenticator.

        E-mail 2FA already active is kept, giving "both".

        Returns:
            Fresh plaintext backup codes (empty if backup codes are disabled).

        Raises:
            CodeExpired: No pending enrollment.
            CodeInvalid: Wrong code (the pending secret is kept for retries).
            LockedOut: Too many recent failures.
        """
        self._require_secure(ctx)
        user_id = str(user["user_id"])

        secret = self.store.get(self._enrollment_key(user_id))
        if not secret:
            raise CodeExpired("No pending authenticator setup found. Please start the setup again.")

        if self.lockout.is_locked_out(user_id):
            raise LockedOut()

        if not self.codes.check_totp(secret, code):
            self.lockout.record_failed_attempt(user_id)
            raise CodeInvalid()

        self.store.delete(self._enrollment_key(user_id))

        profile = self.profiles.get(user_id)
        method = TwoFactorMethod.BOTH if profile.active_method.includes_email else TwoFactorMethod.TOTP
        self.enable(user, method, secret, ctx)
        self.lockout.clear(user_id)

        if not self.config.backup_enabled:
            return []
        return self.generate_backup_codes(user, ctx=ctx)

    def revoke_devices(self, user: Dict, ctx: Optional[RequestContext] = None) -> None:
        user_id = str(user["user_id"])
        self.device_trust.revoke_all(user_id, ctx)
        self.audit.record(EVENT_DEVICES_REVOKED, user_id, None, ctx)

    def status(self, user: Dict) -> Dict[str, Any]:
        """Summary of a user's 2FA state for the account page."""
        user_id = str(user["user_id"])
        profile = self.profiles.get(user_id)
        now = self.clock()

        required = self.policy.is_required(user)
        grace_days = None
        if required and not profile.enabled:
            # Read-only: the grace period is anchored at login, not here
            if profile.forced_at is None:
                grace_days = self.config.grace_period_days
            else:
                grace_days = self.policy.remaining_grace_days(profile.forced_at)

        return {
            "enabled": profile.enabled,
            "method": profile.active_method.value,
            "required": required,
            "required_method": self.policy.required_method(user).value,
            "available_methods": [m.value for m in self.policy.available_methods()],
            "setup_required": self.policy.setup_required(user, profile),
            "grace_days_remaining": grace_days,
            "backup_codes_remaining": profile.backup_codes_remaining,
            "trusted_devices": sum(1 for expires in profile.trusted_devices.values() if expires > now),
            "last_used_at": profile.last_used_at,
            "locked_out": self.lockout.is_locked_out(user_id),
        }
