"""
Two-Factor Endpoints.

Login-time challenge handling (/auth/2fa/*) and account-side 2FA
management (/auth/mfa/*).
"""
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ..models import (
    TokenResponse,
    TwoFactorVerifyRequest,
    ChallengeTokenRequest,
    MFASetupResponse,
    MFAVerifyRequest,
    BackupCodesRequest,
    BackupCodesResponse,
    MFAStatus,
    MessageResponse,
    ErrorResponse,
)
from ..deps import get_db, get_current_user, get_interceptor, get_request_context
from .auth import OUTCOME_RESPONSES, render_outcome
from ...database.auth_db import AuthDB
from ...auth.codes import format_backup_code
from ...auth.interceptor import CHALLENGE_COOKIE, LoginInterceptor
from ...auth.models import RequestContext, TwoFactorMethod

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Two-Factor Authentication"])


def _challenge_token(ctx: RequestContext, explicit: Optional[str]) -> Optional[str]:
    """Challenge token from the request body, falling back to the cookie."""
    return explicit or ctx.carrier.get(CHALLENGE_COOKIE)


# ============================================
# Login challenge
# ============================================

@router.post(
    "/2fa/verify",
    responses={200: {"model": TokenResponse}, **OUTCOME_RESPONSES},
)
async def verify_challenge(
    submission: TwoFactorVerifyRequest,
    response: Response,
    db: AuthDB = Depends(get_db),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Submit a second-factor code for the pending login.

    Use code_type "backup" to enter a backup code (format: XXXX-XXXX).
    Set trust_device to skip the second factor on this device for a while.
    """
    outcome = interceptor.submit_verification(
        _challenge_token(ctx, submission.challenge_token),
        submission.code,
        code_type=submission.code_type,
        trust_device=submission.trust_device,
        ctx=ctx,
    )
    return render_outcome(outcome, response, db, interceptor)


@router.post(
    "/2fa/resend",
    response_model=MessageResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Challenge expired"},
        429: {"model": ErrorResponse, "description": "Cooldown active"},
    },
)
async def resend_code(
    body: Optional[ChallengeTokenRequest] = None,
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Send a new e-mail code for the pending login.

    One code per minute at most.
    """
    token = _challenge_token(ctx, body.challenge_token if body else None)
    if not interceptor.resend_email_code(token):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Verification e-mail could not be sent. Please try again later.",
        )
    return MessageResponse(message="A new verification code has been sent.")


@router.post("/2fa/setup", response_model=MFASetupResponse)
async def setup_authenticator_for_login(
    body: Optional[ChallengeTokenRequest] = None,
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Set up an authenticator during login when the site requires one.

    Scan the QR code, then submit a code to /auth/2fa/verify; the response
    contains backup codes.
    """
    token = _challenge_token(ctx, body.challenge_token if body else None)
    setup = interceptor.begin_totp_setup(token, ctx)
    return MFASetupResponse(**setup)


@router.delete("/2fa/challenge", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_challenge(
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """Abandon the pending login."""
    interceptor.clear_challenge(ctx.carrier.get(CHALLENGE_COOKIE), ctx)
    return None


# ============================================
# Account 2FA management
# ============================================

@router.get("/mfa", response_model=MFAStatus)
async def mfa_status(
    user: Dict = Depends(get_current_user),
    interceptor: LoginInterceptor = Depends(get_interceptor),
):
    """Two-factor status for the current user."""
    return MFAStatus(**interceptor.status(user))


@router.post("/mfa/email", response_model=MFAStatus)
async def enable_email(
    user: Dict = Depends(get_current_user),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Enable e-mail codes.

    An authenticator already configured stays active ("both").
    """
    profile = interceptor.profiles.get(str(user["user_id"]))
    if profile.active_method.includes_totp:
        interceptor.enable(user, TwoFactorMethod.BOTH, profile.totp_secret, ctx)
    else:
        interceptor.enable(user, TwoFactorMethod.EMAIL, None, ctx)

    logger.info(f"E-mail 2FA enabled for user: {user['email']}")
    return MFAStatus(**interceptor.status(user))


@router.delete("/mfa/email", response_model=MFAStatus)
async def disable_email(
    user: Dict = Depends(get_current_user),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """Turn off e-mail codes (an authenticator, if any, stays active)."""
    interceptor.disable_method(user, TwoFactorMethod.EMAIL, ctx)
    return MFAStatus(**interceptor.status(user))


@router.post("/mfa/totp/setup", response_model=MFASetupResponse)
async def setup_totp_endpoint(
    user: Dict = Depends(get_current_user),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Initialize authenticator setup.

    Returns a QR code and secret for authenticator app setup.
    The authenticator is not active until confirmed with /mfa/totp/verify.
    The secret is kept for 10 minutes.
    """
    setup = interceptor.start_totp_enrollment(user, ctx)
    logger.info(f"Authenticator setup initiated for user: {user['email']}")
    return MFASetupResponse(**setup)


@router.post("/mfa/totp/verify", response_model=BackupCodesResponse)
async def verify_totp_setup(
    verification: MFAVerifyRequest,
    user: Dict = Depends(get_current_user),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Confirm authenticator setup and enable it.

    Returns backup codes for account recovery - store these securely!
    """
    codes = interceptor.confirm_totp_enrollment(user, verification.totp_code, ctx)

    logger.info(f"Authenticator enabled for user: {user['email']}")

    return BackupCodesResponse(
        message="Authenticator enabled successfully. Store your backup codes securely!",
        backup_codes=[format_backup_code(c) for c in codes],
    )


@router.delete("/mfa/totp", response_model=MFAStatus)
async def disable_totp(
    user: Dict = Depends(get_current_user),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """Remove the authenticator (e-mail codes, if enabled, stay active)."""
    interceptor.disable_method(user, TwoFactorMethod.TOTP, ctx)
    return MFAStatus(**interceptor.status(user))


@router.delete("/mfa", status_code=status.HTTP_204_NO_CONTENT)
async def disable_mfa(
    user: Dict = Depends(get_current_user),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Disable 2FA for the current user.

    Removes the authenticator, backup codes and all trusted devices.
    """
    interceptor.disable(user, ctx)
    logger.info(f"2FA disabled for user: {user['email']}")
    return None


@router.post("/mfa/backup-codes", response_model=BackupCodesResponse)
async def regenerate_backup_codes(
    body: Optional[BackupCodesRequest] = None,
    user: Dict = Depends(get_current_user),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Generate a new set of backup codes.

    All previous backup codes stop working.
    """
    codes = interceptor.generate_backup_codes(user, body.count if body else None, ctx)
    return BackupCodesResponse(backup_codes=[format_backup_code(c) for c in codes])


@router.delete("/mfa/devices", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_trusted_devices(
    user: Dict = Depends(get_current_user),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """Forget every trusted device; the next login asks for a code again."""
    interceptor.revoke_devices(user, ctx)
    return None
