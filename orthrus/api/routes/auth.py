"""
Authentication Endpoints.

Provides user registration, login (with the second-factor hand-off),
logout, and the current user profile.
"""
import logging
from typing import Dict, Union

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ..models import (
    UserRegister,
    UserLogin,
    TokenResponse,
    ChallengeResponse,
    UserResponse,
    ErrorResponse,
)
from ..deps import (
    get_db,
    get_current_user,
    get_interceptor,
    get_request_context,
    check_register_rate_limit,
    check_login_rate_limit,
)
from ...database.auth_db import AuthDB, hash_password, verify_password
from ...errors import BLOCK_MESSAGES, AccountBlocked
from ...auth.codes import format_backup_code
from ...auth.interceptor import CHALLENGE_COOKIE, LoginInterceptor
from ...auth.models import (
    Authenticated,
    Blocked,
    ChallengeIssued,
    LoginOrigin,
    RequestContext,
    Retry,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])

SESSION_HOURS = 24

OUTCOME_RESPONSES = {
    202: {"model": ChallengeResponse, "description": "Second factor required"},
    401: {"model": ErrorResponse, "description": "Invalid credentials or code"},
    403: {"model": ErrorResponse, "description": "Account not eligible to log in"},
    429: {"model": ErrorResponse, "description": "Locked out or too many attempts"},
}


def render_outcome(
    outcome: Union[Authenticated, ChallengeIssued, Retry, Blocked],
    response: Response,
    db: AuthDB,
    interceptor: LoginInterceptor,
) -> Dict:
    """
    Turn an interceptor outcome into a response body and status code.

    Returns a plain dict so cookies written to the injected response survive.
    """
    if isinstance(outcome, Authenticated):
        user = db.get_user_by_id(outcome.user_id)
        return TokenResponse(
            access_token=outcome.session_token,
            token_type="bearer",
            expires_in=SESSION_HOURS * 3600,
            user_id=outcome.user_id,
            email=user["email"] if user else "",
            mfa_enabled=interceptor.profiles.get(outcome.user_id).enabled,
            setup_required=outcome.setup_required,
            trusted_device=outcome.trusted_device,
            backup_codes=[format_backup_code(c) for c in outcome.backup_codes],
        ).model_dump()

    if isinstance(outcome, ChallengeIssued):
        response.status_code = status.HTTP_202_ACCEPTED
        return ChallengeResponse(
            challenge_token=outcome.token,
            method=outcome.method.value,
            expires_in=outcome.expires_in,
            setup_required=outcome.setup_required,
            email_sent=outcome.email_sent,
        ).model_dump()

    if isinstance(outcome, Retry):
        if outcome.error_code == "locked_out":
            response.status_code = status.HTTP_429_TOO_MANY_REQUESTS
        else:
            response.status_code = status.HTTP_401_UNAUTHORIZED
        return ErrorResponse(
            error="Verification failed",
            detail=outcome.message,
            code=outcome.error_code,
        ).model_dump()

    if isinstance(outcome, Blocked):
        response.status_code = status.HTTP_403_FORBIDDEN
        return ErrorResponse(
            error="Login blocked",
            detail=outcome.message or BLOCK_MESSAGES.get(outcome.reason),
            code=outcome.reason,
        ).model_dump()

    raise TypeError(f"Unknown login outcome: {type(outcome).__name__}")


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {"model": TokenResponse, "description": "Account created"},
        400: {"model": ErrorResponse, "description": "Invalid input"},
        409: {"model": ErrorResponse, "description": "Email already exists"},
        429: {"model": ErrorResponse, "description": "Too many registration attempts"},
    },
    dependencies=[Depends(check_register_rate_limit)],
)
async def register(
    user_data: UserRegister,
    response: Response,
    db: AuthDB = Depends(get_db),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Register a new user account.

    Returns an access token for immediate use. Registration is never
    challenged for a second factor.
    """
    password_hash = hash_password(user_data.password)

    try:
        user_id = db.create_user(
            email=user_data.email,
            password_hash=password_hash,
            display_name=user_data.display_name,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )

    logger.info(f"New user registered: {user_data.email}")

    user = db.get_user_by_id(user_id)
    outcome = interceptor.intercept_login_after_credentials(user, ctx, origin=LoginOrigin.REGISTRATION)
    return render_outcome(outcome, response, db, interceptor)


@router.post(
    "/login",
    responses={200: {"model": TokenResponse}, **OUTCOME_RESPONSES},
    dependencies=[Depends(check_login_rate_limit)],
)
async def login(
    credentials: UserLogin,
    response: Response,
    db: AuthDB = Depends(get_db),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Authenticate user and return access token.

    If a second factor is required the response is 202 with a challenge;
    complete it with POST /auth/2fa/verify. The challenge token is also set
    as an HttpOnly cookie.
    """
    user = db.get_user_by_email(credentials.email)

    if user is None or not verify_password(credentials.password, user["password_hash"]):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    user_id = str(user["user_id"])
    reason = db.check_eligibility(user_id)
    if reason is not None:
        logger.info(f"Login refused for {credentials.email}: {reason}")
        raise AccountBlocked(reason)

    outcome = interceptor.intercept_login_after_credentials(user, ctx)

    if isinstance(outcome, Authenticated):
        logger.info(f"User logged in: {credentials.email}")

    return render_outcome(outcome, response, db, interceptor)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    user: Dict = Depends(get_current_user),
    db: AuthDB = Depends(get_db),
    interceptor: LoginInterceptor = Depends(get_interceptor),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Logout current session.

    Invalidates the current access token and any pending 2FA challenge.
    """
    token = user.get("_session_token")
    if token:
        db.invalidate_session(token)

    pending = ctx.carrier.get(CHALLENGE_COOKIE)
    if pending:
        interceptor.clear_challenge(pending, ctx)

    logger.info(f"User logged out: {user['email']}")

    return None


@router.post("/logout/all", status_code=status.HTTP_204_NO_CONTENT)
async def logout_all(
    user: Dict = Depends(get_current_user),
    db: AuthDB = Depends(get_db),
):
    """
    Logout from all devices.

    Invalidates all sessions for the current user.
    """
    user_id = str(user["user_id"])
    count = db.invalidate_all_sessions(user_id)

    logger.info(f"User {user['email']} logged out from {count} sessions")

    return None


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Dict = Depends(get_current_user),
    db: AuthDB = Depends(get_db),
    interceptor: LoginInterceptor = Depends(get_interceptor),
):
    """
    Get current user profile.
    """
    user_id = str(user["user_id"])
    full_user = db.get_user_by_id(user_id)

    return UserResponse(
        user_id=user_id,
        email=full_user["email"],
        display_name=full_user["display_name"],
        role=full_user["role"],
        mfa_enabled=interceptor.profiles.get(user_id).enabled,
        created_at=full_user["created_at"],
        last_login=full_user["last_login"],
    )
