"""
FastAPI Dependencies for ORTHRUS API.

Provides:
- Redis client and the ephemeral store built on it
- Database connections
- The wired-up login interceptor
- Authentication dependencies
- Rate limiting for unauthenticated auth endpoints
- Per-request 2FA context (cookie carrier, transport security)
"""
import os
import logging
from typing import Optional, Dict, Tuple

import redis
from fastapi import Depends, HTTPException, status, Request, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import TwoFactorConfig, get_config
from ..errors import ChallengeRequired
from ..database.auth_db import AuthDB, get_auth_db
from ..database.profile_db import SecurityProfileDB, get_profile_db
from ..store.ephemeral import EphemeralStore
from ..utils.secrets import get_redis_password
from ..auth.audit import SecurityLog
from ..auth.carrier import CookieCarrier
from ..auth.codes import VerificationCodeEngine
from ..auth.device_trust import DeviceTrustManager
from ..auth.hashing import BcryptHasher
from ..auth.interceptor import CHALLENGE_COOKIE, LoginInterceptor
from ..auth.lockout import LockoutTracker
from ..auth.models import RequestContext
from ..auth.notifications import get_notifier
from ..auth.policy import PolicyEngine
from ..auth.totp import TOTPProvider

logger = logging.getLogger(__name__)


# ============================================
# Redis Client
# ============================================

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get Redis client singleton.

    Returns None if REDIS_HOST is not configured, in which case the
    ephemeral store keeps its data in process memory (single worker only).
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    host = os.getenv("REDIS_HOST")
    if not host:
        logger.warning("REDIS_HOST not set - 2FA state kept in process memory (single worker only)")
        return None

    port = int(os.getenv("REDIS_PORT", "6379"))
    db = int(os.getenv("REDIS_DB", "0"))

    _redis_client = redis.Redis(
        host=host,
        port=port,
        password=get_redis_password(),
        db=db,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    logger.info(f"Redis configured: {host}:{port}/{db}")
    return _redis_client


_store: Optional[EphemeralStore] = None


def get_store() -> EphemeralStore:
    """Get the ephemeral store singleton."""
    global _store
    if _store is None:
        _store = EphemeralStore(get_redis_client())
    return _store


# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# Database Dependencies
# ============================================

def get_db() -> AuthDB:
    """Get database connection."""
    return get_auth_db()


def get_profiles() -> SecurityProfileDB:
    """Get 2FA profile store."""
    return get_profile_db()


# ============================================
# Two-Factor Dependencies
# ============================================

def build_interceptor(
    store: EphemeralStore,
    profiles: SecurityProfileDB,
    accounts: AuthDB,
    config: TwoFactorConfig,
    notifier=None,
    clock=None,
) -> LoginInterceptor:
    """
    Wire a LoginInterceptor and its collaborators.

    Args:
        notifier: Defaults to SMTP (or the logging notifier without SMTP_HOST).
        clock: Time source shared by all components (defaults to time.time).
    """
    clock_kwargs = {"clock": clock} if clock is not None else {}
    notifier = notifier if notifier is not None else get_notifier()

    lockout = LockoutTracker(store, config)
    codes = VerificationCodeEngine(
        store,
        profiles,
        lockout,
        BcryptHasher(config.hash_rounds),
        TOTPProvider(),
        config,
        notifier,
        **clock_kwargs,
    )
    device_trust = DeviceTrustManager(profiles, config, **clock_kwargs)
    policy = PolicyEngine(profiles, device_trust, config, **clock_kwargs)

    return LoginInterceptor(
        store=store,
        profiles=profiles,
        accounts=accounts,
        codes=codes,
        lockout=lockout,
        device_trust=device_trust,
        policy=policy,
        config=config,
        audit=SecurityLog(accounts),
        notifier=notifier,
        **clock_kwargs,
    )


_interceptor: Optional[LoginInterceptor] = None


def get_interceptor() -> LoginInterceptor:
    """Get the login interceptor singleton."""
    global _interceptor
    if _interceptor is None:
        _interceptor = build_interceptor(get_store(), get_profiles(), get_auth_db(), get_config())
    return _interceptor


def get_request_context(request: Request, response: Response) -> RequestContext:
    """
    Per-request 2FA context.

    Cookies written through the carrier land on the injected response, so
    routes using this must return data (not their own Response object).
    """
    user_agent = request.headers.get("user-agent")
    return RequestContext(
        carrier=CookieCarrier(request, response),
        is_secure=request.url.scheme == "https",
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent[:255] if user_agent else None,
    )


# ============================================
# Authentication Dependencies
# ============================================

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AuthDB = Depends(get_db),
) -> Dict:
    """
    Validate bearer token and return current user.

    Raises:
        ChallengeRequired: No token yet, but a second-factor challenge is pending.
        HTTPException: If token is missing, invalid, or expired.
    """
    if credentials is None:
        if request.cookies.get(CHALLENGE_COOKIE):
            raise ChallengeRequired()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials

    # Validate session token
    user = db.validate_session(token)

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Store token in user dict for logout
    user["_session_token"] = token
    return user


# ============================================
# Auth Rate Limiting (IP-based for unauthenticated endpoints)
# ============================================

class AuthRateLimiter:
    """
    Rate limiter for authentication endpoints (IP-based).

    Provides separate limits for register and login endpoints. Counters
    live in the ephemeral store (Redis, or memory when Redis is not set up).
    """

    def __init__(self, store: EphemeralStore):
        self.store = store
        self.register_limit = int(os.getenv("AUTH_REGISTER_LIMIT", "5"))   # per hour
        self.login_limit = int(os.getenv("AUTH_LOGIN_LIMIT", "10"))        # per 15 minutes

    def _get_count(self, key: str) -> int:
        return int(self.store.get(f"auth_ratelimit:{key}") or 0)

    def _increment(self, key: str, window_seconds: int) -> int:
        return self.store.incr(f"auth_ratelimit:{key}", window_seconds)

    def check_register_limit(self, ip: str) -> Tuple[bool, int]:
        """
        Check if IP is within register rate limit.

        Returns:
            Tuple of (allowed, remaining_requests)
        """
        count = self._get_count(f"register:{ip}")
        remaining = self.register_limit - count
        return remaining > 0, max(0, remaining)

    def check_login_limit(self, ip: str) -> Tuple[bool, int]:
        """
        Check if IP is within login rate limit.

        Returns:
            Tuple of (allowed, remaining_requests)
        """
        count = self._get_count(f"login:{ip}")
        remaining = self.login_limit - count
        return remaining > 0, max(0, remaining)

    def record_register(self, ip: str) -> None:
        self._increment(f"register:{ip}", 3600)

    def record_login(self, ip: str) -> None:
        self._increment(f"login:{ip}", 900)


# Singleton auth rate limiter
_auth_rate_limiter: Optional[AuthRateLimiter] = None


def get_auth_rate_limiter() -> AuthRateLimiter:
    """Get singleton auth rate limiter."""
    global _auth_rate_limiter
    if _auth_rate_limiter is None:
        _auth_rate_limiter = AuthRateLimiter(get_store())
    return _auth_rate_limiter


async def check_register_rate_limit(
    request: Request,
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
) -> None:
    """
    Dependency to check register rate limit by IP.

    Raises HTTPException 429 if limit exceeded.
    """
    ip = request.client.host if request.client else "unknown"

    allowed, remaining = limiter.check_register_limit(ip)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many registration attempts. Try again later.",
            headers={
                "Retry-After": "3600",
                "X-RateLimit-Remaining": "0",
            },
        )

    # Record this attempt
    limiter.record_register(ip)


async def check_login_rate_limit(
    request: Request,
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
) -> None:
    """
    Dependency to check login rate limit by IP.

    Raises HTTPException 429 if limit exceeded.
    """
    ip = request.client.host if request.client else "unknown"

    allowed, remaining = limiter.check_login_limit(ip)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts from this IP. Try again later.",
            headers={
                "Retry-After": "900",
                "X-RateLimit-Remaining": "0",
            },
        )

    # Record this attempt
    limiter.record_login(ip)
