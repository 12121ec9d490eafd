"""
Data model for the two-factor layer.

Users themselves travel as plain dicts (as returned by AuthDB), with at
least "user_id" and "email", and "role" for privilege checks.
"""
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .carrier import CredentialCarrier


class TwoFactorMethod(str, Enum):
    """Second-factor method configured for a user or required by the site."""

    EMAIL = "email"
    TOTP = "totp"
    BOTH = "both"
    NONE = "none"

    @property
    def includes_email(self) -> bool:
        return self in (TwoFactorMethod.EMAIL, TwoFactorMethod.BOTH)

    @property
    def includes_totp(self) -> bool:
        return self in (TwoFactorMethod.TOTP, TwoFactorMethod.BOTH)

    @classmethod
    def parse(cls, value: Optional[str]) -> "TwoFactorMethod":
        """Parse a stored value; unknown or empty values mean NONE."""
        if not value:
            return cls.NONE
        try:
            return cls(value)
        except ValueError:
            return cls.NONE


class LoginOrigin(str, Enum):
    """Where the login attempt came from."""

    LOGIN = "login"
    # Registration verifies the account itself and must not be challenged
    REGISTRATION = "registration"


CODE_TYPE_AUTO = "auto"
CODE_TYPE_BACKUP = "backup"

ADMIN_ROLES = {"admin", "owner"}


def is_privileged(user: Dict) -> bool:
    """Check whether a user dict represents an elevated account."""
    if user.get("is_admin"):
        return True
    return str(user.get("role", "")).lower() in ADMIN_ROLES


@dataclass
class BackupCode:
    """One stored backup code (hash only)."""
    index: int
    hash: str


@dataclass
class UserSecurityProfile:
    """
    Durable per-user 2FA record.

    trusted_devices maps the SHA-256 of a device trust token to its
    expiry as a UNIX timestamp.
    """
    user_id: str
    enabled: bool = False
    method: TwoFactorMethod = TwoFactorMethod.NONE
    totp_secret: Optional[str] = None
    backup_codes: List[BackupCode] = field(default_factory=list)
    backup_codes_used: Set[int] = field(default_factory=set)
    trusted_devices: Dict[str, float] = field(default_factory=dict)
    last_used_at: Optional[float] = None
    forced_at: Optional[float] = None

    @property
    def active_method(self) -> TwoFactorMethod:
        """Configured method, or NONE while 2FA is disabled."""
        return self.method if self.enabled else TwoFactorMethod.NONE

    def unused_backup_codes(self) -> List[BackupCode]:
        return [c for c in self.backup_codes if c.index not in self.backup_codes_used]

    @property
    def backup_codes_remaining(self) -> int:
        return len(self.unused_backup_codes())


@dataclass
class PendingChallenge:
    """Ephemeral record linking a challenge token to a user and method."""
    token: str
    user_id: str
    method: TwoFactorMethod
    issued_at: float
    # Authenticator secret offered during enforced setup-on-login
    setup_secret: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "method": self.method.value,
            "issued_at": self.issued_at,
            "setup_secret": self.setup_secret,
        }

    @classmethod
    def from_dict(cls, token: str, data: Dict[str, Any]) -> "PendingChallenge":
        return cls(
            token=token,
            user_id=str(data["user_id"]),
            method=TwoFactorMethod.parse(data.get("method")),
            issued_at=float(data.get("issued_at", 0)),
            setup_secret=data.get("setup_secret"),
        )


@dataclass
class RequestContext:
    """
    Per-request values threaded explicitly through the 2FA layer.

    Nothing request-scoped is cached in module state; everything a call
    needs about the current HTTP exchange is carried here.
    """
    carrier: CredentialCarrier
    is_secure: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# ============================================
# Outcomes
# ============================================

@dataclass
class Authenticated:
    """Terminal: session established."""
    user_id: str
    session_token: Optional[str] = None
    # User still has to set up the authenticator the site mandates
    setup_required: bool = False
    trusted_device: bool = False
    # Plaintext codes, present only when login completed an enforced setup
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class ChallengeIssued:
    """Login halted; the client must complete the second factor."""
    token: str
    method: TwoFactorMethod
    expires_in: int
    setup_required: bool = False
    email_sent: bool = False


@dataclass
class Retry:
    """Verification failed; the pending challenge is still usable."""
    error_code: str
    message: str


@dataclass
class Blocked:
    """Terminal: the account is not eligible to log in."""
    reason: str
    message: str = ""
