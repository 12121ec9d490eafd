"""
Two-factor authentication for ORTHRUS.

This package provides:
- Policy evaluation (who must pass a second factor, grace periods)
- E-mail, TOTP and backup code verification
- Failed-attempt lockout
- Trusted device management
- The login interceptor tying it all together
"""
from .models import (
    TwoFactorMethod,
    LoginOrigin,
    RequestContext,
    Authenticated,
    ChallengeIssued,
    Retry,
    Blocked,
)
from .totp import (
    generate_totp_secret,
    get_totp_provisioning_uri,
    generate_qr_code_base64,
    setup_totp,
)

__all__ = [
    "TwoFactorMethod",
    "LoginOrigin",
    "RequestContext",
    "Authenticated",
    "ChallengeIssued",
    "Retry",
    "Blocked",
    "generate_totp_secret",
    "get_totp_provisioning_uri",
    "generate_qr_code_base64",
    "setup_totp",
]
