"""
Security event log for the 2FA flow.

Events go to the "orthrus.audit" logger and, when an account store is
attached, to its persistent security_events table.
"""
import logging
from typing import Dict, Optional

from ..utils.secrets import mask_secret
from .models import RequestContext

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("orthrus.audit")

# Event names
EVENT_CHALLENGE_ISSUED = "2fa_challenge_issued"
EVENT_FAILED = "2fa_failed"
EVENT_VERIFIED = "2fa_verified"
EVENT_LOCKED_OUT = "2fa_locked_out"
EVENT_DEVICE_TRUSTED = "2fa_device_trusted"
EVENT_BLOCKED = "2fa_blocked"
EVENT_LOGIN_SUCCESS = "login_success"
EVENT_ENABLED = "2fa_enabled"
EVENT_DISABLED = "2fa_disabled"
EVENT_BACKUP_CODES_GENERATED = "2fa_backup_codes_generated"
EVENT_DEVICES_REVOKED = "2fa_devices_revoked"


class SecurityLog:
    """
    Write audit events.

    Args:
        accounts: Object with a record_security_event() method (AuthDB), or
            None to log only.
    """

    def __init__(self, accounts=None):
        self.accounts = accounts

    def record(
        self,
        event_type: str,
        user_id: Optional[str],
        details: Optional[Dict] = None,
        ctx: Optional[RequestContext] = None,
    ) -> None:
        details = details or {}
        ip_address = ctx.ip_address if ctx else None
        user_agent = ctx.user_agent if ctx else None

        summary = " ".join(f"{k}={v}" for k, v in sorted(details.items()))
        audit_logger.info(f"{event_type} user={user_id} ip={ip_address or '-'} {summary}".rstrip())

        if self.accounts is not None:
            self.accounts.record_security_event(
                event_type,
                user_id=user_id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
            )

    def challenge_issued(self, user_id: str, method: str, token: str, ctx: Optional[RequestContext] = None) -> None:
        self.record(EVENT_CHALLENGE_ISSUED, user_id, {"method": method, "token": mask_secret(token)}, ctx)
