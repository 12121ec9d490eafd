"""
Two-factor configuration for ORTHRUS.

Every tunable is read through TwoFactorConfig.get(key, default), which looks
at explicit overrides first and then at ORTHRUS_<KEY> environment variables.

Usage:
    config = TwoFactorConfig()
    config.email_code_length      # 6 unless ORTHRUS_EMAIL_CODE_LENGTH is set

    # Tests and embedding applications pass overrides directly
    config = TwoFactorConfig({"lockout_attempts": 3, "hash_rounds": 4})
"""
import os
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "ORTHRUS_"

# Site-level method settings
METHOD_DISABLED = "disabled"
METHOD_OPTIONAL = "optional"
METHOD_REQUIRED_ALL = "required_all"
METHOD_REQUIRED_ADMIN = "required_admin"

METHOD_SETTINGS = (METHOD_DISABLED, METHOD_OPTIONAL, METHOD_REQUIRED_ALL, METHOD_REQUIRED_ADMIN)

DEFAULTS: Dict[str, Any] = {
    "email_method": METHOD_OPTIONAL,
    "totp_method": METHOD_OPTIONAL,
    # E-mail codes
    "email_code_length": 6,
    "email_expiration": 5,        # minutes
    "email_cooldown": 60,         # seconds between code requests
    # TOTP (RFC 6238)
    "totp_code_length": 6,
    "totp_time_window": 30,       # seconds per step
    "totp_tolerance": 1,          # +-N steps
    # Lockout
    "lockout_attempts": 5,
    "rate_window": 15,            # minutes
    # Backup codes
    "backup_enabled": True,
    "backup_count": 10,
    "backup_length": 8,
    # Device trust
    "device_trust": True,
    "device_trust_days": 30,
    # Enforcement
    "grace_period": 7,            # days
    "admin_bypass": False,
    "challenge_ttl": 300,         # seconds
    "require_https": True,
    # Hashing
    "hash_rounds": 10,            # bcrypt cost for codes
    "issuer": "ORTHRUS",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


class TwoFactorConfig:
    """
    Config provider for all 2FA tunables.

    Values come from (in order) the overrides mapping, the environment,
    the caller's default, and finally DEFAULTS.
    """

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        self._overrides: Dict[str, Any] = dict(overrides or {})

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a raw configuration value.

        Args:
            key: Setting name (e.g. "lockout_attempts").
            default: Fallback when the setting is not configured.

        Returns:
            The configured value (environment values are strings).
        """
        if key in self._overrides:
            return self._overrides[key]

        env_value = os.getenv(f"{ENV_PREFIX}{key.upper()}")
        if env_value is not None and env_value != "":
            return env_value

        if default is not None:
            return default
        return DEFAULTS.get(key)

    def set(self, key: str, value: Any) -> None:
        """Override a setting for the lifetime of this config object."""
        self._overrides[key] = value

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            fallback = default if default is not None else DEFAULTS[key]
            logger.warning(f"Invalid integer for {key}: {value!r}, using {fallback}")
            return int(fallback)

    def get_bool(self, key: str, default: Optional[bool] = None) -> bool:
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE_VALUES

    def get_method_setting(self, key: str) -> str:
        value = str(self.get(key)).strip().lower()
        if value not in METHOD_SETTINGS:
            logger.warning(f"Unknown method setting for {key}: {value!r}, treating as disabled")
            return METHOD_DISABLED
        return value

    # ==========================================
    # Typed accessors
    # ==========================================

    @property
    def email_method(self) -> str:
        return self.get_method_setting("email_method")

    @property
    def totp_method(self) -> str:
        return self.get_method_setting("totp_method")

    @property
    def email_code_length(self) -> int:
        # Sane range for numeric codes
        return max(4, min(10, self.get_int("email_code_length")))

    @property
    def email_expiration_seconds(self) -> int:
        return self.get_int("email_expiration") * 60

    @property
    def email_cooldown_seconds(self) -> int:
        return self.get_int("email_cooldown")

    @property
    def totp_code_length(self) -> int:
        return self.get_int("totp_code_length")

    @property
    def totp_time_window(self) -> int:
        return self.get_int("totp_time_window")

    @property
    def totp_tolerance(self) -> int:
        return max(0, self.get_int("totp_tolerance"))

    @property
    def lockout_attempts(self) -> int:
        return max(1, self.get_int("lockout_attempts"))

    @property
    def rate_window_seconds(self) -> int:
        return self.get_int("rate_window") * 60

    @property
    def backup_enabled(self) -> bool:
        return self.get_bool("backup_enabled")

    @property
    def backup_count(self) -> int:
        return self.get_int("backup_count")

    @property
    def backup_length(self) -> int:
        return self.get_int("backup_length")

    @property
    def device_trust_enabled(self) -> bool:
        return self.get_bool("device_trust")

    @property
    def device_trust_seconds(self) -> int:
        return self.get_int("device_trust_days") * 86400

    @property
    def grace_period_days(self) -> int:
        return max(0, self.get_int("grace_period"))

    @property
    def admin_bypass(self) -> bool:
        return self.get_bool("admin_bypass")

    @property
    def challenge_ttl(self) -> int:
        return self.get_int("challenge_ttl")

    @property
    def require_https(self) -> bool:
        return self.get_bool("require_https")

    @property
    def hash_rounds(self) -> int:
        # bcrypt accepts 4..31
        return max(4, min(31, self.get_int("hash_rounds")))

    @property
    def issuer(self) -> str:
        return str(self.get("issuer"))


_config_instance: Optional[TwoFactorConfig] = None


def get_config() -> TwoFactorConfig:
    """Get singleton TwoFactorConfig instance."""
    global _config_instance
    if _config_instance is None:
        _config_instance = TwoFactorConfig()
    return _config_instance
