"""
Pydantic Models for ORTHRUS API.

Request and response models for all API endpoints.
"""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, EmailStr, Field, ConfigDict


# ============================================
# Authentication Models
# ============================================

class UserRegister(BaseModel):
    """
    User registration request.

    Creates a new user account with email and password.
    Password must be at least 8 characters.
    """
    email: EmailStr = Field(..., description="Valid email address")
    password: str = Field(..., min_length=8, description="Password (minimum 8 characters)")
    display_name: Optional[str] = Field(None, max_length=255, description="Name used in e-mails")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "jane@example.com",
                "password": "securepassword123",
                "display_name": "Jane"
            }
        }
    )


class UserLogin(BaseModel):
    """
    User login request.

    Authenticate with email and password. If a second factor is needed the
    response is 202 with a challenge instead of a token.
    """
    email: EmailStr = Field(..., description="Registered email address")
    password: str = Field(..., description="Account password")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "jane@example.com",
                "password": "securepassword123"
            }
        }
    )


class TokenResponse(BaseModel):
    """Authentication token response."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Token expiration in seconds")
    user_id: str
    email: str
    mfa_enabled: bool
    setup_required: bool = Field(False, description="Site requires an authenticator the user has not set up")
    trusted_device: bool = False
    backup_codes: List[str] = Field(default_factory=list, description="Shown once after an enforced setup")


class ChallengeResponse(BaseModel):
    """
    Second factor required.

    The challenge token is also set as an HttpOnly cookie; clients that
    cannot use cookies may echo it back in the request body.
    """
    challenge_token: str
    method: str = Field(..., description="email, totp or both")
    expires_in: int = Field(..., description="Challenge lifetime in seconds")
    setup_required: bool = False
    email_sent: bool = False


class TwoFactorVerifyRequest(BaseModel):
    """
    Second-factor submission.

    code_type "backup" forces the backup-code path; "auto" routes by the
    challenge's method.
    """
    code: str = Field("", max_length=64, description="Code from e-mail, authenticator app or a backup code")
    code_type: str = Field("auto", pattern="^(auto|backup)$")
    trust_device: bool = Field(False, description="Skip the second factor on this device for a while")
    challenge_token: Optional[str] = Field(None, description="Only needed when cookies are unavailable")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "code": "123456",
                "code_type": "auto",
                "trust_device": True
            }
        }
    )


class ChallengeTokenRequest(BaseModel):
    """Optional explicit challenge token for cookie-less clients."""
    challenge_token: Optional[str] = None


class UserResponse(BaseModel):
    """User profile response."""
    user_id: str
    email: str
    display_name: Optional[str] = None
    role: str
    mfa_enabled: bool
    created_at: datetime
    last_login: Optional[datetime]


# ============================================
# 2FA Management Models
# ============================================

class MFASetupResponse(BaseModel):
    """Authenticator setup response with QR code."""
    secret: str
    qr_code_base64: str
    provisioning_uri: str


class MFAVerifyRequest(BaseModel):
    """Authenticator code confirmation."""
    totp_code: str = Field(..., min_length=6, max_length=10)


class BackupCodesRequest(BaseModel):
    count: Optional[int] = Field(None, ge=1, le=20)


class BackupCodesResponse(BaseModel):
    """
    Freshly generated backup codes.

    Each backup code can only be used once and is shown only in this response.
    """
    message: str = "Store your backup codes securely!"
    backup_codes: List[str] = Field(..., description="One-time backup codes for account recovery")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "message": "Store your backup codes securely!",
                "backup_codes": [
                    "ABCD-EFGH",
                    "JKLM-NPQR",
                    "STUV-WXYZ",
                    "2345-6789"
                ]
            }
        }
    )


class MFAStatus(BaseModel):
    """Two-factor status for the current user."""
    enabled: bool
    method: str
    required: bool
    required_method: str
    available_methods: List[str]
    setup_required: bool
    grace_days_remaining: Optional[int] = None
    backup_codes_remaining: int
    trusted_devices: int
    last_used_at: Optional[float] = None
    locked_out: bool


class MessageResponse(BaseModel):
    message: str


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


# ============================================
# Error Models
# ============================================

class ErrorResponse(BaseModel):
    """
    Standard error response.

    All API errors return this format with an error message,
    optional detail, and error code for programmatic handling.
    """
    error: str = Field(..., description="Error type/summary")
    detail: Optional[str] = Field(None, description="Detailed error message")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Unauthorized",
                "detail": "Invalid verification code. Please try again.",
                "code": "invalid_code"
            }
        }
    )
