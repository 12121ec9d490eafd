"""
TOTP (Time-based One-Time Password) support, RFC 6238.

Compatible with Google Authenticator, Authy, and other TOTP apps.
The RFC arithmetic itself is delegated to pyotp; this module adds the
enrollment helpers (secret, provisioning URI, QR code).
"""
import base64
import io
from typing import Tuple

import pyotp
import qrcode


class TOTPProvider:
    """
    RFC 6238 provider.

    verify() accepts the code length, step and tolerance the site is
    configured with rather than assuming 6 digits / 30 seconds.
    """

    def verify(
        self,
        secret: str,
        code: str,
        tolerance: int = 1,
        digits: int = 6,
        period: int = 30,
    ) -> bool:
        """
        Verify a TOTP code against the secret.

        Args:
            secret: Base32-encoded TOTP secret.
            code: Code entered by the user.
            tolerance: Number of time steps accepted on either side of now.
            digits: Expected code length.
            period: Seconds per time step.

        Returns:
            True if code is valid, False otherwise.
        """
        if not secret or not code:
            return False

        # Clean the code (remove spaces, only digits)
        code = ''.join(filter(str.isdigit, code))

        if len(code) != digits:
            return False

        totp = pyotp.TOTP(secret, digits=digits, interval=period)
        return totp.verify(code, valid_window=tolerance)

    def now(self, secret: str, digits: int = 6, period: int = 30) -> str:
        """Get the current code (for testing/debugging)."""
        return pyotp.TOTP(secret, digits=digits, interval=period).now()


def generate_totp_secret() -> str:
    """
    Generate a new TOTP secret for enrollment.

    Returns:
        Base32-encoded secret (32 characters).
    """
    return pyotp.random_base32()


def get_totp_provisioning_uri(
    secret: str,
    email: str,
    issuer: str = "ORTHRUS",
    digits: int = 6,
    period: int = 30,
) -> str:
    """
    Generate a provisioning URI for TOTP apps.

    Returns:
        otpauth:// URI string.
    """
    totp = pyotp.TOTP(secret, digits=digits, interval=period)
    return totp.provisioning_uri(name=email, issuer_name=issuer)


def generate_qr_code(uri: str) -> bytes:
    """
    Generate a QR code image for the provisioning URI.

    Returns:
        PNG image bytes.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)
    return buffer.read()


def generate_qr_code_base64(uri: str) -> str:
    """Generate a base64 data URI of the QR code for embedding in HTML."""
    png_bytes = generate_qr_code(uri)
    b64 = base64.b64encode(png_bytes).decode('utf-8')
    return f"data:image/png;base64,{b64}"


def setup_totp(
    email: str,
    issuer: str = "ORTHRUS",
    digits: int = 6,
    period: int = 30,
) -> Tuple[str, str, str]:
    """
    Complete enrollment material: secret, URI, and QR code.

    Returns:
        Tuple of (secret, provisioning_uri, qr_code_base64).
    """
    secret = generate_totp_secret()
    uri = get_totp_provisioning_uri(secret, email, issuer, digits, period)
    qr_base64 = generate_qr_code_base64(uri)

    return secret, uri, qr_base64
