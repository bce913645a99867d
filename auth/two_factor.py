"""
auth/two_factor.py -- TOTP secrets, code verification, and backup codes.

pyotp implements RFC 6238: 6 digits, 30-second step, SHA-1. Codes are
accepted within +/- 2 steps (about 60 seconds of clock skew) to match what
phone authenticator apps drift to in practice.

Backup codes are 8 upper-case hex characters from secrets.token_hex(4) --
32 bits each. They are single-use and only accepted when the account already
has two-factor enabled, so the entropy is sized for a second factor, not a
sole credential.

This module is pure: it never touches the store. auth/flows.py decides what
to persist after each check.
"""

from __future__ import annotations

import base64
import hmac
import io
import secrets

import pyotp
import qrcode

from auth.models import TwoFactorEnrollment

VALID_WINDOW = 2
_CODE_LENGTH = 6


class TwoFactorEngine:
    def __init__(self, issuer: str, backup_code_count: int = 10) -> None:
        self.issuer = issuer
        self.backup_code_count = backup_code_count

    def enroll(self, email: str) -> TwoFactorEnrollment:
        """Generate a new secret labelled with the account email.

        The returned secret is not active -- the flow stores it as pending
        until confirm_setup() proves the user's authenticator holds it.
        """
        secret = pyotp.random_base32(length=32)
        uri = pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=self.issuer)
        return TwoFactorEnrollment(secret=secret, provisioning_uri=uri, qr_code=_qr_data_url(uri))

    def verify_code(self, secret: str | None, code: str | None) -> bool:
        """Return True if code is a current TOTP for secret (within the window)."""
        if not secret or not code:
            return False
        code = code.strip()
        if len(code) != _CODE_LENGTH or not code.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(code, valid_window=VALID_WINDOW)
        except (TypeError, ValueError):
            # binascii.Error from a corrupt stored secret is a ValueError
            return False

    def generate_backup_codes(self) -> list[str]:
        return [secrets.token_hex(4).upper() for _ in range(self.backup_code_count)]

    @staticmethod
    def consume_backup_code(code: str | None, codes: list[str]) -> list[str] | None:
        """Match code against the unused set.

        Returns the remaining codes with the matched one removed, or None when
        nothing matched. Every stored code is compared so the time taken does
        not depend on which position matched.
        """
        if not code:
            return None
        normalized = code.strip().upper()
        matched: int | None = None
        for index, candidate in enumerate(codes):
            if hmac.compare_digest(candidate.encode(), normalized.encode()) and matched is None:
                matched = index
        if matched is None:
            return None
        return codes[:matched] + codes[matched + 1 :]


def _qr_data_url(uri: str) -> str:
    image = qrcode.make(uri)
    buffer = io.BytesIO()
    image.save(buffer)
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")
