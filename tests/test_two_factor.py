"""Unit tests for auth/two_factor.py -- TOTP enrollment and backup codes.

Covers:
- enrollment yields a base32 secret, an otpauth URI and a PNG data URL
- TOTP verification accepts the current code and rejects malformed ones
- backup codes: 10 codes of 8 upper-case hex chars, each consumable once
"""

import re
import time

import pyotp
import pytest

from auth.two_factor import TwoFactorEngine


@pytest.fixture
def engine() -> TwoFactorEngine:
    return TwoFactorEngine("AccountGate", backup_code_count=10)


class TestEnrollment:
    def test_enroll_returns_secret_uri_and_qr(self, engine: TwoFactorEngine) -> None:
        enrollment = engine.enroll("ana@example.com")
        assert re.fullmatch(r"[A-Z2-7]+", enrollment.secret)
        assert enrollment.provisioning_uri.startswith("otpauth://totp/")
        assert "issuer=AccountGate" in enrollment.provisioning_uri
        assert "ana%40example.com" in enrollment.provisioning_uri
        assert enrollment.qr_code.startswith("data:image/png;base64,")

    def test_each_enrollment_gets_a_new_secret(self, engine: TwoFactorEngine) -> None:
        assert engine.enroll("a@example.com").secret != engine.enroll("a@example.com").secret


class TestCodeVerification:
    def test_current_code_verifies(self, engine: TwoFactorEngine) -> None:
        secret = pyotp.random_base32()
        assert engine.verify_code(secret, pyotp.TOTP(secret).now())

    def test_code_from_one_step_ago_verifies(self, engine: TwoFactorEngine) -> None:
        """Clock skew of a single 30s step is inside the +/-2 window."""
        secret = pyotp.random_base32()
        previous = pyotp.TOTP(secret).at(time.time() - 30)
        assert engine.verify_code(secret, previous)

    @pytest.mark.parametrize("code", [None, "", "12345", "1234567", "abcdef"])
    def test_malformed_code_is_rejected(self, engine: TwoFactorEngine, code) -> None:
        assert not engine.verify_code(pyotp.random_base32(), code)

    def test_missing_secret_is_rejected(self, engine: TwoFactorEngine) -> None:
        assert not engine.verify_code(None, "123456")


class TestBackupCodes:
    def test_generates_ten_hex_codes(self, engine: TwoFactorEngine) -> None:
        codes = engine.generate_backup_codes()
        assert len(codes) == 10
        assert all(re.fullmatch(r"[0-9A-F]{8}", c) for c in codes)
        assert len(set(codes)) == 10

    def test_consume_removes_only_the_matched_code(self, engine: TwoFactorEngine) -> None:
        codes = ["AAAA0001", "BBBB0002", "CCCC0003"]
        assert engine.consume_backup_code("BBBB0002", codes) == ["AAAA0001", "CCCC0003"]
        assert codes == ["AAAA0001", "BBBB0002", "CCCC0003"]

    def test_consume_normalizes_case_and_whitespace(self, engine: TwoFactorEngine) -> None:
        assert engine.consume_backup_code("  bbbb0002 ", ["BBBB0002"]) == []

    def test_consumed_code_cannot_be_reused(self, engine: TwoFactorEngine) -> None:
        remaining = engine.consume_backup_code("AAAA0001", ["AAAA0001", "BBBB0002"])
        assert engine.consume_backup_code("AAAA0001", remaining) is None

    def test_unknown_or_empty_code_is_none(self, engine: TwoFactorEngine) -> None:
        assert engine.consume_backup_code("FFFFFFFF", ["AAAA0001"]) is None
        assert engine.consume_backup_code(None, ["AAAA0001"]) is None
