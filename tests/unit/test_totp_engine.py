"""Tests for the stateless TOTP engine."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pyotp
import pytest

from twofactor.exceptions import ConfigurationError, InvalidWindowError
from twofactor.totp import TotpEngine

# RFC 6238 appendix B test secret (SHA-1)
RFC_SECRET = b"12345678901234567890"


@pytest.fixture
def engine() -> TotpEngine:
    return TotpEngine(max_window=2)


class TestComputeCode:
    def test_rfc6238_vectors(self, engine: TotpEngine) -> None:
        assert engine.compute_code(RFC_SECRET, 30, 8, 59) == "94287082"
        assert engine.compute_code(RFC_SECRET, 30, 8, 1111111109) == "07081804"
        assert engine.compute_code(RFC_SECRET, 30, 8, 1234567890) == "89005924"

    def test_six_digits_are_zero_padded(self, engine: TotpEngine) -> None:
        code = engine.compute_code(RFC_SECRET, 30, 6, 1111111109)
        assert code == "081804"

    def test_same_step_same_code(self, engine: TotpEngine) -> None:
        assert engine.compute_code(RFC_SECRET, 30, 6, 990) == engine.compute_code(
            RFC_SECRET, 30, 6, 1019
        )

    def test_matches_pyotp_totp(self, engine: TotpEngine) -> None:
        secret = pyotp.random_base32()
        raw = pyotp.TOTP(secret).byte_secret()
        assert engine.compute_code(raw, 30, 6, 1_700_000_000) == pyotp.TOTP(
            secret
        ).at(1_700_000_000)


class TestVerify:
    def test_issue_at_1000_verify_at_1000_and_1061(self, engine: TotpEngine) -> None:
        code = engine.compute_code(RFC_SECRET, 30, 6, 1000)

        assert engine.verify(RFC_SECRET, 30, 6, code, 1000)
        assert not engine.verify(RFC_SECRET, 30, 6, code, 1061, window=1)

    @pytest.mark.parametrize("shift", [-1, 0, 1])
    def test_accepts_within_window(self, engine: TotpEngine, shift: int) -> None:
        code = engine.compute_code(RFC_SECRET, 30, 6, 3000 + shift * 30)
        assert engine.match_offset(RFC_SECRET, 30, 6, code, 3000, window=1) == shift

    def test_rejects_outside_window(self, engine: TotpEngine) -> None:
        code = engine.compute_code(RFC_SECRET, 30, 6, 3000 + 2 * 30)
        assert engine.match_offset(RFC_SECRET, 30, 6, code, 3000, window=1) is None
        assert engine.match_offset(RFC_SECRET, 30, 6, code, 3000, window=2) == 2

    def test_window_zero_only_accepts_current_step(self, engine: TotpEngine) -> None:
        previous = engine.compute_code(RFC_SECRET, 30, 6, 2970)
        assert not engine.verify(RFC_SECRET, 30, 6, previous, 3000, window=0)

    def test_negative_counters_are_skipped(self, engine: TotpEngine) -> None:
        code = engine.compute_code(RFC_SECRET, 30, 6, 30)
        assert engine.match_offset(RFC_SECRET, 30, 6, code, 10, window=2) == 1

    def test_whitespace_is_ignored(self, engine: TotpEngine) -> None:
        code = engine.compute_code(RFC_SECRET, 30, 6, 1000)
        assert engine.verify(RFC_SECRET, 30, 6, f" {code[:3]} {code[3:]} ", 1000)

    @pytest.mark.parametrize("bad", ["", "12345", "1234567", "abcdef"])
    def test_malformed_code_does_not_match(self, engine: TotpEngine, bad: str) -> None:
        assert engine.match_offset(RFC_SECRET, 30, 6, bad, 1000) is None

    @pytest.mark.parametrize("window", [-1, 3])
    def test_invalid_window_raises(self, engine: TotpEngine, window: int) -> None:
        with pytest.raises(InvalidWindowError) as exc_info:
            engine.verify(RFC_SECRET, 30, 6, "123456", 1000, window=window)
        assert isinstance(exc_info.value, ConfigurationError)
        assert exc_info.value.max_window == 2


class TestProvisioning:
    def test_provisioning_uri(self, engine: TotpEngine) -> None:
        uri = engine.provisioning_uri(RFC_SECRET, "alice@example.com", "Acme")
        parsed = urlparse(uri)
        query = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert parsed.path.endswith(("alice%40example.com", "alice@example.com"))
        assert query["issuer"] == ["Acme"]
        assert query["secret"][0].rstrip("=") == "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"

    def test_format_manual_key(self, engine: TotpEngine) -> None:
        key = engine.format_manual_key(RFC_SECRET)
        assert key == "GEZD GNBV GY3T QOJQ GEZD GNBV GY3T QOJQ"
