"""TOTP verification against the RFC 4226 / RFC 6238 reference secret."""

from vaultsync.service.totp import (
    decode_secret,
    generate_totp,
    hotp,
    is_totp_enabled,
    normalize_secret,
    verify_totp,
)

# base32 of b"12345678901234567890"
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestHotp:
    """HOTP values match the published vectors."""

    def test_rfc4226_vectors(self):
        key = b"12345678901234567890"
        expected = ["755224", "287082", "359152", "969429", "338314"]
        assert [hotp(key, counter) for counter in range(5)] == expected


class TestSecretHandling:
    def test_normalize_strips_separators_padding_and_case(self):
        assert normalize_secret("gezd gnbv-gy3t====") == "GEZDGNBVGY3T"

    def test_decode_rejects_invalid_alphabet(self):
        assert decode_secret("NOT*BASE32!") is None

    def test_enabled_only_with_non_empty_secret(self):
        assert is_totp_enabled(RFC_SECRET)
        assert not is_totp_enabled("")
        assert not is_totp_enabled(None)
        assert not is_totp_enabled("  ")


class TestVerifyTotp:
    """Codes verify within one step of drift and no further."""

    def test_rfc6238_time_vectors(self):
        assert generate_totp(RFC_SECRET, 59) == "287082"
        assert generate_totp(RFC_SECRET, 1111111109) == "081804"

    def test_drift_window(self):
        step = 1111111109 // 30
        code = generate_totp(RFC_SECRET, step * 30)
        for offset in (-1, 0, 1):
            assert verify_totp(RFC_SECRET, code, now=(step + offset) * 30 + 5)
        assert not verify_totp(RFC_SECRET, code, now=(step + 2) * 30)
        assert not verify_totp(RFC_SECRET, code, now=(step - 2) * 30)

    def test_rejects_non_six_digit_codes(self):
        now = 1111111109
        code = generate_totp(RFC_SECRET, now)
        assert not verify_totp(RFC_SECRET, code[:5], now=now)
        assert not verify_totp(RFC_SECRET, code + "0", now=now)
        assert not verify_totp(RFC_SECRET, "abcdef", now=now)
        assert not verify_totp(RFC_SECRET, "", now=now)

    def test_lower_case_secret_with_spaces_is_accepted(self):
        now = 1111111109
        spaced = " ".join(RFC_SECRET[i : i + 4] for i in range(0, len(RFC_SECRET), 4))
        assert verify_totp(spaced.lower(), "081804", now=now)

    def test_invalid_secret_never_verifies(self):
        assert not verify_totp("!!!!", "123456", now=0)
