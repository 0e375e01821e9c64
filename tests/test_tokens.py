"""Tests for the signed token codec, access tokens and file-download tokens."""

import json

from vaultsync.service.tokens import (
    ACCESS_TOKEN_FIXED_CLAIMS,
    create_access_token,
    create_file_download_token,
    decode_segment,
    encode_segment,
    sign_token,
    verify_file_download_token,
    verify_token,
)
from vaultsync.storage.models import User

SECRET = "unit-test-signing-secret-0123456789abcdef"
NOW = 1_700_000_000


def _user() -> User:
    return User.new("A@Example.com", "hash", "2.iv|data|mac", name="Alice")


class TestSignAndVerify:
    """Signing and verification of compact HMAC tokens."""

    def test_verify_returns_claims_with_injected_fields(self):
        token = sign_token({"sub": "u1", "n": 3}, SECRET, 60, issuer="vaultsync", now=NOW)
        payload = verify_token(token, SECRET, now=NOW + 30)
        assert payload["sub"] == "u1"
        assert payload["n"] == 3
        assert payload["iat"] == NOW
        assert payload["exp"] == NOW + 60
        assert payload["iss"] == "vaultsync"

    def test_token_has_hs256_header(self):
        token = sign_token({"sub": "u1"}, SECRET, 60, now=NOW)
        header = json.loads(decode_segment(token.split(".")[0]))
        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_expired_token_is_rejected(self):
        token = sign_token({"sub": "u1"}, SECRET, 60, now=NOW)
        assert verify_token(token, SECRET, now=NOW + 60) is not None
        assert verify_token(token, SECRET, now=NOW + 61) is None

    def test_other_secret_is_rejected(self):
        token = sign_token({"sub": "u1"}, SECRET, 60, now=NOW)
        assert verify_token(token, SECRET + "x", now=NOW) is None

    def test_tampered_payload_is_rejected(self):
        token = sign_token({"sub": "u1"}, SECRET, 60, now=NOW)
        header, _, signature = token.split(".")
        forged = encode_segment(json.dumps({"sub": "admin", "exp": NOW + 999}).encode())
        assert verify_token(f"{header}.{forged}.{signature}", SECRET, now=NOW) is None

    def test_malformed_inputs_never_raise(self):
        for token in ("", "abc", "a.b", "a.b.c.d", "!!!.???.***", None):
            assert verify_token(token, SECRET, now=NOW) is None

    def test_undecodable_payload_with_valid_signature_is_rejected(self):
        header = encode_segment(b'{"alg":"HS256","typ":"JWT"}')
        payload = encode_segment(b"not json")
        from vaultsync.service.tokens import _signature

        signature = _signature(f"{header}.{payload}", SECRET)
        assert verify_token(f"{header}.{payload}.{signature}", SECRET, now=NOW) is None

    def test_non_numeric_expiry_is_rejected(self):
        from vaultsync.service.tokens import _signature

        header = encode_segment(b'{"alg":"HS256","typ":"JWT"}')
        payload = encode_segment(b'{"sub":"u1","exp":"never"}')
        signature = _signature(f"{header}.{payload}", SECRET)
        assert verify_token(f"{header}.{payload}.{signature}", SECRET, now=NOW) is None


class TestAccessToken:
    """Access tokens carry identity, the security stamp and client claims."""

    def test_claims(self):
        user = _user()
        token = create_access_token(user, SECRET, ttl_seconds=7200, issuer="vaultsync", now=NOW)
        payload = verify_token(token, SECRET, now=NOW)
        assert payload["sub"] == user.id
        assert payload["email"] == "a@example.com"
        assert payload["name"] == "Alice"
        assert payload["sstamp"] == user.security_stamp
        assert payload["exp"] - payload["iat"] == 7200
        for key, value in ACCESS_TOKEN_FIXED_CLAIMS.items():
            assert payload[key] == value


class TestFileDownloadToken:
    """File tokens bind a cipher and attachment and carry a unique jti."""

    def test_round_trip(self):
        token = create_file_download_token("c1", "a1", SECRET, ttl_seconds=300, now=NOW)
        claims = verify_file_download_token(token, SECRET, now=NOW + 10)
        assert claims.cipher_id == "c1"
        assert claims.attachment_id == "a1"
        assert claims.exp == NOW + 300
        assert claims.jti

    def test_each_token_gets_a_fresh_jti(self):
        first = create_file_download_token("c1", "a1", SECRET, ttl_seconds=300, now=NOW)
        second = create_file_download_token("c1", "a1", SECRET, ttl_seconds=300, now=NOW)
        assert (
            verify_file_download_token(first, SECRET, now=NOW).jti
            != verify_file_download_token(second, SECRET, now=NOW).jti
        )

    def test_access_token_is_not_a_file_token(self):
        token = create_access_token(_user(), SECRET, ttl_seconds=60, issuer="x", now=NOW)
        assert verify_file_download_token(token, SECRET, now=NOW) is None

    def test_expired(self):
        token = create_file_download_token("c1", "a1", SECRET, ttl_seconds=300, now=NOW)
        assert verify_file_download_token(token, SECRET, now=NOW + 301) is None
