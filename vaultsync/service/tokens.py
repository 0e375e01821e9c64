"""Compact HMAC-SHA256 signed tokens.

Tokens are ``header.payload.signature`` with each part base64url-encoded
without padding. Verification never raises: anything malformed, forged or
expired comes back as ``None``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from vaultsync.logging import get_logger
from vaultsync.storage.models import User

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}

# Claims every access token carries for client compatibility.
ACCESS_TOKEN_FIXED_CLAIMS: dict[str, Any] = {
    "email_verified": True,
    "amr": ["Application"],
    "premium": True,
}


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _signature(signing_input: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), signing_input.encode("utf-8"), hashlib.sha256
    ).digest()
    return encode_segment(digest)


def sign_token(
    claims: Mapping[str, Any],
    secret: str,
    ttl_seconds: int,
    *,
    issuer: Optional[str] = None,
    fixed_claims: Optional[Mapping[str, Any]] = None,
    now: Optional[float] = None,
) -> str:
    issued_at = int(time.time() if now is None else now)
    payload: dict[str, Any] = dict(claims)
    if fixed_claims:
        payload.update(fixed_claims)
    payload["iat"] = issued_at
    payload["exp"] = issued_at + int(ttl_seconds)
    if issuer:
        payload["iss"] = issuer
    header_enc = encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload_enc = encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_signature(signing_input, secret)}"


def verify_token(
    token: Optional[str], secret: str, *, now: Optional[float] = None
) -> Optional[dict[str, Any]]:
    if not token or not secret:
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    header_b64, payload_b64, sig_b64 = parts

    expected_sig = _signature(f"{header_b64}.{payload_b64}", secret)
    if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
        return None

    try:
        header = json.loads(decode_segment(header_b64))
        payload = json.loads(decode_segment(payload_b64))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        logger.warning("token_decode_failed")
        return None
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        logger.warning("token_invalid_algorithm")
        return None
    if not isinstance(payload, dict):
        return None

    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    current = time.time() if now is None else now
    if exp < current:
        return None
    return payload


def create_access_token(
    user: User,
    secret: str,
    *,
    ttl_seconds: int,
    issuer: str,
    now: Optional[float] = None,
) -> str:
    claims = {
        "sub": user.id,
        "email": user.email,
        "name": user.name,
        "sstamp": user.security_stamp,
    }
    return sign_token(
        claims,
        secret,
        ttl_seconds,
        issuer=issuer,
        fixed_claims=ACCESS_TOKEN_FIXED_CLAIMS,
        now=now,
    )


@dataclass
class FileTokenClaims:
    cipher_id: str
    attachment_id: str
    jti: str
    exp: int


def create_file_download_token(
    cipher_id: str,
    attachment_id: str,
    secret: str,
    *,
    ttl_seconds: int,
    now: Optional[float] = None,
) -> str:
    claims = {
        "cipherId": cipher_id,
        "attachmentId": attachment_id,
        "jti": str(uuid.uuid4()),
    }
    return sign_token(claims, secret, ttl_seconds, now=now)


def verify_file_download_token(
    token: Optional[str], secret: str, *, now: Optional[float] = None
) -> Optional[FileTokenClaims]:
    payload = verify_token(token, secret, now=now)
    if not payload:
        return None
    cipher_id = payload.get("cipherId")
    attachment_id = payload.get("attachmentId")
    jti = payload.get("jti")
    if not all(isinstance(v, str) and v for v in (cipher_id, attachment_id, jti)):
        return None
    return FileTokenClaims(
        cipher_id=cipher_id,
        attachment_id=attachment_id,
        jti=jti,
        exp=int(payload["exp"]),
    )
