from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import time
from typing import Optional

from vaultsync.logging import get_logger

logger = get_logger(__name__)

TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6
# One step of clock drift tolerated in each direction.
TOTP_DRIFT_STEPS = 1

_SEPARATORS = re.compile(r"[\s-]+")
_CODE_PATTERN = re.compile(r"[0-9]{6}")


def normalize_secret(secret: Optional[str]) -> str:
    """Uppercase a base32 secret and drop separators and trailing padding."""
    if not secret:
        return ""
    return _SEPARATORS.sub("", secret).upper().rstrip("=")


def decode_secret(secret: Optional[str]) -> Optional[bytes]:
    normalized = normalize_secret(secret)
    if not normalized:
        return None
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        key = base64.b32decode(padded)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return None
    return key or None


def is_totp_enabled(secret: Optional[str]) -> bool:
    return bool(normalize_secret(secret))


def hotp(key: bytes, counter: int, *, digits: int = TOTP_DIGITS) -> str:
    """RFC 4226 HOTP value for ``counter`` using HMAC-SHA1."""
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def time_step(timestamp: float, *, interval: int = TOTP_STEP_SECONDS) -> int:
    return int(timestamp // interval)


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_STEP_SECONDS
) -> Optional[str]:
    key = decode_secret(secret)
    if key is None:
        return None
    return hotp(key, time_step(timestamp, interval=interval))


def verify_totp(
    secret: Optional[str],
    code: Optional[str],
    *,
    now: Optional[float] = None,
    interval: int = TOTP_STEP_SECONDS,
    drift_steps: int = TOTP_DRIFT_STEPS,
) -> bool:
    """Check a submitted 6-digit code against the steps around ``now``."""
    if not code:
        return False
    submitted = re.sub(r"\s+", "", code)
    if not _CODE_PATTERN.fullmatch(submitted):
        return False
    key = decode_secret(secret)
    if key is None:
        return False
    counter = time_step(time.time() if now is None else now, interval=interval)
    for offset in range(-drift_steps, drift_steps + 1):
        candidate = counter + offset
        if candidate < 0:
            continue
        if hmac.compare_digest(hotp(key, candidate), submitted):
            return True
    return False
