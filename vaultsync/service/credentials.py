from __future__ import annotations

import hashlib
import secrets

TOKEN_DIGEST_PREFIX = "sha256:"
OPAQUE_TOKEN_BYTES = 32


def verify_password(submitted_hash: str, stored_hash: str) -> bool:
    """Compare two client-side password hashes in constant time.

    Lengths are checked first; equal-length inputs are XOR-accumulated over
    every byte so the running time does not depend on where they differ.
    """
    if submitted_hash is None or stored_hash is None:
        return False
    left = submitted_hash.encode("utf-8", "surrogatepass")
    right = stored_hash.encode("utf-8", "surrogatepass")
    if len(left) != len(right):
        return False
    result = 0
    for a, b in zip(left, right):
        result |= a ^ b
    return result == 0


def generate_opaque_token(nbytes: int = OPAQUE_TOKEN_BYTES) -> str:
    """Random base64url token without padding."""
    return secrets.token_urlsafe(nbytes)


def token_digest(token: str) -> str:
    raw = token.encode("utf-8", "surrogatepass")
    return TOKEN_DIGEST_PREFIX + hashlib.sha256(raw).hexdigest()


def is_token_digest(value: str) -> bool:
    return value.startswith(TOKEN_DIGEST_PREFIX)
