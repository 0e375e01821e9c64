from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    """The single vault owner.

    ``key``, ``private_key`` and ``public_key`` are client-encrypted blobs that
    the server stores and returns without interpreting them.
    """

    id: str
    email: str
    name: str
    master_password_hash: str
    key: str
    private_key: Optional[str] = None
    public_key: Optional[str] = None
    kdf_type: int = 0
    kdf_iterations: int = 600000
    kdf_memory: Optional[int] = None
    kdf_parallelism: Optional[int] = None
    security_stamp: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        master_password_hash: str,
        key: str,
        *,
        name: Optional[str] = None,
        private_key: Optional[str] = None,
        public_key: Optional[str] = None,
        kdf_type: int = 0,
        kdf_iterations: int = 600000,
        kdf_memory: Optional[int] = None,
        kdf_parallelism: Optional[int] = None,
    ) -> "User":
        normalized = email.strip().lower()
        return cls(
            id=str(uuid.uuid4()),
            email=normalized,
            name=name or normalized,
            master_password_hash=master_password_hash,
            key=key,
            private_key=private_key,
            public_key=public_key,
            kdf_type=kdf_type,
            kdf_iterations=kdf_iterations,
            kdf_memory=kdf_memory,
            kdf_parallelism=kdf_parallelism,
        )


@dataclass
class Device:
    user_id: str
    device_identifier: str
    name: str = "Unknown device"
    type: int = 14
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    # ``token_key`` is the sha256 digest form; legacy rows hold the raw token.
    token_key: str
    user_id: str
    expires_at: datetime


@dataclass
class TrustedDeviceToken:
    token_key: str
    user_id: str
    device_identifier: str
    expires_at: datetime


@dataclass
class LoginAttempt:
    client_id: str
    attempts: int
    locked_until: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
