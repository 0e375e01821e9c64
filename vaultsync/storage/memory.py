from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vaultsync.logging import get_logger
from vaultsync.storage.models import (
    Device,
    LoginAttempt,
    RefreshTokenRecord,
    TrustedDeviceToken,
    User,
    utcnow,
)


class MemoryStore:
    """Process-local store used for tests and single-process development.

    Every read-modify-write runs under ``_data_lock`` so each public method is
    atomic with respect to the others, matching the single-statement
    guarantees of the Postgres store.
    """

    def __init__(self, fs_root: str = "/tmp/vaultsync") -> None:
        self.logger = get_logger(__name__)
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.users: Dict[str, User] = {}
        self.devices: Dict[Tuple[str, str], Device] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.trusted_tokens: Dict[str, TrustedDeviceToken] = {}
        self.login_attempts: Dict[str, LoginAttempt] = {}
        self.window_counters: Dict[Tuple[str, int], int] = {}
        self.used_token_ids: Dict[str, int] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # users
    def create_first_user(self, user: User) -> bool:
        with self._data_lock:
            if self.users:
                return False
            self.users[user.id] = user
            return True

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return user
        return None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def set_security_stamp(self, user_id: str, stamp: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, security_stamp=stamp, updated_at=utcnow())
            self.users[user_id] = updated
            return updated

    # refresh tokens
    def save_refresh_token(
        self, token_key: str, user_id: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            self.refresh_tokens[token_key] = RefreshTokenRecord(
                token_key=token_key, user_id=user_id, expires_at=expires_at
            )

    def get_refresh_token(self, token_key: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(token_key)

    def delete_refresh_token(self, token_key: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token_key, None) is not None

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [k for k, r in self.refresh_tokens.items() if r.expires_at < now]
            for key in expired:
                del self.refresh_tokens[key]
            return len(expired)

    # trusted two-factor device tokens
    def save_trusted_device_token(
        self,
        token_key: str,
        user_id: str,
        device_identifier: str,
        expires_at: datetime,
    ) -> None:
        now = utcnow()
        with self._data_lock:
            for key in [k for k, t in self.trusted_tokens.items() if t.expires_at < now]:
                del self.trusted_tokens[key]
            self.trusted_tokens[token_key] = TrustedDeviceToken(
                token_key=token_key,
                user_id=user_id,
                device_identifier=device_identifier,
                expires_at=expires_at,
            )

    def get_trusted_device_token(self, token_key: str) -> Optional[TrustedDeviceToken]:
        with self._data_lock:
            return self.trusted_tokens.get(token_key)

    # devices
    def upsert_device(self, device: Device) -> Device:
        key = (device.user_id, device.device_identifier)
        with self._data_lock:
            existing = self.devices.get(key)
            if existing:
                device = replace(
                    existing,
                    name=device.name,
                    type=device.type,
                    updated_at=device.updated_at,
                )
            self.devices[key] = device
            return device

    def list_devices(self, user_id: str) -> List[Device]:
        with self._data_lock:
            devices = [d for (uid, _), d in self.devices.items() if uid == user_id]
        return sorted(devices, key=lambda d: d.updated_at, reverse=True)

    def is_known_device_by_email(self, email: str, device_identifier: str) -> bool:
        with self._data_lock:
            user = self.get_user_by_email(email)
            if not user:
                return False
            return (user.id, device_identifier) in self.devices

    # login attempts
    def get_login_attempt(self, client_id: str) -> Optional[LoginAttempt]:
        with self._data_lock:
            return self.login_attempts.get(client_id)

    def increment_login_attempt(self, client_id: str, now: datetime) -> int:
        with self._data_lock:
            record = self.login_attempts.get(client_id)
            if record is None:
                record = LoginAttempt(client_id=client_id, attempts=0)
            record = replace(record, attempts=record.attempts + 1, updated_at=now)
            self.login_attempts[client_id] = record
            return record.attempts

    def lock_login_attempt(
        self, client_id: str, locked_until: datetime, now: datetime
    ) -> None:
        with self._data_lock:
            record = self.login_attempts.get(client_id)
            if record is None:
                return
            self.login_attempts[client_id] = replace(
                record, locked_until=locked_until, updated_at=now
            )

    def delete_login_attempt(self, client_id: str) -> None:
        with self._data_lock:
            self.login_attempts.pop(client_id, None)

    def delete_stale_login_attempts(self, cutoff: datetime, now: datetime) -> int:
        with self._data_lock:
            stale = [
                key
                for key, record in self.login_attempts.items()
                if record.updated_at < cutoff
                and (record.locked_until is None or record.locked_until < now)
            ]
            for key in stale:
                del self.login_attempts[key]
            return len(stale)

    # fixed-window counters
    def increment_window_counter(
        self, identifier: str, window_start: int, max_requests: int
    ) -> Optional[int]:
        """Insert at 1 or increment while below ``max_requests``; None when denied."""
        key = (identifier, window_start)
        with self._data_lock:
            current = self.window_counters.get(key)
            if current is None:
                self.window_counters[key] = 1
                return 1
            if current >= max_requests:
                return None
            self.window_counters[key] = current + 1
            return current + 1

    def delete_window_counters_before(self, cutoff: int) -> int:
        with self._data_lock:
            stale = [key for key in self.window_counters if key[1] < cutoff]
            for key in stale:
                del self.window_counters[key]
            return len(stale)

    # single-use token ids
    def consume_token_id(self, jti: str, expires_at: int) -> bool:
        with self._data_lock:
            if jti in self.used_token_ids:
                return False
            self.used_token_ids[jti] = expires_at
            return True

    def delete_expired_token_ids(self, now: int) -> int:
        with self._data_lock:
            expired = [jti for jti, exp in self.used_token_ids.items() if exp < now]
            for jti in expired:
                del self.used_token_ids[jti]
            return len(expired)
