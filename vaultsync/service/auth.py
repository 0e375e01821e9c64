from __future__ import annotations

import math
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol

from vaultsync.config import Settings
from vaultsync.logging import get_logger
from vaultsync.service.credentials import (
    generate_opaque_token,
    is_token_digest,
    token_digest,
    verify_password,
)
from vaultsync.service.errors import (
    InvalidGrantError,
    InvalidRequestError,
    NotFoundError,
    RegistrationClosedError,
    ServerMisconfiguredError,
    TooManyRequestsError,
    TwoFactorRequiredError,
    UnauthorizedError,
)
from vaultsync.service.ratelimit import CleanupGate, RateLimitService
from vaultsync.service.tokens import (
    FileTokenClaims,
    create_access_token,
    create_file_download_token,
    verify_file_download_token,
    verify_token,
)
from vaultsync.service.totp import is_totp_enabled, verify_totp
from vaultsync.storage.models import (
    Device,
    RefreshTokenRecord,
    TrustedDeviceToken,
    User,
)

logger = get_logger(__name__)

REFRESH_CLEANUP_INTERVAL_SECONDS = 30 * 60
USED_TOKEN_CLEANUP_INTERVAL_SECONDS = 10 * 60

BAD_CREDENTIALS_MESSAGE = "Username or password is incorrect. Try again"
MISCONFIGURED_SECRET_MESSAGE = (
    "Server configuration error: JWT_SECRET is not set or too weak"
)
REGISTRATION_SECRET_MESSAGES = {
    "missing": "JWT_SECRET is not set",
    "default": "JWT_SECRET is using the default/sample value. Please change it.",
    "too_short": "JWT_SECRET must be at least 32 characters",
}
REMEMBER_VALUES = frozenset({"1", "true", "True", "TRUE", "on", "yes", "Yes", "YES"})
LOCKOUT_ERROR_CODE = "TooManyRequests"

_SIX_DIGITS = re.compile(r"[0-9]{6}")


class AuthStore(Protocol):
    def create_first_user(self, user: User) -> bool: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def set_security_stamp(self, user_id: str, stamp: str) -> Optional[User]: ...

    def save_refresh_token(
        self, token_key: str, user_id: str, expires_at: datetime
    ) -> None: ...

    def get_refresh_token(self, token_key: str) -> Optional[RefreshTokenRecord]: ...

    def delete_refresh_token(self, token_key: str) -> bool: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...

    def save_trusted_device_token(
        self,
        token_key: str,
        user_id: str,
        device_identifier: str,
        expires_at: datetime,
    ) -> None: ...

    def get_trusted_device_token(
        self, token_key: str
    ) -> Optional[TrustedDeviceToken]: ...

    def upsert_device(self, device: Device) -> Device: ...

    def list_devices(self, user_id: str) -> List[Device]: ...

    def is_known_device_by_email(self, email: str, device_identifier: str) -> bool: ...

    def consume_token_id(self, jti: str, expires_at: int) -> bool: ...

    def delete_expired_token_ids(self, now: int) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    security_stamp: str


@dataclass
class DeviceInfo:
    identifier: Optional[str] = None
    name: str = "Unknown device"
    type: int = 14


def remember_requested(value: Any) -> bool:
    return str(value or "").strip() in REMEMBER_VALUES


def build_token_response(
    user: User,
    access_token: str,
    refresh_token: str,
    *,
    expires_in: int,
    trusted_device_token: Optional[str] = None,
) -> dict[str, Any]:
    """Token endpoint body in the shape Bitwarden clients expect."""
    response: dict[str, Any] = {
        "access_token": access_token,
        "expires_in": expires_in,
        "token_type": "Bearer",
        "refresh_token": refresh_token,
    }
    if trusted_device_token:
        response["TwoFactorToken"] = trusted_device_token
    response.update(
        {
            "Key": user.key,
            "PrivateKey": user.private_key,
            "Kdf": user.kdf_type,
            "KdfIterations": user.kdf_iterations,
            "KdfMemory": user.kdf_memory,
            "KdfParallelism": user.kdf_parallelism,
            "ForcePasswordReset": False,
            "ResetMasterPassword": False,
            "scope": "api offline_access",
            "unofficialServer": True,
            "UserDecryptionOptions": {
                "HasMasterPassword": True,
                "Object": "userDecryptionOptions",
                "MasterPasswordUnlock": {
                    "Kdf": {
                        "KdfType": user.kdf_type,
                        "Iterations": user.kdf_iterations,
                        "Memory": user.kdf_memory or None,
                        "Parallelism": user.kdf_parallelism or None,
                    },
                    "MasterKeyEncryptedUserKey": user.key,
                    "MasterKeyWrappedUserKey": user.key,
                    "Salt": user.email.lower(),
                    "Object": "masterPasswordUnlock",
                },
            },
        }
    )
    return response


class AuthService:
    """Login, refresh, revocation, second factor and single-use file tokens.

    Every piece of shared state lives in the store; the only instance state is
    the pair of cleanup gates, which affect how often expired rows are purged
    and nothing else.
    """

    def __init__(
        self,
        store: AuthStore,
        rate_limiter: RateLimitService,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.settings = settings
        self.logger = logger
        self._clock = clock
        self._refresh_cleanup = CleanupGate(
            REFRESH_CLEANUP_INTERVAL_SECONDS,
            settings.cleanup_probability,
            clock=clock,
        )
        self._used_token_cleanup = CleanupGate(
            USED_TOKEN_CLEANUP_INTERVAL_SECONDS,
            settings.cleanup_probability,
            clock=clock,
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @property
    def secret(self) -> str:
        return self.settings.jwt_secret

    def ensure_secret_safe(self, message: str = MISCONFIGURED_SECRET_MESSAGE) -> None:
        problem = self.settings.secret_problem
        if problem:
            self.logger.error("jwt_secret_misconfigured", reason=problem)
            raise ServerMisconfiguredError(message)

    # token issuance
    def _issue_access_token(self, user: User) -> str:
        return create_access_token(
            user,
            self.secret,
            ttl_seconds=self.settings.access_token_ttl_seconds,
            issuer=self.settings.jwt_issuer,
            now=self._clock(),
        )

    def _issue_refresh_token(self, user_id: str) -> str:
        now = self._now()
        self._maybe_cleanup_refresh_tokens(now)
        token = generate_opaque_token()
        expires_at = now + timedelta(days=self.settings.refresh_token_ttl_days)
        self.store.save_refresh_token(token_digest(token), user_id, expires_at)
        return token

    def _token_response(
        self, user: User, *, trusted_device_token: Optional[str] = None
    ) -> dict[str, Any]:
        return build_token_response(
            user,
            self._issue_access_token(user),
            self._issue_refresh_token(user.id),
            expires_in=self.settings.access_token_ttl_seconds,
            trusted_device_token=trusted_device_token,
        )

    # password grant
    def _fail_login(self, client_id: str, message: str) -> None:
        failure = self.rate_limiter.record_failed_login(client_id)
        if failure.locked:
            retry_after = failure.retry_after_seconds or 0
            raise TooManyRequestsError(
                "Too many failed login attempts. Account locked for "
                f"{math.ceil(retry_after / 60)} minutes.",
                retry_after_seconds=retry_after,
                error_code=LOCKOUT_ERROR_CODE,
            )
        raise InvalidGrantError(message)

    def password_grant(
        self,
        email: Optional[str],
        password_hash: Optional[str],
        *,
        client_id: str,
        device: Optional[DeviceInfo] = None,
        two_factor_token: Optional[str] = None,
        two_factor_provider: Optional[str] = None,
        two_factor_remember: Any = None,
    ) -> dict[str, Any]:
        email = (email or "").strip().lower()
        if not email or not password_hash:
            raise InvalidRequestError("Email and password are required")
        device = device or DeviceInfo()

        # Lockout is checked before the user lookup so unknown emails count too.
        check = self.rate_limiter.check_login_attempt(client_id)
        if not check.allowed:
            retry_after = check.retry_after_seconds or 0
            raise TooManyRequestsError(
                "Too many failed login attempts. Try again in "
                f"{math.ceil(retry_after / 60)} minutes.",
                retry_after_seconds=retry_after,
                error_code=LOCKOUT_ERROR_CODE,
            )

        user = self.store.get_user_by_email(email)
        if user is None:
            self.rate_limiter.record_failed_login(client_id)
            raise InvalidGrantError(BAD_CREDENTIALS_MESSAGE)
        if not verify_password(password_hash, user.master_password_hash):
            self._fail_login(client_id, BAD_CREDENTIALS_MESSAGE)

        if device.identifier:
            self.store.upsert_device(
                Device(
                    user_id=user.id,
                    device_identifier=device.identifier,
                    name=device.name,
                    type=device.type,
                )
            )

        trusted_device_token: Optional[str] = None
        if is_totp_enabled(self.settings.totp_secret):
            trusted_device_token = self._second_factor(
                user,
                client_id=client_id,
                device=device,
                token=two_factor_token,
                provider=two_factor_provider,
                remember=remember_requested(two_factor_remember),
            )

        self.rate_limiter.clear_login_attempts(client_id)
        self.logger.info("login_succeeded", user_id=user.id, device=device.identifier)
        return self._token_response(user, trusted_device_token=trusted_device_token)

    def _second_factor(
        self,
        user: User,
        *,
        client_id: str,
        device: DeviceInfo,
        token: Optional[str],
        provider: Optional[str],
        remember: bool,
    ) -> Optional[str]:
        """Run the TOTP step; returns a new trusted-device token when one was requested."""
        if str(provider if provider is not None else "").strip() not in ("", "0"):
            raise InvalidGrantError("Unsupported two-factor provider")

        passed_by_trusted_device = False
        if token and not _SIX_DIGITS.fullmatch(token) and device.identifier:
            passed_by_trusted_device = self._trusted_device_matches(
                token, user.id, device.identifier
            )

        if not passed_by_trusted_device:
            if not token:
                raise TwoFactorRequiredError()
            if not verify_totp(self.settings.totp_secret, token, now=self._clock()):
                self._fail_login(client_id, "Invalid two-factor token")

        if remember and device.identifier:
            trusted = generate_opaque_token()
            expires_at = self._now() + timedelta(
                days=self.settings.trusted_device_ttl_days
            )
            self.store.save_trusted_device_token(
                token_digest(trusted), user.id, device.identifier, expires_at
            )
            return trusted
        return None

    def _trusted_device_matches(
        self, token: str, user_id: str, device_identifier: str
    ) -> bool:
        record = self.store.get_trusted_device_token(token_digest(token))
        if record is None or record.device_identifier != device_identifier:
            return False
        if record.expires_at < self._now():
            return False
        return record.user_id == user_id

    # refresh grant
    def _lookup_refresh_token(
        self, token: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        key = token_digest(token)
        record = self.store.get_refresh_token(key)
        if record is not None:
            return record
        # A presented digest must never match its own stored row.
        if is_token_digest(token):
            return None
        legacy = self.store.get_refresh_token(token)
        if legacy is None:
            return None
        if legacy.expires_at < now:
            self.store.delete_refresh_token(token)
            return None
        self.store.save_refresh_token(key, legacy.user_id, legacy.expires_at)
        self.store.delete_refresh_token(token)
        self.logger.info("refresh_token_migrated", user_id=legacy.user_id)
        return RefreshTokenRecord(
            token_key=key, user_id=legacy.user_id, expires_at=legacy.expires_at
        )

    def refresh_grant(self, refresh_token: Optional[str]) -> dict[str, Any]:
        if not refresh_token:
            raise InvalidRequestError("Refresh token is required")
        now = self._now()
        self._maybe_cleanup_refresh_tokens(now)

        record = self._lookup_refresh_token(refresh_token, now)
        if record is None:
            raise InvalidGrantError("Invalid refresh token")
        # Deleting first makes the token single use; a racing redeemer loses here.
        if not self.store.delete_refresh_token(record.token_key):
            self.logger.warning("refresh_token_replayed", user_id=record.user_id)
            raise InvalidGrantError("Invalid refresh token")
        if record.expires_at < now:
            raise InvalidGrantError("Invalid refresh token")

        user = self.store.get_user(record.user_id)
        if user is None:
            raise InvalidGrantError("Invalid refresh token")
        return self._token_response(user)

    def revoke(self, token: Optional[str]) -> None:
        """Best-effort refresh token revocation; unknown tokens are ignored."""
        token = (token or "").strip()
        if not token:
            return
        try:
            if not is_token_digest(token):
                self.store.delete_refresh_token(token)
            self.store.delete_refresh_token(token_digest(token))
        except Exception as exc:
            self.logger.warning("refresh_token_revoke_failed", error=str(exc))

    # access tokens
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        parts = header.split(" ")
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return None
        return parts[1]

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = verify_token(token, self.secret, now=self._clock())
        if not payload:
            return None
        user_id = payload.get("sub")
        user = self.store.get_user(user_id) if isinstance(user_id, str) else None
        if not user:
            return None
        if payload.get("sstamp") != user.security_stamp:
            self.logger.info("access_token_stamp_mismatch", user_id=user.id)
            return None
        return AuthContext(
            user_id=user.id, email=user.email, security_stamp=user.security_stamp
        )

    def require_user(self, authorization: Optional[str]) -> AuthContext:
        ctx = self.authenticate(authorization)
        if ctx is None:
            raise UnauthorizedError("Unauthorized")
        return ctx

    def rotate_security_stamp(self, user_id: str) -> User:
        user = self.store.set_security_stamp(user_id, str(uuid.uuid4()))
        if user is None:
            raise NotFoundError("User not found")
        self.logger.info("security_stamp_rotated", user_id=user_id)
        return user

    # single-use file tokens
    def issue_file_download_token(self, cipher_id: str, attachment_id: str) -> str:
        return create_file_download_token(
            cipher_id,
            attachment_id,
            self.secret,
            ttl_seconds=self.settings.file_token_ttl_seconds,
            now=self._clock(),
        )

    def verify_file_download_token(
        self, token: Optional[str], cipher_id: str, attachment_id: str
    ) -> FileTokenClaims:
        """Signature, expiry and resource binding; does not consume the token."""
        if not token:
            raise UnauthorizedError("Token required")
        claims = verify_file_download_token(token, self.secret, now=self._clock())
        if claims is None:
            raise UnauthorizedError("Invalid or expired token")
        if claims.cipher_id != cipher_id or claims.attachment_id != attachment_id:
            raise UnauthorizedError("Token mismatch")
        return claims

    def consume_file_download_token(self, claims: FileTokenClaims) -> None:
        self._maybe_cleanup_used_tokens()
        if not self.store.consume_token_id(claims.jti, claims.exp):
            self.logger.warning("file_token_replayed", jti=claims.jti)
            raise UnauthorizedError("Invalid or expired token")

    def redeem_file_download_token(
        self, token: Optional[str], cipher_id: str, attachment_id: str
    ) -> FileTokenClaims:
        claims = self.verify_file_download_token(token, cipher_id, attachment_id)
        self.consume_file_download_token(claims)
        return claims

    # devices and account lookups
    def is_known_device(self, email: str, device_identifier: str) -> bool:
        if not email or not device_identifier:
            return False
        return self.store.is_known_device_by_email(email, device_identifier)

    def list_devices(self, user_id: str) -> List[Device]:
        return self.store.list_devices(user_id)

    def prelogin(self, email: str) -> dict[str, Any]:
        user = self.store.get_user_by_email(email)
        if user is None:
            return {
                "kdf": 0,
                "kdfIterations": self.settings.default_kdf_iterations,
                "kdfMemory": None,
                "kdfParallelism": None,
            }
        return {
            "kdf": user.kdf_type,
            "kdfIterations": user.kdf_iterations,
            "kdfMemory": user.kdf_memory,
            "kdfParallelism": user.kdf_parallelism,
        }

    def ensure_secret_safe_for_registration(self) -> None:
        problem = self.settings.secret_problem
        if problem:
            self.logger.error("jwt_secret_misconfigured", reason=problem)
            raise InvalidRequestError(REGISTRATION_SECRET_MESSAGES[problem])

    def register_first_user(self, user: User) -> User:
        if not self.store.create_first_user(user):
            self.logger.warning("registration_closed")
            raise RegistrationClosedError()
        self.logger.info("user_registered", user_id=user.id)
        return user

    # cleanup
    def _maybe_cleanup_refresh_tokens(self, now: datetime) -> None:
        if not self._refresh_cleanup.should_run():
            return
        try:
            removed = self.store.delete_expired_refresh_tokens(now)
        except Exception as exc:
            self.logger.warning("refresh_token_cleanup_failed", error=str(exc))
            return
        self._refresh_cleanup.mark_ran()
        self.logger.debug("refresh_token_cleanup", removed=removed)

    def _maybe_cleanup_used_tokens(self) -> None:
        if not self._used_token_cleanup.should_run():
            return
        try:
            removed = self.store.delete_expired_token_ids(int(self._clock()))
        except Exception as exc:
            self.logger.warning("used_token_cleanup_failed", error=str(exc))
            return
        self._used_token_cleanup.mark_ran()
        self.logger.debug("used_token_cleanup", removed=removed)
