from __future__ import annotations

import os
from typing import Any, Literal, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from vaultsync.logging import get_logger

logger = get_logger(__name__)

# Placeholder shipped in the sample configuration; never a valid signing secret.
DEFAULT_DEV_SECRET = "Enter-your-JWT-key-here-at-least-32-characters"
JWT_SECRET_MIN_LENGTH = 32

SecretProblem = Literal["missing", "default", "too_short"]


def jwt_secret_problem(secret: Optional[str]) -> Optional[SecretProblem]:
    """Classify an unsafe signing secret, or return None when it is usable."""
    value = (secret or "").strip()
    if not value:
        return "missing"
    if value == DEFAULT_DEV_SECRET:
        return "default"
    if len(value) < JWT_SECRET_MIN_LENGTH:
        return "too_short"
    return None


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the vault-sync server."""

    database_url: str = env_field(
        "postgresql://localhost:5432/vaultsync", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/vaultsync", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests.",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    jwt_secret: str = env_field("", "JWT_SECRET")
    jwt_issuer: str = env_field("vaultsync", "JWT_ISSUER")
    totp_secret: Optional[str] = env_field(
        None,
        "TOTP_SECRET",
        description="Base32 TOTP secret; two-factor login is disabled when unset.",
    )
    access_token_ttl_seconds: int = env_field(7200, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    file_token_ttl_seconds: int = env_field(300, "FILE_TOKEN_TTL_SECONDS")
    trusted_device_ttl_days: int = env_field(30, "TRUSTED_DEVICE_TTL_DAYS")
    default_kdf_iterations: int = env_field(600000, "DEFAULT_KDF_ITERATIONS")

    login_max_attempts: int = env_field(10, "LOGIN_MAX_ATTEMPTS")
    login_lockout_minutes: int = env_field(2, "LOGIN_LOCKOUT_MINUTES")
    api_write_rate_limit_per_minute: int = env_field(
        120, "API_WRITE_RATE_LIMIT_PER_MINUTE"
    )
    api_sync_rate_limit_per_minute: int = env_field(
        1000, "API_SYNC_RATE_LIMIT_PER_MINUTE"
    )
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    cleanup_probability: float = env_field(
        0.05,
        "CLEANUP_PROBABILITY",
        description="Chance per request that expired rate-limit rows are purged.",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret")
    @classmethod
    def _strip_jwt_secret(cls, value: str | None) -> str:
        # Unsafe secrets are refused per request, not at load time.
        value = (value or "").strip()
        problem = jwt_secret_problem(value)
        if problem:
            logger.warning("jwt_secret_unsafe", reason=problem)
        return value

    @field_validator("totp_secret")
    @classmethod
    def _blank_totp_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("cleanup_probability")
    @classmethod
    def _validate_probability(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("cleanup_probability must be between 0 and 1")
        return value

    @field_validator(
        "login_max_attempts",
        "rate_limit_window_seconds",
        "api_write_rate_limit_per_minute",
        "api_sync_rate_limit_per_minute",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("rate limit settings must be positive")
        return value

    @property
    def secret_problem(self) -> Optional[SecretProblem]:
        return jwt_secret_problem(self.jwt_secret)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
