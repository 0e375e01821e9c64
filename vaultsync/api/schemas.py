from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Identifiers and names longer than this are truncated, not rejected.
MAX_DEVICE_FIELD_LENGTH = 128


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        # JSON allows lone surrogates; nothing downstream can store or hash them.
        raise ValueError("text is not valid UTF-8")
    return text


class TokenRequest(BaseModel):
    """Body of ``POST /identity/connect/token``, form or JSON encoded.

    Clients send a mix of camelCase and snake_case names and sometimes numbers
    where strings are expected, so every field is coerced to text.
    """

    model_config = ConfigDict(extra="ignore")

    grant_type: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    client_id: Optional[str] = None
    twoFactorToken: Optional[str] = None
    twoFactorProvider: Optional[str] = None
    twoFactorRemember: Optional[str] = None
    deviceIdentifier: Optional[str] = None
    device_identifier: Optional[str] = None
    deviceName: Optional[str] = None
    device_name: Optional[str] = None
    deviceType: Optional[str] = None
    device_type: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class RevocationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: Optional[str] = None
    token_type_hint: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class PreloginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None


class PreloginResponse(BaseModel):
    kdf: int
    kdfIterations: int
    kdfMemory: Optional[int] = None
    kdfParallelism: Optional[int] = None


class RegisterKeys(BaseModel):
    model_config = ConfigDict(extra="ignore")

    publicKey: Optional[str] = None
    encryptedPrivateKey: Optional[str] = None


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None
    name: Optional[str] = None
    masterPasswordHash: Optional[str] = None
    masterPasswordHint: Optional[str] = None
    key: Optional[str] = None
    kdf: Optional[int] = Field(default=None, ge=0)
    kdfIterations: Optional[int] = Field(default=None, gt=0)
    kdfMemory: Optional[int] = Field(default=None, gt=0)
    kdfParallelism: Optional[int] = Field(default=None, gt=0)
    keys: Optional[RegisterKeys] = None


class RegisterResponse(BaseModel):
    success: bool = True


class DeviceResponse(BaseModel):
    id: str
    name: str
    identifier: str
    type: int
    creationDate: datetime
    revisionDate: datetime
    object: Literal["device"] = "device"


class DeviceListResponse(BaseModel):
    data: List[DeviceResponse]
    object: Literal["list"] = "list"
    continuationToken: Optional[str] = None


class SecurityStampResponse(BaseModel):
    securityStamp: str
    object: Literal["securityStamp"] = "securityStamp"


class ProfileResponse(BaseModel):
    id: str
    name: str
    email: str
    emailVerified: bool = True
    premium: bool = True
    twoFactorEnabled: bool
    key: str
    privateKey: Optional[str] = None
    securityStamp: str
    object: Literal["profile"] = "profile"


class SyncResponse(BaseModel):
    profile: ProfileResponse
    object: Literal["sync"] = "sync"


class AttachmentDownloadResponse(BaseModel):
    id: str
    url: str
    object: Literal["attachment"] = "attachment"
