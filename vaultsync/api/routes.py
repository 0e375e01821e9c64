from __future__ import annotations

import base64
import binascii
import re
from pathlib import Path as FilePath
from typing import Any, Mapping, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError

from vaultsync.api.schemas import (
    MAX_DEVICE_FIELD_LENGTH,
    AttachmentDownloadResponse,
    DeviceListResponse,
    DeviceResponse,
    PreloginRequest,
    PreloginResponse,
    ProfileResponse,
    RegisterRequest,
    RegisterResponse,
    RevocationRequest,
    SecurityStampResponse,
    SyncResponse,
    TokenRequest,
)
from vaultsync.logging import get_logger
from vaultsync.service.auth import AuthContext, DeviceInfo
from vaultsync.service.errors import (
    InvalidRequestError,
    NotFoundError,
    TooManyRequestsError,
    UnsupportedGrantTypeError,
)
from vaultsync.service.fs import attachment_path
from vaultsync.service.runtime import get_runtime
from vaultsync.service.totp import is_totp_enabled
from vaultsync.storage.models import User

logger = get_logger(__name__)

identity_router = APIRouter(prefix="/identity", tags=["identity"])
# Routes under /api that do not take a bearer token.
public_router = APIRouter(prefix="/api", tags=["public"])
router = APIRouter(prefix="/api", tags=["api"])

_WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
_SYNC_PATH = "/api/sync"
BUDGET_ERROR_CODE = "Too many requests"
DEFAULT_DEVICE_NAME = "Unknown device"
DEFAULT_DEVICE_TYPE = 14
# devices.type is a 32-bit INTEGER column.
MAX_DEVICE_TYPE = 2**31 - 1
_LEADING_DIGITS = re.compile(r"\s*([0-9]+)")


# request helpers
def client_identifier(request: Request) -> str:
    """Caller address: Cloudflare header, then first forwarded hop, then peer."""
    connecting_ip = (request.headers.get("CF-Connecting-IP") or "").strip()
    if connecting_ip:
        return connecting_ip
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host.strip() or "unknown"
    return "unknown"


async def _read_form_or_json(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        form = await request.form()
        return {key: value for key, value in form.items()}
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("request body must be an object")
    return data


def _normalize_device_identifier(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized[:MAX_DEVICE_FIELD_LENGTH]


def _normalize_device_name(value: Optional[str]) -> str:
    normalized = (value or "").strip()
    if not normalized:
        return DEFAULT_DEVICE_NAME
    return normalized[:MAX_DEVICE_FIELD_LENGTH]


def _parse_device_type(value: Optional[str]) -> int:
    """Leading decimal digits only; anything else or out of range is the default."""
    match = _LEADING_DIGITS.match(value or "")
    if not match:
        return DEFAULT_DEVICE_TYPE
    digits = match.group(1).lstrip("0") or "0"
    if len(digits) > len(str(MAX_DEVICE_TYPE)):
        return DEFAULT_DEVICE_TYPE
    parsed = int(digits)
    return parsed if parsed <= MAX_DEVICE_TYPE else DEFAULT_DEVICE_TYPE


def read_device_info(body: TokenRequest, headers: Mapping[str, str]) -> DeviceInfo:
    """Device fields from the body, falling back to the client's headers."""
    identifier = body.deviceIdentifier or body.device_identifier
    name = body.deviceName or body.device_name
    device_type = body.deviceType or body.device_type
    return DeviceInfo(
        identifier=_normalize_device_identifier(
            identifier or headers.get("X-Device-Identifier")
        ),
        name=_normalize_device_name(name or headers.get("X-Device-Name")),
        type=_parse_device_type(device_type or headers.get("Device-Type")),
    )


def decode_request_email(raw: Optional[str]) -> Optional[str]:
    """``X-Request-Email`` is unpadded base64url; plain addresses are accepted too."""
    if not raw:
        return None
    normalized = raw.replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        decoded: Optional[str] = base64.b64decode(normalized, validate=True).decode(
            "utf-8"
        )
    except (binascii.Error, ValueError):
        decoded = None
    email = (decoded or raw).strip().lower()
    return email or None


def _looks_like_enc_string(value: Optional[str]) -> bool:
    """Client-encrypted values look like ``<type>.<iv>|<data>[|<mac>]``."""
    if not value:
        return False
    first_dot = value.find(".")
    if first_dot <= 0 or first_dot == len(value) - 1:
        return False
    return len(value[first_dot + 1 :].split("|")) >= 2


# dependencies
def _enforce_api_budget(runtime, request: Request, principal: AuthContext) -> None:
    client_id = client_identifier(request)
    limiter = runtime.rate_limiter
    if request.method == "GET" and request.url.path == _SYNC_PATH:
        check = limiter.consume_sync_read_budget(
            f"{principal.user_id}:{client_id}:sync"
        )
        label = "Sync rate limit exceeded"
    elif request.method in _WRITE_METHODS:
        check = limiter.consume_write_budget(f"{principal.user_id}:{client_id}:write")
        label = "Rate limit exceeded"
    else:
        return
    if not check.allowed:
        retry_after = check.retry_after_seconds or 0
        raise TooManyRequestsError(
            f"{label}. Try again in {retry_after} seconds.",
            retry_after_seconds=retry_after,
            error_code=BUDGET_ERROR_CODE,
        )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Secret check, bearer verification and request budgets, in that order."""
    runtime = get_runtime()
    runtime.auth.ensure_secret_safe()
    principal = runtime.auth.require_user(authorization)
    _enforce_api_budget(runtime, request, principal)
    return principal


# identity
@identity_router.post("/connect/token")
async def token(request: Request):
    """Password and refresh-token grants."""
    runtime = get_runtime()
    try:
        body = TokenRequest.model_validate(await _read_form_or_json(request))
    except (ValueError, ValidationError):
        raise InvalidRequestError("Invalid request payload")
    runtime.auth.ensure_secret_safe()

    if body.grant_type == "password":
        result = runtime.auth.password_grant(
            body.username,
            body.password,
            client_id=client_identifier(request),
            device=read_device_info(body, request.headers),
            two_factor_token=body.twoFactorToken,
            two_factor_provider=body.twoFactorProvider,
            two_factor_remember=body.twoFactorRemember,
        )
    elif body.grant_type == "refresh_token":
        result = runtime.auth.refresh_grant(body.refresh_token)
    else:
        raise UnsupportedGrantTypeError("Unsupported grant type")
    return JSONResponse(result, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})


@identity_router.post("/connect/revocation")
@identity_router.post("/connect/revoke")
async def revoke(request: Request) -> Response:
    """Best-effort revocation; always 200."""
    runtime = get_runtime()
    try:
        body = RevocationRequest.model_validate(await _read_form_or_json(request))
    except (ValueError, ValidationError):
        return Response(status_code=200)
    runtime.auth.revoke(body.token)
    return Response(status_code=200)


@identity_router.post("/accounts/prelogin", response_model=PreloginResponse)
async def prelogin(request: Request) -> PreloginResponse:
    runtime = get_runtime()
    try:
        body = PreloginRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        raise InvalidRequestError("Invalid JSON")
    email = (body.email or "").strip().lower()
    if not email:
        raise InvalidRequestError("Email is required")
    return PreloginResponse(**runtime.auth.prelogin(email))


# public /api routes
@public_router.get("/devices/knowndevice")
async def known_device(
    x_request_email: Optional[str] = Header(None, alias="X-Request-Email"),
    x_device_identifier: Optional[str] = Header(None, alias="X-Device-Identifier"),
) -> bool:
    """Passive probe; answers false rather than revealing whether the email exists."""
    runtime = get_runtime()
    email = decode_request_email(x_request_email)
    identifier = _normalize_device_identifier(x_device_identifier)
    if not email or not identifier:
        return False
    return runtime.auth.is_known_device(email, identifier)


@public_router.post("/accounts/register", response_model=RegisterResponse)
async def register(request: Request) -> RegisterResponse:
    runtime = get_runtime()
    runtime.auth.ensure_secret_safe_for_registration()
    try:
        raw = await request.json()
    except ValueError:
        raise InvalidRequestError("Invalid JSON")
    try:
        body = RegisterRequest.model_validate(raw)
    except ValidationError:
        raise InvalidRequestError("Invalid request payload")

    email = (body.email or "").strip().lower()
    keys = body.keys
    private_key = keys.encryptedPrivateKey if keys else None
    public_key = keys.publicKey if keys else None
    if not email or not body.masterPasswordHash or not body.key:
        raise InvalidRequestError("Email, masterPasswordHash, and key are required")
    if not private_key or not public_key:
        raise InvalidRequestError("Private key and public key are required")
    if not _looks_like_enc_string(body.key):
        raise InvalidRequestError("key is not a valid encrypted string")
    if not _looks_like_enc_string(private_key):
        raise InvalidRequestError("encryptedPrivateKey is not a valid encrypted string")

    user = User.new(
        email,
        body.masterPasswordHash,
        body.key,
        name=body.name,
        private_key=private_key,
        public_key=public_key,
        kdf_type=body.kdf if body.kdf is not None else 0,
        kdf_iterations=body.kdfIterations or runtime.settings.default_kdf_iterations,
        kdf_memory=body.kdfMemory,
        kdf_parallelism=body.kdfParallelism,
    )
    runtime.auth.register_first_user(user)
    return RegisterResponse()


@public_router.get("/attachments/{cipher_id}/{attachment_id}")
async def download_attachment(
    cipher_id: str = Path(...),
    attachment_id: str = Path(...),
    token: Optional[str] = Query(None),
) -> FileResponse:
    """Serve an attachment blob against a single-use download token."""
    runtime = get_runtime()
    runtime.auth.ensure_secret_safe("Server configuration error")
    claims = runtime.auth.verify_file_download_token(token, cipher_id, attachment_id)
    blob = attachment_path(
        FilePath(runtime.settings.shared_fs_root), cipher_id, attachment_id
    )
    if not blob.is_file():
        raise NotFoundError("Attachment not found")
    runtime.auth.consume_file_download_token(claims)
    return FileResponse(
        blob,
        media_type="application/octet-stream",
        headers={"Cache-Control": "private, no-cache"},
    )


# authenticated /api routes
@router.get("/devices", response_model=DeviceListResponse)
async def list_devices(principal: AuthContext = Depends(get_user)) -> DeviceListResponse:
    runtime = get_runtime()
    devices = runtime.auth.list_devices(principal.user_id)
    return DeviceListResponse(
        data=[
            DeviceResponse(
                id=device.device_identifier,
                name=device.name,
                identifier=device.device_identifier,
                type=device.type,
                creationDate=device.created_at,
                revisionDate=device.updated_at,
            )
            for device in devices
        ]
    )


@router.post("/accounts/security-stamp", response_model=SecurityStampResponse)
async def rotate_security_stamp(
    principal: AuthContext = Depends(get_user),
) -> SecurityStampResponse:
    """Rotate the stamp, invalidating every access token issued so far."""
    runtime = get_runtime()
    user = runtime.auth.rotate_security_stamp(principal.user_id)
    return SecurityStampResponse(securityStamp=user.security_stamp)


@router.get("/sync", response_model=SyncResponse)
async def sync(principal: AuthContext = Depends(get_user)) -> SyncResponse:
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return SyncResponse(
        profile=ProfileResponse(
            id=user.id,
            name=user.name,
            email=user.email,
            twoFactorEnabled=is_totp_enabled(runtime.settings.totp_secret),
            key=user.key,
            privateKey=user.private_key,
            securityStamp=user.security_stamp,
        )
    )


@router.get(
    "/ciphers/{cipher_id}/attachment/{attachment_id}",
    response_model=AttachmentDownloadResponse,
)
async def get_attachment(
    request: Request,
    cipher_id: str = Path(...),
    attachment_id: str = Path(...),
    principal: AuthContext = Depends(get_user),
) -> AttachmentDownloadResponse:
    """Mint a short-lived download URL for an attachment blob."""
    runtime = get_runtime()
    blob = attachment_path(
        FilePath(runtime.settings.shared_fs_root), cipher_id, attachment_id
    )
    if not blob.is_file():
        raise NotFoundError("Attachment not found")
    download_token = runtime.auth.issue_file_download_token(cipher_id, attachment_id)
    base_url = str(request.base_url).rstrip("/")
    logger.info(
        "attachment_token_issued",
        user_id=principal.user_id,
        cipher_id=cipher_id,
        attachment_id=attachment_id,
    )
    return AttachmentDownloadResponse(
        id=attachment_id,
        url=f"{base_url}/api/attachments/{cipher_id}/{attachment_id}?token={download_token}",
    )
