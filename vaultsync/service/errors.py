from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and the ``error_code`` that
    clients read from the ``error`` field of the response body:
    - invalid_request (400)
    - invalid_grant (400)
    - unsupported_grant_type (400)
    - unauthorized (401)
    - forbidden, registration_closed (403)
    - not_found (404)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def payload(self) -> dict[str, Any]:
        """Extra top-level response fields merged into the error body."""
        return {}

    def headers(self) -> dict[str, str]:
        return {}


class InvalidRequestError(ServiceError):
    """Malformed body or missing required field (400)."""
    status_code = 400
    error_code = "invalid_request"


class UnsupportedGrantTypeError(InvalidRequestError):
    error_code = "unsupported_grant_type"


class InvalidGrantError(ServiceError):
    """Bad credentials, refresh token or two-factor code (400).

    Unknown users and wrong passwords raise this with the same message.
    """
    status_code = 400
    error_code = "invalid_grant"


class TwoFactorRequiredError(InvalidGrantError):
    """Challenge telling the client to prompt for a TOTP code."""

    def __init__(self, message: str = "Two factor required.") -> None:
        super().__init__(message)

    def payload(self) -> dict[str, Any]:
        return {"TwoFactorProviders": [0], "TwoFactorProviders2": {"0": None}}


class UnauthorizedError(ServiceError):
    """Missing, expired or revoked credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class RegistrationClosedError(ForbiddenError):
    """The single vault user already exists."""
    error_code = "registration_closed"

    def __init__(self, message: str = "Registration is closed") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class TooManyRequestsError(ServiceError):
    """Login lockout or exhausted request budget (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: int,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message, error_code=error_code)
        self.retry_after_seconds = max(0, int(retry_after_seconds))

    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(self.retry_after_seconds),
            "X-RateLimit-Remaining": "0",
        }


class ServerMisconfiguredError(ServiceError):
    """Signing secret is missing, a placeholder, or too short (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "InvalidRequestError",
    "UnsupportedGrantTypeError",
    "InvalidGrantError",
    "TwoFactorRequiredError",
    "UnauthorizedError",
    "ForbiddenError",
    "RegistrationClosedError",
    "NotFoundError",
    "TooManyRequestsError",
    "ServerMisconfiguredError",
]
