from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sessionward.storage.models import DeviceInfo, Principal, SessionView

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "principal_not_found",
    "principal_inactive",
    "principal_invalid",
    "no_token",
    "empty_token",
    "token_expired",
    "token_malformed",
    "token_not_yet_valid",
    "invalid_token_payload",
    "renewal_token_not_found",
    "renewal_token_invalid",
    "renewal_token_malformed",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "method_not_allowed",
    "server_error",
})

_DEVICE_TYPES = frozenset({"web", "mobile", "desktop"})
_MAX_TOKEN_LENGTH = 4096
_TRUTHY_FLAGS = frozenset({"1", "true", "yes", "on"})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    hint: Optional[str] = None
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Local part per RFC 5322 atext plus dots; domain labels per RFC 1035
_EMAIL_PATTERN = re.compile(
    r"^(?P<local>[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64})"
    r"@(?P<domain>(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
    r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)$"
)
_INVISIBLE_CHARS = frozenset(
    ["\u200b", "\u200c", "\u200d", "\ufeff"]
    + [chr(code) for code in range(0x202A, 0x202F)]
    + [chr(code) for code in range(0x2066, 0x206A)]
)
_MAX_EMAIL_LENGTH = 254


def _strip_invisible(value: str) -> str:
    """Remove zero-width and bidi control characters, then NFKC-normalize."""
    visible = "".join(ch for ch in value if ch not in _INVISIBLE_CHARS)
    return unicodedata.normalize("NFKC", visible)


def _validate_email(value: str) -> str:
    """Normalize an email identifier to lower case or raise ``ValueError``."""
    candidate = _strip_invisible(value).strip().lower()
    if len(candidate) > _MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(candidate):
        raise ValueError("invalid email address")
    return candidate


def _normalize_device_type(value: Optional[str]) -> str:
    normalized = (value or "web").lower()
    if normalized not in _DEVICE_TYPES:
        raise ValueError(f"device_type must be one of: {', '.join(sorted(_DEVICE_TYPES))}")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)
    device_id: Optional[str] = Field(default=None, max_length=128)
    device_type: str = Field(default="web", max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("device_type")
    @classmethod
    def _validate_device_type(cls, value: str) -> str:
        return _normalize_device_type(value)


class RenewRequest(BaseModel):
    renewal_token: str = Field(..., max_length=_MAX_TOKEN_LENGTH)
    device_id: Optional[str] = Field(default=None, max_length=128)
    device_type: Optional[str] = Field(default=None, max_length=16)

    @field_validator("device_type")
    @classmethod
    def _validate_device_type(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_device_type(value) if value else None


class LogoutRequest(BaseModel):
    """Logout body. Read leniently: malformed fields are dropped, never rejected."""

    renewal_token: Optional[str] = None
    invalidate_all: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "LogoutRequest":
        if not isinstance(payload, dict):
            return cls()
        token = payload.get("renewal_token")
        if not isinstance(token, str) or not token.strip() or len(token) > _MAX_TOKEN_LENGTH:
            token = None
        flag = payload.get("invalidate_all")
        if isinstance(flag, str):
            flag = flag.strip().lower() in _TRUTHY_FLAGS
        return cls(renewal_token=token, invalidate_all=flag is True)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)
    # Session to keep signed in; every other renewal family is revoked
    renewal_token: Optional[str] = Field(default=None, max_length=_MAX_TOKEN_LENGTH)


class DeviceInfoResponse(BaseModel):
    device_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "web"

    @classmethod
    def from_device(cls, device: DeviceInfo) -> "DeviceInfoResponse":
        return cls(**device.to_dict())


class PrincipalResponse(BaseModel):
    identifier: str
    display_name: str
    role: str
    is_active: bool
    last_activity_at: Optional[datetime] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            identifier=principal.identifier,
            display_name=principal.display_name,
            role=principal.role,
            is_active=principal.is_active,
            last_activity_at=principal.last_activity_at,
        )


class LoginResponse(BaseModel):
    access_token: str
    access_token_ttl_seconds: int
    renewal_token: str
    renewal_ttl_seconds: int
    token_type: str = "bearer"
    session_id: str
    device_info: DeviceInfoResponse
    principal: PrincipalResponse


class RenewResponse(BaseModel):
    access_token: str
    access_token_ttl_seconds: int
    # Only set when the family rotated; otherwise keep using the current one
    renewal_token: Optional[str] = None
    rotated: bool
    token_type: str = "bearer"
    session_id: str


class IntrospectResponse(BaseModel):
    valid: bool = True
    principal: PrincipalResponse
    validated_at: datetime
    expires_at: Optional[datetime] = None
    seconds_remaining: int
    renew_recommended: bool


class LogoutResponse(BaseModel):
    invalidated_count: int


class ChangePasswordResponse(BaseModel):
    changed: bool = True
    revoked_count: int


class SessionResponse(BaseModel):
    session_id: str
    family_id: str
    device_info: DeviceInfoResponse
    used_count: int
    max_uses: int
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: datetime
    is_expired: bool
    is_valid: bool
    current: bool = False

    @classmethod
    def from_view(cls, view: SessionView, *, current: bool = False) -> "SessionResponse":
        return cls(
            session_id=view.session_id,
            family_id=view.family_id,
            device_info=DeviceInfoResponse.from_device(view.device_info),
            used_count=view.used_count,
            max_uses=view.max_uses,
            created_at=view.created_at,
            last_used_at=view.last_used_at,
            expires_at=view.expires_at,
            is_expired=view.is_expired,
            is_valid=view.is_valid,
            current=current,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    count: int


class SessionStatsResponse(BaseModel):
    total: int
    active: int
    expired: int
    by_device: Dict[str, int]
    by_family: Dict[str, int]
