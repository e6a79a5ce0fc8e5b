from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

USER_AGENT_MAX_LENGTH = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    identifier: str
    display_name: str
    role: str = "user"
    is_active: bool = True
    last_activity_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordRecord:
    identifier: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class DeviceInfo:
    device_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "web"

    @classmethod
    def new(
        cls,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> "DeviceInfo":
        return cls(
            device_id=device_id or str(uuid.uuid4()),
            ip_address=ip_address,
            user_agent=user_agent[:USER_AGENT_MAX_LENGTH] if user_agent else None,
            device_type=(device_type or "web").lower(),
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "device_id": self.device_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "device_type": self.device_type,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "DeviceInfo":
        data = data or {}
        return cls(
            device_id=data.get("device_id") or str(uuid.uuid4()),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_type=data.get("device_type") or "web",
        )


@dataclass
class RenewalToken:
    id: str
    token_value: str
    subject: str
    family_id: str
    device_info: DeviceInfo
    max_uses: int
    created_at: datetime
    expires_at: datetime
    used_count: int = 0
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    invalidated_at: Optional[datetime] = None
    invalidated_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        subject: str,
        device_info: DeviceInfo,
        *,
        token_value: str,
        token_id: Optional[str] = None,
        family_id: Optional[str] = None,
        max_uses: int = 10,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        now: Optional[datetime] = None,
    ) -> "RenewalToken":
        now = now or utcnow()
        return cls(
            id=token_id or str(uuid.uuid4()),
            token_value=token_value,
            subject=subject,
            family_id=family_id or str(uuid.uuid4()),
            device_info=device_info,
            max_uses=max_uses,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_used_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_exhausted(self) -> bool:
        return self.used_count >= self.max_uses

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Active, unexpired and below the usage cap."""
        return self.is_active and not self.is_expired(now) and not self.is_exhausted()

    def invalid_reason(self, now: Optional[datetime] = None) -> Optional[str]:
        if not self.is_active:
            return "rotated" if self.invalidated_reason == "rotated" else "inactive"
        if self.is_expired(now):
            return "expired"
        if self.is_exhausted():
            return "exhausted"
        return None

    def to_view(self, now: Optional[datetime] = None) -> "SessionView":
        return SessionView(
            session_id=self.id,
            family_id=self.family_id,
            device_info=self.device_info,
            used_count=self.used_count,
            max_uses=self.max_uses,
            created_at=self.created_at,
            last_used_at=self.last_used_at,
            expires_at=self.expires_at,
            is_expired=self.is_expired(now),
            is_valid=self.is_valid(now),
        )


@dataclass
class SessionView:
    """Renewal-token projection without the secret token value."""

    session_id: str
    family_id: str
    device_info: DeviceInfo
    used_count: int
    max_uses: int
    created_at: datetime
    last_used_at: Optional[datetime]
    expires_at: datetime
    is_expired: bool
    is_valid: bool


@dataclass
class RenewalStats:
    total: int = 0
    active: int = 0
    expired: int = 0
    by_device: Dict[str, int] = field(default_factory=dict)
    by_family: Dict[str, int] = field(default_factory=dict)
