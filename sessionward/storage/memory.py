from __future__ import annotations

import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import (
    DeviceInfo,
    PasswordRecord,
    Principal,
    RenewalStats,
    RenewalToken,
    utcnow,
)

TokenMinter = Callable[[str, str, str, datetime], str]


def random_token_value(
    token_id: str, subject: str, family_id: str, expires_at: datetime
) -> str:
    """Opaque fallback when no signing codec is wired in."""
    return secrets.token_urlsafe(48)


class MemoryStore:
    """In-process principal and renewal-token store for tests and local runs.

    Every read returns a copy so callers can never observe a record
    mid-update; all writes happen under ``_data_lock``.
    """

    def __init__(
        self,
        *,
        token_minter: TokenMinter = random_token_value,
        default_max_uses: int = 10,
        default_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.renewal_tokens: Dict[str, RenewalToken] = {}
        self._by_value: Dict[str, str] = {}
        self.login_failures: Dict[str, Tuple[int, datetime]] = {}
        self.token_minter = token_minter
        self.default_max_uses = default_max_uses
        self.default_ttl_seconds = default_ttl_seconds
        self.clock = clock
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()

    # -- principals -------------------------------------------------------

    def create_principal(
        self,
        identifier: str,
        display_name: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> Principal:
        with self._data_lock:
            if identifier in self.principals:
                raise ConstraintViolation(
                    "principal already exists", {"field": "identifier"}
                )
            principal = Principal(
                identifier=identifier,
                display_name=display_name,
                role=role,
                is_active=is_active,
                created_at=self.clock(),
            )
            self.principals[identifier] = principal
            return replace(principal)

    def get_principal(self, identifier: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(identifier)
            return replace(principal) if principal else None

    def set_principal_active(self, identifier: str, is_active: bool) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(identifier)
            if not principal:
                return None
            principal.is_active = is_active
            return replace(principal)

    def touch_activity(self, identifier: str) -> None:
        with self._data_lock:
            principal = self.principals.get(identifier)
            if principal:
                principal.last_activity_at = self.clock()

    def save_password(
        self, identifier: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if identifier not in self.principals:
                raise ConstraintViolation(
                    "principal not found for credentials", {"identifier": identifier}
                )
            existing = self.credentials.get(identifier)
            self.credentials[identifier] = PasswordRecord(
                identifier=identifier,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else self.clock(),
                last_updated_at=self.clock() if existing else None,
            )

    def get_password_record(self, identifier: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.credentials.get(identifier)
            if not record:
                return None
            return record.password_hash, record.password_algo

    # -- login failure window ---------------------------------------------

    def record_login_failure(self, identifier: str, window_seconds: int) -> int:
        with self._data_lock:
            now = self.clock()
            count, started = self.login_failures.get(identifier, (0, now))
            if now - started >= timedelta(seconds=window_seconds):
                count, started = 0, now
            count += 1
            self.login_failures[identifier] = (count, started)
            return count

    def clear_login_failures(self, identifier: str) -> None:
        with self._data_lock:
            self.login_failures.pop(identifier, None)

    # -- renewal tokens ---------------------------------------------------

    def create_renewal_token(
        self,
        subject: str,
        device_info: DeviceInfo,
        family_id: Optional[str] = None,
        *,
        max_uses: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
    ) -> RenewalToken:
        with self._data_lock:
            if subject not in self.principals:
                raise ConstraintViolation("principal does not exist", {"subject": subject})
            now = self.clock()
            token_id = str(uuid.uuid4())
            family = family_id or str(uuid.uuid4())
            ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
            expires_at = now + timedelta(seconds=ttl)
            value = self.token_minter(token_id, subject, family, expires_at)
            if value in self._by_value:
                raise ConstraintViolation("token value collision", {"field": "token_value"})
            token = RenewalToken.new(
                subject,
                device_info,
                token_value=value,
                token_id=token_id,
                family_id=family,
                max_uses=max_uses if max_uses is not None else self.default_max_uses,
                ttl_seconds=ttl,
                now=now,
            )
            self.renewal_tokens[token.id] = token
            self._by_value[value] = token.id
            return replace(token)

    def get_by_token_value(self, token_value: str) -> Optional[RenewalToken]:
        with self._data_lock:
            token_id = self._by_value.get(token_value)
            if not token_id:
                return None
            return replace(self.renewal_tokens[token_id])

    def get_renewal_token(self, token_id: str) -> Optional[RenewalToken]:
        with self._data_lock:
            token = self.renewal_tokens.get(token_id)
            return replace(token) if token else None

    def list_active_for_subject(self, subject: str) -> List[RenewalToken]:
        with self._data_lock:
            tokens = [
                replace(token)
                for token in self.renewal_tokens.values()
                if token.subject == subject and token.is_active
            ]
        return sorted(tokens, key=lambda token: token.created_at, reverse=True)

    def increment_usage(
        self, token_id: str, expected_used_count: int
    ) -> Optional[RenewalToken]:
        """Compare-and-increment ``used_count``; ``None`` when the CAS fails."""
        with self._data_lock:
            token = self.renewal_tokens.get(token_id)
            now = self.clock()
            if not token or not token.is_valid(now):
                return None
            if token.used_count != expected_used_count:
                return None
            token.used_count += 1
            token.last_used_at = now
            return replace(token)

    def _deactivate(self, token: RenewalToken, reason: str, now: datetime) -> None:
        token.is_active = False
        token.invalidated_at = now
        token.invalidated_reason = reason

    def invalidate(self, token_id: str, reason: str = "logout") -> bool:
        with self._data_lock:
            token = self.renewal_tokens.get(token_id)
            if not token or not token.is_active:
                return False
            self._deactivate(token, reason, self.clock())
            return True

    def invalidate_family(
        self,
        family_id: str,
        *,
        expected_active_id: Optional[str] = None,
        reason: str = "rotated",
    ) -> int:
        with self._data_lock:
            if expected_active_id is not None:
                claimed = self.renewal_tokens.get(expected_active_id)
                if not claimed or not claimed.is_active or claimed.family_id != family_id:
                    return 0
            now = self.clock()
            count = 0
            for token in self.renewal_tokens.values():
                if token.family_id == family_id and token.is_active:
                    self._deactivate(token, reason, now)
                    count += 1
            return count

    def invalidate_all_for_subject(self, subject: str, reason: str = "revoked_all") -> int:
        with self._data_lock:
            now = self.clock()
            count = 0
            for token in self.renewal_tokens.values():
                if token.subject == subject and token.is_active:
                    self._deactivate(token, reason, now)
                    count += 1
            return count

    def cleanup_expired(self) -> int:
        with self._data_lock:
            now = self.clock()
            count = 0
            for token in self.renewal_tokens.values():
                if token.is_active and token.is_expired(now):
                    self._deactivate(token, "expired_cleanup", now)
                    count += 1
        if count:
            self.logger.info("renewal_tokens_cleaned_up", count=count)
        return count

    def renewal_stats(self, subject: Optional[str] = None) -> RenewalStats:
        stats = RenewalStats()
        with self._data_lock:
            now = self.clock()
            for token in self.renewal_tokens.values():
                if subject is not None and token.subject != subject:
                    continue
                stats.total += 1
                if token.is_active and not token.is_expired(now):
                    stats.active += 1
                if token.is_expired(now):
                    stats.expired += 1
                device = token.device_info.device_id or "unknown"
                stats.by_device[device] = stats.by_device.get(device, 0) + 1
                stats.by_family[token.family_id] = stats.by_family.get(token.family_id, 0) + 1
        return stats
