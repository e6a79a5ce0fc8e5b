from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sessionward.logging import get_logger
from sessionward.service import audit
from sessionward.service.audit import SecurityAuditSink, emit
from sessionward.service.credentials import CredentialVerifier
from sessionward.service.errors import (
    InvalidCredentialsError,
    PrincipalInactiveError,
    PrincipalNotFoundError,
)
from sessionward.service.stores import LoginFailureStore, PrincipalStore, RenewalTokenStore
from sessionward.service.tokens import AccessTokenCodec
from sessionward.storage.models import DeviceInfo, Principal
from sessionward.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def normalize_identifier(identifier: Optional[str]) -> str:
    return (identifier or "").strip().lower()


@dataclass
class LoginResult:
    principal: Principal
    access_token: str
    access_token_ttl_seconds: int
    renewal_token: str
    renewal_ttl_seconds: int
    device_info: DeviceInfo
    session_id: str
    token_type: str = "bearer"


class LoginAttemptTracker:
    """Counts failed logins per identifier inside a fixed window.

    Uses Redis when configured so the count is shared across workers and
    falls back to the primary store when Redis errors.
    """

    def __init__(
        self,
        store: LoginFailureStore,
        cache: Optional[RedisCache] = None,
        *,
        window_seconds: int = 900,
        threshold: int = 5,
    ) -> None:
        self.store = store
        self.cache = cache
        self.window_seconds = window_seconds
        self.threshold = threshold

    async def record_failure(self, identifier: str) -> int:
        if self.cache:
            try:
                return await self.cache.record_login_failure(identifier, self.window_seconds)
            except Exception as exc:
                logger.warning("login_failure_cache_failed", error=str(exc))
        return self.store.record_login_failure(identifier, self.window_seconds)

    async def clear(self, identifier: str) -> None:
        if self.cache:
            try:
                await self.cache.clear_login_failures(identifier)
            except Exception as exc:
                logger.warning("login_failure_cache_clear_failed", error=str(exc))
        self.store.clear_login_failures(identifier)

    def is_suspicious(self, failures: int) -> bool:
        return failures >= self.threshold


class SessionIssuer:
    """Login: verifies credentials and issues an access/renewal token pair."""

    def __init__(
        self,
        verifier: CredentialVerifier,
        principals: PrincipalStore,
        renewal_tokens: RenewalTokenStore,
        access_codec: AccessTokenCodec,
        audit_sink: SecurityAuditSink,
        attempts: LoginAttemptTracker,
        *,
        renewal_ttl_seconds: int,
    ) -> None:
        self.verifier = verifier
        self.principals = principals
        self.renewal_tokens = renewal_tokens
        self.access_codec = access_codec
        self.audit_sink = audit_sink
        self.attempts = attempts
        self.renewal_ttl_seconds = renewal_ttl_seconds

    async def login(
        self,
        identifier: str,
        secret: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> LoginResult:
        identifier = normalize_identifier(identifier)
        device = device_info or DeviceInfo.new()
        emit(
            self.audit_sink,
            audit.LOGIN_ATTEMPT,
            identifier=identifier,
            ip_address=device.ip_address,
            device_id=device.device_id,
        )

        if not identifier or not secret or not self.verifier.verify(identifier, secret):
            await self._reject_credentials(identifier, device)

        principal = self.principals.get_principal(identifier)
        if principal is None:
            self._login_failed(identifier, device, "principal_not_found")
            raise PrincipalNotFoundError("principal not found")
        if not principal.is_active:
            self._login_failed(identifier, device, "principal_inactive")
            raise PrincipalInactiveError("principal is inactive")

        access_token = self.access_codec.issue(principal)
        # Fresh family on every login; a failure here fails the whole login
        renewal = self.renewal_tokens.create_renewal_token(
            principal.identifier, device, ttl_seconds=self.renewal_ttl_seconds
        )
        await self.attempts.clear(identifier)

        emit(
            self.audit_sink,
            audit.LOGIN_SUCCESS,
            identifier=principal.identifier,
            role=principal.role,
            family_id=renewal.family_id,
            session_id=renewal.id,
            ip_address=device.ip_address,
            device_id=device.device_id,
        )
        return LoginResult(
            principal=principal,
            access_token=access_token,
            access_token_ttl_seconds=self.access_codec.ttl_seconds,
            renewal_token=renewal.token_value,
            renewal_ttl_seconds=self.renewal_ttl_seconds,
            device_info=device,
            session_id=renewal.id,
        )

    async def _reject_credentials(self, identifier: str, device: DeviceInfo) -> None:
        failures = await self.attempts.record_failure(identifier)
        if self.attempts.is_suspicious(failures):
            emit(
                self.audit_sink,
                audit.SUSPICIOUS_ACTIVITY,
                reason="repeated_invalid_credentials",
                identifier=identifier,
                failures=failures,
                ip_address=device.ip_address,
            )
        self._login_failed(identifier, device, "invalid_credentials", failures=failures)
        raise InvalidCredentialsError("invalid credentials")

    def _login_failed(
        self, identifier: str, device: DeviceInfo, reason: str, **extra
    ) -> None:
        emit(
            self.audit_sink,
            audit.LOGIN_FAILED,
            reason=reason,
            identifier=identifier,
            ip_address=device.ip_address,
            device_id=device.device_id,
            **extra,
        )
