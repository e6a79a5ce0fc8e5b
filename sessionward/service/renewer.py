from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sessionward.logging import get_logger
from sessionward.service import audit
from sessionward.service.audit import SecurityAuditSink, emit
from sessionward.service.errors import (
    PrincipalInvalidError,
    RenewalTokenInvalidError,
    RenewalTokenNotFoundError,
    ServerError,
    ServiceError,
)
from sessionward.service.rotation import RotationPolicy
from sessionward.service.stores import PrincipalStore, RenewalTokenStore
from sessionward.service.tokens import AccessTokenCodec, RenewalTokenCodec
from sessionward.storage.models import DeviceInfo, RenewalToken, utcnow

logger = get_logger(__name__)

# Bounded re-reads after a lost compare-and-increment
MAX_CAS_ATTEMPTS = 3


@dataclass
class RenewalResult:
    access_token: str
    access_token_ttl_seconds: int
    renewal_token: Optional[str]
    rotated: bool
    session_id: str
    family_id: str
    used_count: int
    max_uses: int
    token_type: str = "bearer"


class SessionRenewer:
    """Exchanges a renewal token for a fresh access token, rotating when due."""

    def __init__(
        self,
        principals: PrincipalStore,
        renewal_tokens: RenewalTokenStore,
        access_codec: AccessTokenCodec,
        audit_sink: SecurityAuditSink,
        *,
        rotation: Optional[RotationPolicy] = None,
        renewal_codec: Optional[RenewalTokenCodec] = None,
        renewal_ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.principals = principals
        self.renewal_tokens = renewal_tokens
        self.access_codec = access_codec
        self.audit_sink = audit_sink
        self.rotation = rotation or RotationPolicy()
        self.renewal_codec = renewal_codec
        self.renewal_ttl_seconds = renewal_ttl_seconds
        self.clock = clock

    async def renew(
        self, token_value: str, device_info: Optional[DeviceInfo] = None
    ) -> RenewalResult:
        ip_address = device_info.ip_address if device_info else None
        try:
            return self._renew(token_value, device_info)
        except ServiceError as exc:
            emit(
                self.audit_sink,
                audit.REFRESH_FAILED,
                code=exc.error_code,
                reason=getattr(exc, "reason", None),
                ip_address=ip_address,
            )
            raise
        except Exception as exc:
            logger.exception("renewal_failed_unexpectedly", error=str(exc))
            emit(
                self.audit_sink,
                audit.REFRESH_FAILED,
                code=ServerError.error_code,
                ip_address=ip_address,
            )
            raise ServerError("renewal failed") from exc

    def _renew(
        self, token_value: str, device_info: Optional[DeviceInfo]
    ) -> RenewalResult:
        ip_address = device_info.ip_address if device_info else None
        record = self.renewal_tokens.get_by_token_value(token_value) if token_value else None
        if record is None:
            raise RenewalTokenNotFoundError("renewal token not found")
        self._ensure_valid(record, ip_address)
        if self.renewal_codec is not None:
            self.renewal_codec.verify(token_value, record)

        principal = self.principals.get_principal(record.subject)
        if principal is None or not principal.is_active:
            logger.info(
                "renewal_principal_invalid",
                token_id=record.id,
                missing=principal is None,
            )
            raise PrincipalInvalidError("principal is missing or inactive")

        access_token = self.access_codec.issue(principal)
        updated = self._increment(record)

        rotated = False
        current = updated
        if self.rotation.should_rotate(updated):
            current = self._rotate(updated, device_info)
            rotated = True
            emit(
                self.audit_sink,
                audit.REFRESH_TOKEN_ROTATED,
                subject=updated.subject,
                previous_family_id=updated.family_id,
                family_id=current.family_id,
                previous_session_id=updated.id,
                session_id=current.id,
                used_count=updated.used_count,
                max_uses=updated.max_uses,
            )

        emit(
            self.audit_sink,
            audit.REFRESH_SUCCESS,
            subject=updated.subject,
            session_id=updated.id,
            family_id=updated.family_id,
            used_count=updated.used_count,
            rotated=rotated,
            ip_address=ip_address,
        )
        return RenewalResult(
            access_token=access_token,
            access_token_ttl_seconds=self.access_codec.ttl_seconds,
            renewal_token=current.token_value if rotated else None,
            rotated=rotated,
            session_id=current.id,
            family_id=current.family_id,
            used_count=current.used_count,
            max_uses=current.max_uses,
        )

    def _ensure_valid(self, record: RenewalToken, ip_address: Optional[str]) -> None:
        reason = record.invalid_reason(self.clock())
        if reason is None:
            return
        logger.info("renewal_token_rejected", token_id=record.id, reason=reason)
        if reason == "rotated":
            # A rotated-away value coming back means the old value leaked
            emit(
                self.audit_sink,
                audit.SUSPICIOUS_ACTIVITY,
                reason="renewal_token_replay",
                subject=record.subject,
                family_id=record.family_id,
                session_id=record.id,
                ip_address=ip_address,
            )
        raise RenewalTokenInvalidError("renewal token is no longer valid", reason=reason)

    def _increment(self, record: RenewalToken) -> RenewalToken:
        observed = record
        for _ in range(MAX_CAS_ATTEMPTS):
            updated = self.renewal_tokens.increment_usage(observed.id, observed.used_count)
            if updated is not None:
                return updated
            reloaded = self.renewal_tokens.get_renewal_token(observed.id)
            if reloaded is None:
                break
            # Lost the race; a concurrent renewal may have rotated or exhausted it
            reason = reloaded.invalid_reason(self.clock())
            if reason is not None:
                logger.info("renewal_token_rejected", token_id=record.id, reason=reason)
                raise RenewalTokenInvalidError(
                    "renewal token is no longer valid", reason=reason
                )
            observed = reloaded
        logger.warning("renewal_usage_contended", token_id=record.id)
        raise RenewalTokenInvalidError(
            "renewal token is no longer valid", reason="concurrent_use"
        )

    def _rotate(
        self, token: RenewalToken, device_info: Optional[DeviceInfo] = None
    ) -> RenewalToken:
        claimed = self.renewal_tokens.invalidate_family(
            token.family_id, expected_active_id=token.id, reason="rotated"
        )
        if claimed == 0:
            # Another request already rotated this family
            logger.info("renewal_rotation_lost", token_id=token.id, family_id=token.family_id)
            raise RenewalTokenInvalidError(
                "renewal token is no longer valid", reason="rotated"
            )
        replacement = self.renewal_tokens.create_renewal_token(
            token.subject,
            _rotated_device(token.device_info, device_info),
            ttl_seconds=self.renewal_ttl_seconds,
        )
        logger.info(
            "renewal_family_rotated",
            token_id=token.id,
            new_token_id=replacement.id,
            family_id=replacement.family_id,
        )
        return replacement


def _rotated_device(previous: DeviceInfo, current: Optional[DeviceInfo]) -> DeviceInfo:
    """Keep the session's device id; take network and client details from the request.

    Blank fields on ``current`` mean the request did not supply them.
    """
    if current is None:
        return previous
    return DeviceInfo(
        device_id=previous.device_id,
        ip_address=current.ip_address or previous.ip_address,
        user_agent=current.user_agent or previous.user_agent,
        device_type=current.device_type or previous.device_type,
    )
