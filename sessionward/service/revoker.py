from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sessionward.logging import get_logger
from sessionward.service import audit
from sessionward.service.audit import SecurityAuditSink, emit
from sessionward.service.errors import ForbiddenError, NotFoundError
from sessionward.service.stores import RenewalTokenStore
from sessionward.service.tokens import AccessTokenCodec
from sessionward.storage.models import SessionView, utcnow

logger = get_logger(__name__)


@dataclass
class LogoutResult:
    invalidated_count: int
    subject: Optional[str] = None


class SessionRevoker:
    """Logout and explicit session management; logout never fails."""

    def __init__(
        self,
        renewal_tokens: RenewalTokenStore,
        access_codec: AccessTokenCodec,
        audit_sink: SecurityAuditSink,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.renewal_tokens = renewal_tokens
        self.access_codec = access_codec
        self.audit_sink = audit_sink
        self.clock = clock

    async def logout(
        self,
        access_token: Optional[str] = None,
        renewal_token: Optional[str] = None,
        *,
        invalidate_all: bool = False,
    ) -> LogoutResult:
        """Best-effort logout.

        The access token is only read for audit attribution and may be
        expired or forged; it never authorizes ``invalidate_all`` on its own
        unless its signature verifies or a renewal token backs the request.
        """
        subject: Optional[str] = None
        invalidated = 0
        try:
            subject = self._subject_from_access_token(access_token)
            signed_subject = self._subject_from_access_token(access_token, verified=True)
            owner: Optional[str] = None
            if renewal_token:
                record = self.renewal_tokens.get_by_token_value(renewal_token)
                if record is not None:
                    owner = record.subject
                    if self.renewal_tokens.invalidate(record.id, reason="logout"):
                        invalidated += 1
            if invalidate_all:
                target = owner or signed_subject
                if target:
                    invalidated += self.renewal_tokens.invalidate_all_for_subject(
                        target, reason="logout"
                    )
            subject = owner or subject
        except Exception as exc:
            logger.warning("logout_cleanup_failed", error=str(exc))
        emit(
            self.audit_sink,
            audit.LOGOUT,
            subject=subject,
            invalidated_count=invalidated,
            invalidate_all=invalidate_all,
        )
        return LogoutResult(invalidated_count=invalidated, subject=subject)

    def _subject_from_access_token(
        self, access_token: Optional[str], *, verified: bool = False
    ) -> Optional[str]:
        if not access_token:
            return None
        if verified:
            claims = self.access_codec.decode_signed(access_token)
        else:
            claims = self.access_codec.peek(access_token)
        if not claims:
            return None
        subject = claims.get("sub")
        return subject if isinstance(subject, str) and subject else None

    async def list_sessions(self, subject: str) -> List[SessionView]:
        now = self.clock()
        return [token.to_view(now) for token in self.renewal_tokens.list_active_for_subject(subject)]

    async def close_session(self, requesting_subject: str, session_id: str) -> None:
        record = self.renewal_tokens.get_renewal_token(session_id)
        if record is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        if record.subject != requesting_subject:
            logger.warning(
                "close_session_forbidden",
                session_id=session_id,
                requesting_subject=requesting_subject,
            )
            raise ForbiddenError("session belongs to another principal")
        closed = self.renewal_tokens.invalidate(record.id, reason="closed")
        emit(
            self.audit_sink,
            audit.SESSION_CLOSED,
            subject=requesting_subject,
            session_id=session_id,
            family_id=record.family_id,
            already_inactive=not closed,
        )

    async def revoke_all(self, subject: str) -> int:
        count = self.renewal_tokens.invalidate_all_for_subject(subject, reason="revoked_all")
        emit(self.audit_sink, audit.SESSIONS_REVOKED, subject=subject, invalidated_count=count)
        return count
