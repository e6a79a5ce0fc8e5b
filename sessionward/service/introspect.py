from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Set

from sessionward.logging import get_logger, sanitize_error_message
from sessionward.service import audit
from sessionward.service.audit import SecurityAuditSink, emit
from sessionward.service.errors import (
    EmptyTokenError,
    InvalidTokenPayloadError,
    NoTokenError,
    PrincipalInactiveError,
    PrincipalNotFoundError,
    ServerError,
    ServiceError,
)
from sessionward.service.stores import PrincipalStore
from sessionward.service.tokens import AccessTokenCodec
from sessionward.storage.models import Principal, utcnow

logger = get_logger(__name__)

# Placeholder values front-ends send when storage is empty
_EMPTY_TOKEN_VALUES = {"", "null", "undefined"}


@dataclass
class IntrospectionResult:
    principal: Principal
    claims: dict
    validated_at: datetime
    expires_at: Optional[datetime]
    seconds_remaining: int
    renew_recommended: bool


def extract_bearer(header: Optional[str]) -> str:
    """Return the raw bearer token or raise ``NoTokenError``/``EmptyTokenError``."""
    if not header:
        raise NoTokenError("authorization header missing")
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise NoTokenError("authorization header is not a bearer token")
    token = value.strip()
    if token.lower() in _EMPTY_TOKEN_VALUES:
        raise EmptyTokenError("bearer token is empty")
    return token


class TokenIntrospector:
    """Validates access tokens per request against a freshly loaded principal."""

    def __init__(
        self,
        principals: PrincipalStore,
        access_codec: AccessTokenCodec,
        audit_sink: SecurityAuditSink,
        *,
        renew_hint_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.principals = principals
        self.access_codec = access_codec
        self.audit_sink = audit_sink
        self.renew_hint_seconds = renew_hint_seconds
        self.clock = clock
        self._pending: Set[asyncio.Task] = set()

    async def introspect(self, authorization: Optional[str]) -> IntrospectionResult:
        try:
            token = extract_bearer(authorization)
            return await self.introspect_token(token)
        except ServiceError as exc:
            if not isinstance(exc, (NoTokenError, EmptyTokenError)):
                emit(self.audit_sink, audit.TOKEN_REJECTED, code=exc.error_code)
            raise
        except Exception as exc:
            logger.exception(
                "introspection_failed_unexpectedly",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            emit(self.audit_sink, audit.TOKEN_REJECTED, code=ServerError.error_code)
            raise ServerError("token introspection failed") from exc

    async def introspect_token(self, token: str) -> IntrospectionResult:
        claims = self.access_codec.verify(token)
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenPayloadError("access token has no subject")

        # Role and active flag can change after issuance; never trust claims for them
        principal = self.principals.get_principal(subject)
        if principal is None:
            raise PrincipalNotFoundError("principal not found")
        if not principal.is_active:
            raise PrincipalInactiveError("principal is inactive")

        self._schedule_touch(principal.identifier)

        now = self.clock()
        expires_at = self.access_codec.expires_at(claims)
        remaining = int((expires_at - now).total_seconds()) if expires_at else 0
        remaining = max(remaining, 0)
        return IntrospectionResult(
            principal=principal,
            claims=claims,
            validated_at=now,
            expires_at=expires_at,
            seconds_remaining=remaining,
            renew_recommended=remaining < self.renew_hint_seconds,
        )

    def _schedule_touch(self, identifier: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("activity_touch_skipped_no_loop")
            return
        task = loop.create_task(asyncio.to_thread(self.principals.touch_activity, identifier))
        self._pending.add(task)
        task.add_done_callback(self._touch_done)

    def _touch_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("activity_touch_failed", error=str(exc))

    @property
    def pending_updates(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight activity updates; used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
