from __future__ import annotations

from typing import Optional

from sessionward.logging import get_logger
from sessionward.service import audit
from sessionward.service.audit import SecurityAuditSink, emit
from sessionward.service.credentials import Argon2CredentialVerifier
from sessionward.service.errors import InvalidCredentialsError, ValidationError
from sessionward.service.stores import RenewalTokenStore

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class PasswordChanger:
    """Rotates a principal's password and signs out its other sessions."""

    def __init__(
        self,
        verifier: Argon2CredentialVerifier,
        renewal_tokens: RenewalTokenStore,
        audit_sink: SecurityAuditSink,
        *,
        min_length: int = MIN_PASSWORD_LENGTH,
    ) -> None:
        self.verifier = verifier
        self.renewal_tokens = renewal_tokens
        self.audit_sink = audit_sink
        self.min_length = min_length

    async def change_password(
        self,
        subject: str,
        current_secret: str,
        new_secret: str,
        *,
        keep_renewal_token: Optional[str] = None,
    ) -> int:
        """Replace the password and return how many renewal tokens were revoked.

        The family of ``keep_renewal_token`` survives when it belongs to
        ``subject``; every other active family is invalidated.
        """
        if not current_secret or not new_secret:
            raise ValidationError("current and new password are required")
        if len(new_secret) < self.min_length:
            raise ValidationError(
                f"new password must be at least {self.min_length} characters",
                detail={"min_length": self.min_length},
            )
        if not self.verifier.verify(subject, current_secret):
            emit(self.audit_sink, audit.PASSWORD_CHANGE_FAILED, subject=subject)
            raise InvalidCredentialsError("current password is incorrect")

        self.verifier.set_password(subject, new_secret)

        keep_family = self._family_to_keep(subject, keep_renewal_token)
        revoked = 0
        for token in self.renewal_tokens.list_active_for_subject(subject):
            if token.family_id == keep_family:
                continue
            if self.renewal_tokens.invalidate(token.id, reason="password_changed"):
                revoked += 1

        logger.info("password_changed", subject=subject, revoked_count=revoked)
        emit(
            self.audit_sink,
            audit.PASSWORD_CHANGED,
            subject=subject,
            revoked_count=revoked,
            kept_family_id=keep_family,
        )
        return revoked

    def _family_to_keep(self, subject: str, token_value: Optional[str]) -> Optional[str]:
        if not token_value:
            return None
        record = self.renewal_tokens.get_by_token_value(token_value)
        if record is None or record.subject != subject:
            return None
        return record.family_id
