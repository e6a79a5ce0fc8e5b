from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base for domain failures that reach clients as error envelopes.

    Each exception class carries an HTTP ``status_code``, a stable
    machine-readable ``error_code`` and an optional human-facing ``hint``.
    Codes are part of the client contract and must not change.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    hint: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if hint is not None:
            self.hint = hint
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input rejected before any credential check."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Base for every 401 outcome; clients should re-authenticate."""
    status_code = 401
    error_code = "unauthorized"
    hint = "sign in again"


class InvalidCredentialsError(AuthenticationError):
    """Identifier unknown or secret rejected; the two are not distinguished."""
    error_code = "invalid_credentials"
    hint = "check your email and password"


class PrincipalNotFoundError(AuthenticationError):
    error_code = "principal_not_found"


class PrincipalInactiveError(ServiceError):
    """Principal exists but has been deactivated (403)."""
    status_code = 403
    error_code = "principal_inactive"
    hint = "contact an administrator"


class PrincipalInvalidError(AuthenticationError):
    """Renewal owner is missing or inactive."""
    error_code = "principal_invalid"


class NoTokenError(AuthenticationError):
    error_code = "no_token"
    hint = "send an Authorization: Bearer header"


class EmptyTokenError(AuthenticationError):
    error_code = "empty_token"
    hint = "send a non-empty bearer token"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"
    hint = "renew your session"


class TokenMalformedError(AuthenticationError):
    error_code = "token_malformed"


class TokenNotYetValidError(AuthenticationError):
    error_code = "token_not_yet_valid"
    hint = "check the device clock and retry"


class InvalidTokenPayloadError(AuthenticationError):
    error_code = "invalid_token_payload"


class RenewalTokenNotFoundError(AuthenticationError):
    error_code = "renewal_token_not_found"


class RenewalTokenInvalidError(AuthenticationError):
    """Renewal token exists but cannot be used.

    ``reason`` is one of ``expired``, ``inactive``, ``exhausted``, ``rotated``
    or ``concurrent_use``. It goes to logs and audit events only.
    """

    error_code = "renewal_token_invalid"

    def __init__(self, message: str, *, reason: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class RenewalTokenMalformedError(AuthenticationError):
    error_code = "renewal_token_malformed"


class ForbiddenError(ServiceError):
    """Caller is authenticated but may not act on the resource."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Unexpected collaborator failure; details stay in the logs."""
    status_code = 500
    error_code = "server_error"
    hint = "retry later"


InternalError = ServerError


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "PrincipalNotFoundError",
    "PrincipalInactiveError",
    "PrincipalInvalidError",
    "NoTokenError",
    "EmptyTokenError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenNotYetValidError",
    "InvalidTokenPayloadError",
    "RenewalTokenNotFoundError",
    "RenewalTokenInvalidError",
    "RenewalTokenMalformedError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
    "InternalError",
]
