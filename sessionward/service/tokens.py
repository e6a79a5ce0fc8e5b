from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from sessionward.logging import get_logger
from sessionward.service.errors import (
    RenewalTokenMalformedError,
    TokenExpiredError,
    TokenMalformedError,
    TokenNotYetValidError,
)
from sessionward.storage.models import Principal, RenewalToken, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
RENEWAL_TOKEN_TYPE = "renewal"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class _HS256Signer:
    """Compact JWS (HS256) encoding shared by both token kinds."""

    def __init__(self, secret: str, issuer: str, audience: str) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    @staticmethod
    def split(token: str) -> Optional[tuple[dict[str, Any], dict[str, Any], str, str]]:
        """Return ``(header, payload, signing_input, signature)`` or ``None``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None
        if not isinstance(header, dict) or not isinstance(payload, dict):
            return None
        return header, payload, f"{header_b64}.{payload_b64}", sig_b64

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Verify algorithm, signature, issuer and audience; ``None`` on failure."""
        parts = self.split(token)
        if parts is None:
            return None
        header, payload, signing_input, signature = parts
        # Algorithm pinning; "none" and asymmetric algs are refused
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None
        if not hmac.compare_digest(self._sign(signing_input), signature):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload


def _numeric_claim(payload: dict[str, Any], name: str) -> Optional[float]:
    value = payload.get(name)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class AccessTokenCodec:
    """Issues and verifies short-lived, self-contained access tokens.

    Claims: ``sub``, ``role``, ``name``, ``token_type``, ``iat``, ``nbf``,
    ``exp``, ``iss``, ``aud`` and ``jti``. Login and renewal both go through
    :meth:`issue`, so every access token has the same claim shape.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int = 15 * 60,
        leeway_seconds: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._signer = _HS256Signer(secret, issuer, audience)
        self.ttl_seconds = ttl_seconds
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    def issue(self, principal: Principal) -> str:
        now = self.clock()
        iat = int(now.timestamp())
        payload = {
            "iss": self._signer.issuer,
            "aud": self._signer.audience,
            "sub": principal.identifier,
            "role": principal.role,
            "name": principal.display_name,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": iat,
            "nbf": iat,
            "exp": iat + self.ttl_seconds,
        }
        return self._signer.encode(payload)

    def verify(self, token: str) -> dict[str, Any]:
        payload = self._signer.decode(token)
        if payload is None or payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise TokenMalformedError("access token is malformed")
        exp = _numeric_claim(payload, "exp")
        if exp is None:
            raise TokenMalformedError("access token is malformed")
        now_ts = self.clock().timestamp()
        if now_ts >= exp + self.leeway_seconds:
            raise TokenExpiredError("access token has expired", detail={"expired_at": int(exp)})
        nbf = _numeric_claim(payload, "nbf")
        if nbf is not None and now_ts + self.leeway_seconds < nbf:
            raise TokenNotYetValidError("access token is not yet valid")
        return payload

    def decode_signed(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Claims of a genuinely issued access token, ignoring its time window."""
        if not token:
            return None
        payload = self._signer.decode(token)
        if payload is None or payload.get("token_type") != ACCESS_TOKEN_TYPE:
            return None
        return payload

    def peek(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Read claims without verifying anything; for audit attribution only."""
        if not token:
            return None
        parts = _HS256Signer.split(token)
        return parts[1] if parts else None

    def expires_at(self, claims: dict[str, Any]) -> Optional[datetime]:
        exp = _numeric_claim(claims, "exp")
        if exp is None:
            return None
        return datetime.fromtimestamp(exp, tz=self.clock().tzinfo)


class RenewalTokenCodec:
    """Mints renewal token values as signed JWTs bound to their store record.

    The store remains the source of truth for validity; the signature only
    proves the value was minted here for that record, subject and family.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._signer = _HS256Signer(secret, issuer, audience)
        self.clock = clock

    def mint(
        self, token_id: str, subject: str, family_id: str, expires_at: datetime
    ) -> str:
        payload = {
            "iss": self._signer.issuer,
            "aud": self._signer.audience,
            "sub": subject,
            "jti": token_id,
            "fid": family_id,
            "token_type": RENEWAL_TOKEN_TYPE,
            "iat": int(self.clock().timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._signer.encode(payload)

    def verify(self, token_value: str, record: RenewalToken) -> dict[str, Any]:
        payload = self._signer.decode(token_value)
        if (
            payload is None
            or payload.get("token_type") != RENEWAL_TOKEN_TYPE
            or payload.get("jti") != record.id
            or payload.get("sub") != record.subject
            or payload.get("fid") != record.family_id
        ):
            raise RenewalTokenMalformedError("renewal token is malformed")
        return payload
