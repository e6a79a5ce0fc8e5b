from __future__ import annotations

from typing import List, Optional, Protocol

from sessionward.storage.models import DeviceInfo, Principal, RenewalStats, RenewalToken


class PrincipalStore(Protocol):
    def get_principal(self, identifier: str) -> Optional[Principal]: ...

    def touch_activity(self, identifier: str) -> None: ...


class LoginFailureStore(Protocol):
    def record_login_failure(self, identifier: str, window_seconds: int) -> int: ...

    def clear_login_failures(self, identifier: str) -> None: ...


class RenewalTokenStore(Protocol):
    """Persistence for renewal tokens; the only shared mutable state.

    ``increment_usage`` and ``invalidate_family(expected_active_id=...)`` are
    the atomic transitions the renewal flow relies on.
    """

    def create_renewal_token(
        self,
        subject: str,
        device_info: DeviceInfo,
        family_id: Optional[str] = None,
        *,
        max_uses: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
    ) -> RenewalToken: ...

    def get_by_token_value(self, token_value: str) -> Optional[RenewalToken]: ...

    def get_renewal_token(self, token_id: str) -> Optional[RenewalToken]: ...

    def list_active_for_subject(self, subject: str) -> List[RenewalToken]: ...

    def increment_usage(
        self, token_id: str, expected_used_count: int
    ) -> Optional[RenewalToken]: ...

    def invalidate(self, token_id: str, reason: str = "logout") -> bool: ...

    def invalidate_family(
        self,
        family_id: str,
        *,
        expected_active_id: Optional[str] = None,
        reason: str = "rotated",
    ) -> int: ...

    def invalidate_all_for_subject(self, subject: str, reason: str = "revoked_all") -> int: ...

    def cleanup_expired(self) -> int: ...

    def renewal_stats(self, subject: Optional[str] = None) -> RenewalStats: ...


class SessionStore(PrincipalStore, LoginFailureStore, RenewalTokenStore, Protocol):
    """Everything the runtime needs from a single backing store."""
