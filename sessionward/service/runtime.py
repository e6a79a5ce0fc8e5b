from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionward.config import Settings, get_settings, reset_settings_cache
from sessionward.logging import get_logger
from sessionward.service.audit import SecurityAuditSink, StructlogAuditSink
from sessionward.service.credentials import Argon2CredentialVerifier
from sessionward.service.introspect import TokenIntrospector
from sessionward.service.passwords import PasswordChanger
from sessionward.service.issuer import LoginAttemptTracker, SessionIssuer
from sessionward.service.renewer import SessionRenewer
from sessionward.service.revoker import SessionRevoker
from sessionward.service.rotation import RotationPolicy
from sessionward.service.tokens import AccessTokenCodec, RenewalTokenCodec
from sessionward.storage.memory import MemoryStore
from sessionward.storage.postgres import PostgresStore
from sessionward.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Wires settings, store, codecs and the lifecycle services together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        audit_sink: Optional[SecurityAuditSink] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.access_codec = AccessTokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_seconds=self.settings.access_token_ttl_seconds,
            leeway_seconds=self.settings.clock_skew_seconds,
        )
        self.renewal_codec = RenewalTokenCodec(
            self.settings.renewal_token_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    token_minter=self.renewal_codec.mint,
                    default_max_uses=self.settings.renewal_max_uses,
                    default_ttl_seconds=self.settings.renewal_token_ttl_seconds,
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    token_minter=self.renewal_codec.mint,
                    default_max_uses=self.settings.renewal_max_uses,
                    default_ttl_seconds=self.settings.renewal_token_ttl_seconds,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Login failure counters fall back to the primary store",
                )

        self.audit_sink: SecurityAuditSink = audit_sink or StructlogAuditSink()
        self.verifier = Argon2CredentialVerifier(self.store)
        self.rotation = RotationPolicy(self.settings.rotation_ratio)
        self.attempts = LoginAttemptTracker(
            self.store,
            self.cache,
            window_seconds=self.settings.login_failure_window_seconds,
            threshold=self.settings.suspicious_login_threshold,
        )
        self.issuer = SessionIssuer(
            self.verifier,
            self.store,
            self.store,
            self.access_codec,
            self.audit_sink,
            self.attempts,
            renewal_ttl_seconds=self.settings.renewal_token_ttl_seconds,
        )
        self.renewer = SessionRenewer(
            self.store,
            self.store,
            self.access_codec,
            self.audit_sink,
            rotation=self.rotation,
            renewal_codec=self.renewal_codec,
            renewal_ttl_seconds=self.settings.renewal_token_ttl_seconds,
        )
        self.revoker = SessionRevoker(self.store, self.access_codec, self.audit_sink)
        self.passwords = PasswordChanger(self.verifier, self.store, self.audit_sink)
        self.introspector = TokenIntrospector(
            self.store,
            self.access_codec,
            self.audit_sink,
            renew_hint_seconds=self.settings.renew_hint_seconds,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
            renewal_max_uses=self.settings.renewal_max_uses,
        )

    async def shutdown(self) -> None:
        await self.introspector.drain()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
