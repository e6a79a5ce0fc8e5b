import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("RENEWAL_TOKEN_SECRET", "test-renewal-secret-for-testing-only")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionward.service.audit import RecordingAuditSink  # noqa: E402
from sessionward.service.credentials import Argon2CredentialVerifier  # noqa: E402
from sessionward.service.introspect import TokenIntrospector  # noqa: E402
from sessionward.service.issuer import LoginAttemptTracker, SessionIssuer  # noqa: E402
from sessionward.service.renewer import SessionRenewer  # noqa: E402
from sessionward.service.revoker import SessionRevoker  # noqa: E402
from sessionward.service.rotation import RotationPolicy  # noqa: E402
from sessionward.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionward.service.tokens import AccessTokenCodec, RenewalTokenCodec  # noqa: E402
from sessionward.storage.memory import MemoryStore  # noqa: E402

TEST_ACCESS_SECRET = "Unit-Access-Secret_for-Automation-Only-123456789!"
TEST_RENEWAL_SECRET = "Unit-Renewal-Secret_for-Automation-Only-987654321!"
TEST_ISSUER = "sessionward"
TEST_AUDIENCE = "sessionward-clients"
TEST_EMAIL = "user@x.com"
TEST_PASSWORD = "TestPassword123!"


class FakeClock:
    """Controllable UTC clock shared by codecs, stores and services."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def access_codec(clock):
    return AccessTokenCodec(
        TEST_ACCESS_SECRET,
        issuer=TEST_ISSUER,
        audience=TEST_AUDIENCE,
        ttl_seconds=900,
        leeway_seconds=30,
        clock=clock,
    )


@pytest.fixture
def renewal_codec(clock):
    return RenewalTokenCodec(
        TEST_RENEWAL_SECRET, issuer=TEST_ISSUER, audience=TEST_AUDIENCE, clock=clock
    )


@pytest.fixture
def memory_store(renewal_codec, clock):
    return MemoryStore(token_minter=renewal_codec.mint, clock=clock)


@pytest.fixture
def verifier(memory_store):
    return Argon2CredentialVerifier(memory_store)


@pytest.fixture
def principal(memory_store, verifier):
    """A principal with a password, identified by email."""
    created = memory_store.create_principal(TEST_EMAIL, "User X", role="user")
    verifier.set_password(TEST_EMAIL, TEST_PASSWORD)
    return created


@pytest.fixture
def issuer(verifier, memory_store, access_codec, audit_sink):
    return SessionIssuer(
        verifier,
        memory_store,
        memory_store,
        access_codec,
        audit_sink,
        LoginAttemptTracker(memory_store, window_seconds=900, threshold=5),
        renewal_ttl_seconds=7 * 24 * 60 * 60,
    )


@pytest.fixture
def renewer(memory_store, access_codec, renewal_codec, audit_sink, clock):
    return SessionRenewer(
        memory_store,
        memory_store,
        access_codec,
        audit_sink,
        rotation=RotationPolicy(0.8),
        renewal_codec=renewal_codec,
        renewal_ttl_seconds=7 * 24 * 60 * 60,
        clock=clock,
    )


@pytest.fixture
def revoker(memory_store, access_codec, audit_sink, clock):
    return SessionRevoker(memory_store, access_codec, audit_sink, clock=clock)


@pytest.fixture
def introspector(memory_store, access_codec, audit_sink, clock):
    return TokenIntrospector(
        memory_store, access_codec, audit_sink, renew_hint_seconds=300, clock=clock
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
