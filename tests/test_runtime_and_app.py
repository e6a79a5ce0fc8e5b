"""Tests for runtime wiring, the app shell and the bootstrap script."""

import asyncio
import importlib.util
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from sessionward import app as app_module
from sessionward.config import Settings
from sessionward.service.audit import RecordingAuditSink
from sessionward.service.runtime import Runtime, _mask_url_password, get_runtime
from sessionward.storage.memory import MemoryStore
from sessionward.storage.redis_cache import RedisCache

ROOT = Path(__file__).resolve().parent.parent


def _load_bootstrap():
    spec = importlib.util.spec_from_file_location(
        "bootstrap_principal", ROOT / "scripts" / "bootstrap_principal.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _settings(**overrides):
    values = {
        "jwt_secret": "runtime-test-secret-0123456789-abcdefghij",
        "use_memory_store": True,
        "test_mode": True,
    }
    values.update(overrides)
    return Settings(**values)


class TestRuntime:
    def test_memory_runtime_wiring(self):
        runtime = Runtime(_settings(renewal_max_uses=20, rotation_ratio=0.5))

        assert isinstance(runtime.store, MemoryStore)
        assert runtime.store.default_max_uses == 20
        assert runtime.rotation.threshold(20) == 10
        assert runtime.access_codec.ttl_seconds == 900
        assert runtime.access_codec.leeway_seconds == 30
        assert runtime.cache is None

    async def test_full_cycle_through_runtime(self):
        sink = RecordingAuditSink()
        runtime = Runtime(_settings(), audit_sink=sink)
        runtime.store.create_principal("carol@example.com", "Carol")
        runtime.verifier.set_password("carol@example.com", "CarolPassword1!")

        login = await runtime.issuer.login("carol@example.com", "CarolPassword1!")
        renewed = await runtime.renewer.renew(login.renewal_token)
        checked = await runtime.introspector.introspect(f"Bearer {renewed.access_token}")
        logout = await runtime.revoker.logout(renewed.access_token, login.renewal_token)
        await runtime.shutdown()

        assert checked.principal.identifier == "carol@example.com"
        assert logout.invalidated_count == 1
        assert sink.names() == [
            "login_attempt",
            "login_success",
            "refresh_success",
            "logout",
        ]

    def test_unreachable_redis_falls_back(self):
        runtime = Runtime(_settings(redis_url="redis://127.0.0.1:1/0"))
        assert runtime.cache is None

    def test_get_runtime_is_singleton(self):
        assert get_runtime() is get_runtime()

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("redis://:s3cret@cache:6379/0", "redis://:***@cache:6379/0"),
            ("redis://cache:6379/0", "redis://cache:6379/0"),
            (None, None),
        ],
    )
    def test_mask_url_password(self, url, expected):
        assert _mask_url_password(url) == expected


def test_login_failure_key_hides_identifier():
    key = RedisCache._login_failure_key("alice@example.com")
    assert key.startswith("auth:login_failures:")
    assert "alice" not in key


class TestAppShell:
    def test_health_and_headers(self):
        client = TestClient(app_module.app)
        resp = client.get("/healthz")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "Cache-Control" not in resp.headers

    def test_wrong_method_is_enveloped(self):
        client = TestClient(app_module.app)
        resp = client.get("/v1/auth/login")

        assert resp.status_code == 405
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "method_not_allowed"

    def test_unknown_route_is_enveloped(self):
        client = TestClient(app_module.app)
        resp = client.get("/v1/auth/nowhere")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_unhandled_exception_is_enveloped(self, monkeypatch):
        runtime = get_runtime()

        async def explode(*args, **kwargs):
            raise RuntimeError("SELECT * FROM renewal_token failed")

        monkeypatch.setattr(runtime.issuer, "login", explode)
        client = TestClient(app_module.app, raise_server_exceptions=False)

        resp = client.post("/v1/auth/login", json={"email": "a@example.com", "password": "x"})

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "server_error"
        assert "renewal_token" not in resp.text

    async def test_cleanup_loop_runs_and_stops(self):
        class CountingStore:
            calls = 0

            def cleanup_expired(self):
                CountingStore.calls += 1
                return 0

        task = asyncio.create_task(app_module._run_expired_cleanup(CountingStore(), 60))
        await asyncio.sleep(0.2)
        task.cancel()
        await task

        assert CountingStore.calls == 1


class TestBootstrapScript:
    def test_creates_then_updates(self):
        bootstrap = _load_bootstrap()
        runtime = get_runtime()

        created = bootstrap.bootstrap_principal(
            "Admin@Example.com", "SecurePassword123!", role="admin", runtime=runtime
        )
        runtime.store.set_principal_active("admin@example.com", False)
        updated = bootstrap.bootstrap_principal(
            "admin@example.com", "AnotherPassword456!", runtime=runtime
        )

        assert created == {"identifier": "admin@example.com", "status": "created"}
        assert updated["status"] == "updated"
        principal = runtime.store.get_principal("admin@example.com")
        assert principal.role == "admin"
        assert principal.is_active
        assert runtime.verifier.verify("admin@example.com", "AnotherPassword456!")

    def test_dry_run_changes_nothing(self):
        bootstrap = _load_bootstrap()
        runtime = get_runtime()

        result = bootstrap.bootstrap_principal(
            "new@example.com", "SecurePassword123!", dry_run=True, runtime=runtime
        )

        assert result["status"] == "dry_run"
        assert runtime.store.get_principal("new@example.com") is None

    @pytest.mark.parametrize(
        "password,ok",
        [("short1!", False), ("alllowercaseletters", False), ("Longer-Password-1", True)],
    )
    def test_validate_password(self, password, ok):
        assert _load_bootstrap().validate_password(password) is ok
