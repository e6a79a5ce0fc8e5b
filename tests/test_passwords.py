"""Tests for password changes and the session revocation that follows them."""

import pytest

from sessionward.service.errors import InvalidCredentialsError, ValidationError
from sessionward.service.passwords import PasswordChanger
from sessionward.storage.models import DeviceInfo

from conftest import TEST_EMAIL, TEST_PASSWORD

NEW_PASSWORD = "Brand-New-Passw0rd"


@pytest.fixture
def passwords(verifier, memory_store, audit_sink):
    return PasswordChanger(verifier, memory_store, audit_sink)


async def _login(issuer, device_id):
    return await issuer.login(TEST_EMAIL, TEST_PASSWORD, DeviceInfo.new(device_id=device_id))


class TestChangePassword:
    async def test_changes_password(self, passwords, verifier, principal, audit_sink):
        revoked = await passwords.change_password(TEST_EMAIL, TEST_PASSWORD, NEW_PASSWORD)

        assert revoked == 0
        assert verifier.verify(TEST_EMAIL, NEW_PASSWORD)
        assert not verifier.verify(TEST_EMAIL, TEST_PASSWORD)
        event = audit_sink.of("password_changed")[0]
        assert event["subject"] == TEST_EMAIL

    async def test_revokes_other_families(self, passwords, issuer, principal, memory_store):
        """The session named by the caller survives; every other one is signed out."""
        current = await _login(issuer, "laptop")
        other = await _login(issuer, "phone")
        third = await _login(issuer, "tablet")

        revoked = await passwords.change_password(
            TEST_EMAIL, TEST_PASSWORD, NEW_PASSWORD, keep_renewal_token=current.renewal_token
        )

        assert revoked == 2
        assert memory_store.get_by_token_value(current.renewal_token).is_active
        for login in (other, third):
            record = memory_store.get_by_token_value(login.renewal_token)
            assert record.is_active is False
            assert record.invalidated_reason == "password_changed"

    async def test_without_kept_session_revokes_everything(self, passwords, issuer, principal, memory_store):
        await _login(issuer, "laptop")
        await _login(issuer, "phone")

        revoked = await passwords.change_password(TEST_EMAIL, TEST_PASSWORD, NEW_PASSWORD)

        assert revoked == 2
        assert memory_store.list_active_for_subject(TEST_EMAIL) == []

    async def test_foreign_kept_token_is_ignored(self, passwords, issuer, principal, memory_store, verifier):
        memory_store.create_principal("other@x.com", "Other")
        foreign = memory_store.create_renewal_token("other@x.com", DeviceInfo.new())
        await _login(issuer, "laptop")

        revoked = await passwords.change_password(
            TEST_EMAIL, TEST_PASSWORD, NEW_PASSWORD, keep_renewal_token=foreign.token_value
        )

        assert revoked == 1
        assert memory_store.get_renewal_token(foreign.id).is_active

    async def test_wrong_current_password(self, passwords, issuer, principal, memory_store, verifier, audit_sink):
        login = await _login(issuer, "laptop")

        with pytest.raises(InvalidCredentialsError):
            await passwords.change_password(TEST_EMAIL, "not-the-password", NEW_PASSWORD)

        assert verifier.verify(TEST_EMAIL, TEST_PASSWORD)
        assert memory_store.get_by_token_value(login.renewal_token).is_active
        assert audit_sink.of("password_change_failed")[0]["subject"] == TEST_EMAIL
        assert audit_sink.of("password_changed") == []

    @pytest.mark.parametrize("new_password", ["", "short", "seven77"])
    async def test_new_password_too_short(self, passwords, principal, verifier, new_password):
        with pytest.raises(ValidationError) as exc_info:
            await passwords.change_password(TEST_EMAIL, TEST_PASSWORD, new_password)

        assert exc_info.value.status_code == 400
        assert verifier.verify(TEST_EMAIL, TEST_PASSWORD)

    async def test_length_is_checked_before_current_password(self, passwords, principal, audit_sink):
        with pytest.raises(ValidationError):
            await passwords.change_password(TEST_EMAIL, "wrong", "short")
        assert audit_sink.of("password_change_failed") == []
