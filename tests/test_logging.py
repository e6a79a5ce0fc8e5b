"""Tests for log redaction and error message sanitization."""

from sessionward.logging import (
    _redact_secrets,
    get_correlation_id,
    redact_value,
    sanitize_error_message,
    set_correlation_id,
)


def test_credentials_are_masked():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "renewal",
            "renewal_token": "eyJhbGciOiJIUzI1NiJ9.payload.signature",
            "password": "hunter2",
            "Authorization": "Bearer abcdefghijkl",
        },
    )
    assert event["renewal_token"] == "eyJh***"
    assert event["password"] == "***"
    assert event["Authorization"] == "Bear***"


def test_record_identifiers_are_kept():
    event = _redact_secrets(
        None,
        "info",
        {"token_id": "5a1f-uuid", "family_id": "fam-uuid", "token_type": "access", "count": 3},
    )
    assert event == {"token_id": "5a1f-uuid", "family_id": "fam-uuid", "token_type": "access", "count": 3}


def test_non_string_values_untouched():
    event = _redact_secrets(None, "info", {"token_count": 4})
    assert event["token_count"] == 4


def test_redact_value_short():
    assert redact_value("abc") == "***"


def test_correlation_id_round_trip():
    cid = set_correlation_id("abc-123")
    assert cid == "abc-123"
    assert get_correlation_id() == "abc-123"
    assert set_correlation_id() != "abc-123"


def test_sanitize_error_message():
    message = sanitize_error_message("password=hunter2 failed for /srv/sessionward/.jwt_secret")
    assert "hunter2" not in message
    assert "/srv/sessionward" not in message
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 1000)) == 500
