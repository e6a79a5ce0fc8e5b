"""Unit tests for access and renewal token codecs."""

from datetime import timedelta

import pytest

from sessionward.service.errors import (
    RenewalTokenMalformedError,
    TokenExpiredError,
    TokenMalformedError,
    TokenNotYetValidError,
)
from sessionward.service.tokens import (
    AccessTokenCodec,
    _decode_segment,
    _encode_segment,
    _HS256Signer,
)
from sessionward.storage.models import DeviceInfo, Principal, RenewalToken

from conftest import TEST_ACCESS_SECRET, TEST_AUDIENCE, TEST_ISSUER


@pytest.fixture
def alice():
    return Principal(identifier="alice@example.com", display_name="Alice", role="admin")


class TestAccessTokenIssue:
    """Claim shape of issued access tokens."""

    def test_issue_contains_expected_claims(self, access_codec, alice, clock):
        """Issued tokens carry the full claim set with a 15 minute lifetime."""
        token = access_codec.issue(alice)
        claims = access_codec.verify(token)

        assert claims["sub"] == "alice@example.com"
        assert claims["role"] == "admin"
        assert claims["name"] == "Alice"
        assert claims["token_type"] == "access"
        assert claims["iss"] == TEST_ISSUER
        assert claims["aud"] == TEST_AUDIENCE
        assert claims["iat"] == int(clock().timestamp())
        assert claims["nbf"] == claims["iat"]
        assert claims["exp"] - claims["iat"] == 900
        assert claims["jti"]

    def test_each_token_has_unique_jti(self, access_codec, alice):
        first = access_codec.verify(access_codec.issue(alice))
        second = access_codec.verify(access_codec.issue(alice))
        assert first["jti"] != second["jti"]

    def test_expires_at_matches_exp_claim(self, access_codec, alice, clock):
        claims = access_codec.verify(access_codec.issue(alice))
        assert access_codec.expires_at(claims) == clock() + timedelta(seconds=900)

    def test_expires_at_none_without_exp(self, access_codec):
        assert access_codec.expires_at({"sub": "x"}) is None


class TestAccessTokenVerify:
    """Verification failures map to distinct error codes."""

    def test_valid_within_leeway_after_exp(self, access_codec, alice, clock):
        """A token 20s past exp still verifies under the 30s clock leeway."""
        token = access_codec.issue(alice)
        clock.advance(seconds=900 + 20)
        assert access_codec.verify(token)["sub"] == alice.identifier

    def test_expired_beyond_leeway(self, access_codec, alice, clock):
        token = access_codec.issue(alice)
        clock.advance(seconds=900 + 30)
        with pytest.raises(TokenExpiredError) as exc_info:
            access_codec.verify(token)
        assert exc_info.value.error_code == "token_expired"
        assert exc_info.value.status_code == 401

    def test_not_yet_valid(self, access_codec, alice, clock):
        """A token whose nbf is beyond the leeway is rejected."""
        token = access_codec.issue(alice)
        clock.advance(minutes=-5)
        with pytest.raises(TokenNotYetValidError):
            access_codec.verify(token)

    def test_small_future_skew_is_tolerated(self, access_codec, alice, clock):
        token = access_codec.issue(alice)
        clock.advance(seconds=-10)
        assert access_codec.verify(token)["sub"] == alice.identifier

    def test_tampered_payload_rejected(self, access_codec, alice):
        token = access_codec.issue(alice)
        header, payload, signature = token.split(".")
        forged = _encode_segment(
            _decode_segment(payload).replace(b'"role":"admin"', b'"role":"owner"')
        )
        with pytest.raises(TokenMalformedError):
            access_codec.verify(f"{header}.{forged}.{signature}")

    def test_wrong_secret_rejected(self, access_codec, alice, clock):
        other = AccessTokenCodec(
            "another-secret-entirely-0123456789",
            issuer=TEST_ISSUER,
            audience=TEST_AUDIENCE,
            clock=clock,
        )
        with pytest.raises(TokenMalformedError):
            access_codec.verify(other.issue(alice))

    def test_wrong_audience_rejected(self, access_codec, alice, clock):
        other = AccessTokenCodec(
            TEST_ACCESS_SECRET, issuer=TEST_ISSUER, audience="someone-else", clock=clock
        )
        with pytest.raises(TokenMalformedError):
            access_codec.verify(other.issue(alice))

    def test_alg_none_rejected(self, access_codec, alice):
        token = access_codec.issue(alice)
        _, payload, _ = token.split(".")
        header = _encode_segment(b'{"alg":"none","typ":"JWT"}')
        with pytest.raises(TokenMalformedError):
            access_codec.verify(f"{header}.{payload}.")

    @pytest.mark.parametrize("garbage", ["not-a-jwt", "a.b", "a.b.c.d", "!!!.???.###"])
    def test_garbage_rejected(self, access_codec, garbage):
        with pytest.raises(TokenMalformedError):
            access_codec.verify(garbage)

    def test_renewal_token_is_not_an_access_token(self, access_codec, clock):
        """A token of another type signed with the access key is refused."""
        signer = _HS256Signer(TEST_ACCESS_SECRET, TEST_ISSUER, TEST_AUDIENCE)
        now = int(clock().timestamp())
        token = signer.encode(
            {
                "iss": TEST_ISSUER,
                "aud": TEST_AUDIENCE,
                "sub": "alice@example.com",
                "token_type": "renewal",
                "iat": now,
                "exp": now + 600,
            }
        )
        with pytest.raises(TokenMalformedError):
            access_codec.verify(token)

    def test_missing_exp_rejected(self, access_codec):
        signer = _HS256Signer(TEST_ACCESS_SECRET, TEST_ISSUER, TEST_AUDIENCE)
        token = signer.encode(
            {"iss": TEST_ISSUER, "aud": TEST_AUDIENCE, "sub": "a", "token_type": "access"}
        )
        with pytest.raises(TokenMalformedError):
            access_codec.verify(token)

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            AccessTokenCodec("", issuer=TEST_ISSUER, audience=TEST_AUDIENCE)


class TestUnverifiedReads:
    """peek and decode_signed are used for logout attribution."""

    def test_peek_reads_expired_token(self, access_codec, alice, clock):
        token = access_codec.issue(alice)
        clock.advance(days=1)
        assert access_codec.peek(token)["sub"] == alice.identifier

    def test_peek_handles_garbage(self, access_codec):
        assert access_codec.peek(None) is None
        assert access_codec.peek("") is None
        assert access_codec.peek("garbage") is None

    def test_decode_signed_ignores_time_window(self, access_codec, alice, clock):
        token = access_codec.issue(alice)
        clock.advance(days=1)
        assert access_codec.decode_signed(token)["sub"] == alice.identifier

    def test_decode_signed_rejects_forgery(self, access_codec, alice, clock):
        other = AccessTokenCodec(
            "forger-secret-0123456789-abcdefghij",
            issuer=TEST_ISSUER,
            audience=TEST_AUDIENCE,
            clock=clock,
        )
        forged = other.issue(alice)
        assert access_codec.peek(forged)["sub"] == alice.identifier
        assert access_codec.decode_signed(forged) is None


class TestRenewalTokenCodec:
    """Renewal token values are bound to their store record."""

    def _record(self, renewal_codec, clock, **overrides):
        fields = {
            "token_id": "tok-1",
            "subject": "alice@example.com",
            "family_id": "fam-1",
        }
        fields.update(overrides)
        value = renewal_codec.mint(
            "tok-1", "alice@example.com", "fam-1", clock() + timedelta(days=7)
        )
        record = RenewalToken.new(
            fields["subject"],
            DeviceInfo.new(device_id="d1"),
            token_value=value,
            token_id=fields["token_id"],
            family_id=fields["family_id"],
            now=clock(),
        )
        return value, record

    def test_mint_and_verify(self, renewal_codec, clock):
        value, record = self._record(renewal_codec, clock)
        claims = renewal_codec.verify(value, record)
        assert claims["jti"] == "tok-1"
        assert claims["fid"] == "fam-1"
        assert claims["token_type"] == "renewal"

    @pytest.mark.parametrize(
        "override",
        [{"token_id": "tok-2"}, {"subject": "bob@example.com"}, {"family_id": "fam-2"}],
    )
    def test_record_mismatch_is_malformed(self, renewal_codec, clock, override):
        value, record = self._record(renewal_codec, clock, **override)
        with pytest.raises(RenewalTokenMalformedError) as exc_info:
            renewal_codec.verify(value, record)
        assert exc_info.value.error_code == "renewal_token_malformed"

    def test_access_key_cannot_verify_renewal_token(self, renewal_codec, access_codec, clock):
        value, _ = self._record(renewal_codec, clock)
        with pytest.raises(TokenMalformedError):
            access_codec.verify(value)

    def test_opaque_value_is_malformed(self, renewal_codec, clock):
        _, record = self._record(renewal_codec, clock)
        with pytest.raises(RenewalTokenMalformedError):
            renewal_codec.verify("opaque-random-value", record)
