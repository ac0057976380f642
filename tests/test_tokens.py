"""Unit tests for bearer token issuance and the password-change watermark."""

from datetime import datetime, timedelta, timezone

import pytest

from medtracker.service.errors import InvalidTokenError
from medtracker.service.tokens import TokenService, from_micros, to_micros
from medtracker.storage.models import User


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


@pytest.fixture
def user(clock):
    return User(
        id="user-1",
        email="a@x.com",
        password_hash="unused",
        password_last_changed=clock(),
    )


class TestMicros:
    def test_round_trip_keeps_microseconds(self):
        moment = datetime(2024, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)
        assert from_micros(to_micros(moment)) == moment

    def test_naive_datetimes_are_treated_as_utc(self):
        naive = datetime(2024, 1, 1)
        assert to_micros(naive) == to_micros(naive.replace(tzinfo=timezone.utc))


class TestIssueAndDecode:
    def test_claims_carry_subject_user_and_watermark(self, tokens, user, clock):
        claims = tokens.decode(tokens.issue(user))

        assert claims.subject == "a@x.com"
        assert claims.user_id == "user-1"
        assert claims.password_changed == user.password_last_changed
        assert claims.expires_at - claims.issued_at == timedelta(minutes=60)

    def test_two_tokens_issued_together_differ(self, tokens, user):
        assert tokens.issue(user) != tokens.issue(user)

    def test_extract_identity_returns_email(self, tokens, user):
        assert tokens.extract_identity(tokens.issue(user)) == "a@x.com"

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b.c", "ü.ü.ü"])
    def test_malformed_tokens_raise(self, tokens, garbage):
        with pytest.raises(InvalidTokenError):
            tokens.extract_identity(garbage)

    def test_tampered_signature_raises(self, tokens, user):
        token = tokens.issue(user)
        head, payload, sig = token.split(".")
        forged = f"{head}.{payload}.{'A' if sig[0] != 'A' else 'B'}{sig[1:]}"
        with pytest.raises(InvalidTokenError):
            tokens.decode(forged)

    def test_token_from_other_secret_is_rejected(self, tokens, user, settings, clock):
        other = TokenService(
            settings.model_copy(update={"jwt_secret": "another-secret-that-is-long-enough-1234"}),
            clock=clock,
        )
        with pytest.raises(InvalidTokenError):
            tokens.decode(other.issue(user))

    def test_alg_none_header_is_rejected(self, tokens, user):
        token = tokens.issue(user)
        _, payload, sig = token.split(".")
        header = TokenService._encode_segment(b'{"alg":"none","typ":"JWT"}')
        with pytest.raises(InvalidTokenError):
            tokens.decode(f"{header}.{payload}.{sig}")


class TestValidate:
    def test_fresh_token_is_valid(self, tokens, user):
        assert tokens.validate(tokens.issue(user), user) is True

    def test_expired_token_is_invalid(self, tokens, user, clock):
        token = tokens.issue(user)
        clock.advance(minutes=61)
        assert tokens.validate(token, user) is False

    def test_subject_mismatch_is_invalid(self, tokens, user):
        token = tokens.issue(user)
        other = User(
            id=user.id,
            email="b@x.com",
            password_hash="unused",
            password_last_changed=user.password_last_changed,
        )
        assert tokens.validate(token, other) is False

    def test_token_before_watermark_is_invalid(self, tokens, user):
        token = tokens.issue(user)
        user.password_last_changed = user.password_last_changed + timedelta(microseconds=1)
        assert tokens.validate(token, user) is False

    def test_token_at_or_after_watermark_is_valid(self, tokens, user, clock):
        clock.advance(seconds=5)
        user.password_last_changed = clock()
        assert tokens.validate(tokens.issue(user), user) is True

    def test_garbage_token_is_invalid_not_raising(self, tokens, user):
        assert tokens.validate("not-a-token", user) is False
