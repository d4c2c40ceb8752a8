from datetime import datetime, timedelta, timezone

import pytest

from sessionauth.service.errors import ValidationError
from sessionauth.service.password_reset import (
    RESET_COMPLETED_MESSAGE,
    RESET_INVALID_MESSAGE,
    RESET_REQUESTED_MESSAGE,
)
from sessionauth.service.runtime import get_runtime
from sessionauth.service.tokens import hash_token


@pytest.fixture
def runtime():
    return get_runtime()


def _verified_user(runtime, email="reset@example.com", password="OldPassw0rd"):
    return runtime.store.create_user(
        email, runtime.verifier.hash_password(password), email_verified=True
    )


class TestRequestReset:
    async def test_same_reply_for_known_and_unknown_email(self, runtime, outbox):
        _verified_user(runtime)
        known = await runtime.password_reset.request_reset("reset@example.com")
        unknown = await runtime.password_reset.request_reset("nobody@example.com")
        assert known == unknown == {"message": RESET_REQUESTED_MESSAGE}
        assert [to for to, _ in outbox.resets] == ["reset@example.com"]

    async def test_token_is_hashed_at_rest(self, runtime, outbox):
        user = _verified_user(runtime)
        await runtime.password_reset.request_reset("reset@example.com")
        token = outbox.last_reset_token()
        assert len(token) == 64
        stored = runtime.store.list_reset_tokens(user.id)
        assert [t.token_hash for t in stored] == [hash_token(token)]

    async def test_only_latest_token_is_usable(self, runtime, outbox):
        user = _verified_user(runtime)
        for _ in range(4):
            await runtime.password_reset.request_reset("RESET@example.com ")
        usable = await runtime.password_reset.usable_tokens(user.id)
        assert len(usable) == 1
        assert usable[0].token_hash == hash_token(outbox.last_reset_token())
        assert all(t.used for t in runtime.store.list_reset_tokens(user.id) if t is not usable[0])

    async def test_send_failure_keeps_uniform_reply(self, runtime, outbox):
        _verified_user(runtime)
        outbox.fail = True
        reply = await runtime.password_reset.request_reset("reset@example.com")
        assert reply == {"message": RESET_REQUESTED_MESSAGE}

    async def test_malformed_email_is_rejected(self, runtime):
        with pytest.raises(ValidationError):
            await runtime.password_reset.request_reset("not-an-email")


class TestValidateToken:
    async def test_reports_reason(self, runtime, outbox):
        _verified_user(runtime)
        await runtime.password_reset.request_reset("reset@example.com")
        token = outbox.last_reset_token()

        check = await runtime.password_reset.validate_token(token)
        assert check.valid
        assert check.email == "reset@example.com"
        assert (await runtime.password_reset.validate_token("0" * 64)).reason == "not_found"

        future = datetime.now(timezone.utc) + timedelta(hours=2)
        runtime.password_reset._now = lambda: future
        assert (await runtime.password_reset.validate_token(token)).reason == "expired"


class TestResetPassword:
    async def test_reset_revokes_every_session_of_that_user_only(self, runtime, outbox):
        user = _verified_user(runtime)
        other = _verified_user(runtime, "other@example.com")
        mine = [await runtime.sessions.create(user.id) for _ in range(2)]
        theirs = await runtime.sessions.create(other.id)
        await runtime.password_reset.request_reset("reset@example.com")
        token = outbox.last_reset_token()

        result = await runtime.password_reset.reset_password(token, "NewPass1", "NewPass1")
        assert result.success
        assert result.message == RESET_COMPLETED_MESSAGE
        assert result.sessions_revoked == 2
        for issued in mine:
            assert not (await runtime.sessions.validate(issued.token)).valid
        assert (await runtime.sessions.validate(theirs.token)).valid
        assert runtime.verifier.check_password(user.id, "NewPass1")
        assert not runtime.verifier.check_password(user.id, "OldPassw0rd")

        again = await runtime.password_reset.reset_password(token, "NewPass2", "NewPass2")
        assert not again.success
        assert again.reason == "used"
        assert again.message == RESET_INVALID_MESSAGE

    async def test_superseded_token_is_rejected(self, runtime, outbox):
        _verified_user(runtime)
        await runtime.password_reset.request_reset("reset@example.com")
        first = outbox.last_reset_token()
        await runtime.password_reset.request_reset("reset@example.com")
        result = await runtime.password_reset.reset_password(first, "NewPass1", "NewPass1")
        assert not result.success
        assert result.reason == "used"

    async def test_weak_password_fails_before_storage(self, runtime, monkeypatch):
        def untouchable(*args, **kwargs):
            raise AssertionError("store must not be consulted")

        monkeypatch.setattr(runtime.store, "get_reset_token_by_hash", untouchable)
        with pytest.raises(ValidationError) as exc:
            await runtime.password_reset.reset_password("whatever", "weak", "weak")
        assert "Password must be at least 8 characters" in exc.value.detail["errors"]
        with pytest.raises(ValidationError):
            await runtime.password_reset.reset_password("whatever", "NewPass1", "NewPass2")

    async def test_unknown_token(self, runtime):
        result = await runtime.password_reset.reset_password("f" * 64, "NewPass1", "NewPass1")
        assert not result.success
        assert result.reason == "not_found"

    async def test_cleanup_removes_used_and_expired(self, runtime, outbox):
        user = _verified_user(runtime)
        for _ in range(3):
            await runtime.password_reset.request_reset("reset@example.com")
        assert await runtime.password_reset.cleanup_expired_tokens() == 2
        assert len(runtime.store.list_reset_tokens(user.id)) == 1
