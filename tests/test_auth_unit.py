"""Unit tests for the auth service.

Tests for:
- Registration and duplicate handling
- Login gating (rate limiter, credential check, verification)
- Bearer authentication and role checks
- Password change, profile update and account deletion
- Admin user management
"""

import re
from datetime import datetime, timezone

import pytest

from sessionauth.config import Settings
from sessionauth.service.auth import AuthContext, AuthService
from sessionauth.service.credentials import CredentialOutcome, CredentialVerifier
from sessionauth.service.email import EmailService
from sessionauth.service.email_verification import EmailVerificationService
from sessionauth.service.errors import (
    AuthenticationError,
    ConflictError,
    EmailNotVerifiedError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from sessionauth.service.rate_limit import LoginRateLimiter
from sessionauth.service.sessions import SessionService
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.memory import MemoryStore


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def rate_limiter(settings):
    return LoginRateLimiter.from_settings(settings)


@pytest.fixture
def auth_service(memory_store, settings, rate_limiter, outbox):
    """Create auth service for testing."""
    email = EmailService()
    return AuthService(
        memory_store,
        settings,
        verifier=CredentialVerifier(memory_store, settings),
        rate_limiter=rate_limiter,
        sessions=SessionService(memory_store, settings),
        verification=EmailVerificationService(memory_store, email, settings),
    )


async def _verified(auth_service, outbox, email="test@example.com", password="Passw0rd"):
    result = await auth_service.register(email, password, password)
    await auth_service.verification.consume(outbox.last_verification_token(result.user.email))
    return result.user


def _ctx(user, session_id="none"):
    return AuthContext(
        user_id=user.id,
        email=user.email,
        role=user.role,
        session_id=session_id,
        expires_at=datetime.now(timezone.utc),
    )


class TestRegistration:
    """Tests for account creation."""

    async def test_register_then_verify_then_login(self, auth_service, outbox):
        result = await auth_service.register("Test@Example.com", "Passw0rd", "Passw0rd")
        assert result.user.email == "test@example.com"
        assert result.user.email_verified is False
        assert result.verification_sent is True

        with pytest.raises(EmailNotVerifiedError) as exc:
            await auth_service.login("test@example.com", "Passw0rd")
        assert exc.value.error_code == "email_not_verified"

        await auth_service.verification.consume(outbox.last_verification_token())
        login = await auth_service.login("test@example.com", "Passw0rd")
        assert re.fullmatch(r"[0-9a-f]{128}", login.session.token)
        assert login.user.id == result.user.id

    async def test_duplicate_email_conflicts(self, auth_service, outbox):
        await auth_service.register("dup@example.com", "Passw0rd", "Passw0rd")
        with pytest.raises(ConflictError) as exc:
            await auth_service.register(" DUP@example.com", "Passw0rd", "Passw0rd")
        assert exc.value.message == "An account with this email already exists"

    async def test_lost_race_is_reported_as_conflict(self, auth_service, memory_store, monkeypatch, outbox):
        def racing_create(*args, **kwargs):
            raise ConstraintViolation("email already exists", {"field": "email"})

        monkeypatch.setattr(memory_store, "create_user", racing_create)
        with pytest.raises(ConflictError):
            await auth_service.register("race@example.com", "Passw0rd", "Passw0rd")

    async def test_validation_errors_are_collected(self, auth_service):
        with pytest.raises(ValidationError) as exc:
            await auth_service.register("bad", "short", "different")
        assert len(exc.value.detail["errors"]) >= 3

    async def test_skip_verification_marks_account_verified(self, memory_store, settings, rate_limiter, outbox):
        relaxed = settings.model_copy(update={"skip_email_verification": True})
        service = AuthService(
            memory_store,
            relaxed,
            verifier=CredentialVerifier(memory_store, relaxed),
            rate_limiter=rate_limiter,
            sessions=SessionService(memory_store, relaxed),
            verification=EmailVerificationService(memory_store, EmailService(), relaxed),
        )
        result = await service.register("auto@example.com", "Passw0rd", "Passw0rd")
        assert result.user.email_verified is True
        assert outbox.verifications == []
        assert (await service.login("auto@example.com", "Passw0rd")).session.token


class TestLoginGate:
    """Rate limiting and credential failures."""

    async def test_unknown_email_and_wrong_password_are_indistinguishable(self, auth_service, outbox):
        await _verified(auth_service, outbox)
        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login("ghost@example.com", "Passw0rd", ip_address="1.1.1.1")
        with pytest.raises(AuthenticationError) as wrong:
            await auth_service.login("test@example.com", "Wr0ngpass", ip_address="1.1.1.1")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.message == "Invalid email or password. 4 attempt(s) remaining."

    async def test_sixth_attempt_is_locked(self, auth_service, outbox):
        await _verified(auth_service, outbox, "locked@example.com")
        messages = []
        for _ in range(5):
            with pytest.raises(AuthenticationError) as exc:
                await auth_service.login("locked@example.com", "Wr0ngpass", ip_address="10.0.0.1")
            messages.append(exc.value.message)
        assert messages[-1] == "Invalid email or password."
        with pytest.raises(RateLimitedError) as locked:
            await auth_service.login("locked@example.com", "Passw0rd", ip_address="10.0.0.1")
        assert locked.value.retry_after_seconds > 1700
        assert locked.value.message == "Account temporarily locked. Try again in 30 minute(s)."
        # Another address is unaffected
        assert await auth_service.login("locked@example.com", "Passw0rd", ip_address="10.0.0.2")

    async def test_success_clears_counter(self, auth_service, rate_limiter, outbox):
        await _verified(auth_service, outbox)
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await auth_service.login("test@example.com", "Wr0ngpass", ip_address="1.1.1.1")
        await auth_service.login("test@example.com", "Passw0rd", ip_address="1.1.1.1")
        assert await rate_limiter.get_attempt_count("test@example.com", "1.1.1.1") == 0

    async def test_unverified_login_counts_as_failure(self, auth_service, rate_limiter, outbox):
        await auth_service.register("pending@example.com", "Passw0rd", "Passw0rd")
        with pytest.raises(EmailNotVerifiedError):
            await auth_service.login("pending@example.com", "Passw0rd", ip_address="1.1.1.1")
        assert await rate_limiter.get_attempt_count("pending@example.com", "1.1.1.1") == 1

    async def test_missing_fields(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.login("", "Passw0rd")

    def test_verifier_outcomes(self, auth_service, memory_store):
        verifier = auth_service.verifier
        user = memory_store.create_user("v@example.com", verifier.hash_password("Passw0rd"))
        assert verifier.verify("v@example.com", "Passw0rd").outcome is CredentialOutcome.EMAIL_NOT_VERIFIED
        assert verifier.verify("v@example.com", "nope").outcome is CredentialOutcome.INVALID_CREDENTIALS
        memory_store.users[user.id].email_verified = True
        check = verifier.verify(" V@EXAMPLE.COM", "Passw0rd")
        assert check.ok
        assert check.user.id == user.id


class TestAuthenticate:
    async def test_bearer_header_resolves_context(self, auth_service, outbox):
        user = await _verified(auth_service, outbox)
        login = await auth_service.login("test@example.com", "Passw0rd")
        ctx, token = await auth_service.authenticate(f"Bearer {login.session.token}")
        assert token == login.session.token
        assert ctx.user_id == user.id
        assert ctx.session_id == login.session.session_id

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer nope"])
    async def test_bad_headers_are_unauthorized(self, auth_service, header):
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(header)

    async def test_role_hierarchy(self, auth_service, memory_store, outbox):
        user = await _verified(auth_service, outbox)
        login = await auth_service.login("test@example.com", "Passw0rd")
        header = f"Bearer {login.session.token}"
        with pytest.raises(ForbiddenError):
            await auth_service.authenticate(header, required_role="moderator")
        memory_store.users[user.id].role = "admin"
        ctx, _ = await auth_service.authenticate(header, required_role="moderator")
        assert ctx.role == "admin"

    async def test_logout_kills_token(self, auth_service, outbox):
        await _verified(auth_service, outbox)
        login = await auth_service.login("test@example.com", "Passw0rd")
        assert await auth_service.logout(login.session.token)
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(f"Bearer {login.session.token}")


class TestAccountManagement:
    async def test_change_password_keeps_current_session(self, auth_service, outbox):
        await _verified(auth_service, outbox)
        current = await auth_service.login("test@example.com", "Passw0rd")
        other = await auth_service.login("test@example.com", "Passw0rd")
        ctx, _ = await auth_service.authenticate(f"Bearer {current.session.token}")

        revoked = await auth_service.change_password(ctx, "Passw0rd", "N3wPassword", "N3wPassword")
        assert revoked == 1
        assert (await auth_service.sessions.validate(current.session.token)).valid
        assert not (await auth_service.sessions.validate(other.session.token)).valid
        assert await auth_service.login("test@example.com", "N3wPassword")

    async def test_change_password_checks_current(self, auth_service, outbox):
        user = await _verified(auth_service, outbox)
        with pytest.raises(AuthenticationError):
            await auth_service.change_password(_ctx(user), "Wr0ngpass", "N3wPassword", "N3wPassword")
        with pytest.raises(ValidationError):
            await auth_service.change_password(_ctx(user), "Passw0rd", "Passw0rd", "Passw0rd")

    async def test_email_change_requires_reverification(self, auth_service, outbox):
        user = await _verified(auth_service, outbox)
        updated = await auth_service.update_profile(_ctx(user), "New@Example.com")
        assert updated.email == "new@example.com"
        assert updated.email_verified is False
        assert outbox.verifications[-1][0] == "new@example.com"

    async def test_email_change_conflict(self, auth_service, outbox):
        user = await _verified(auth_service, outbox)
        await _verified(auth_service, outbox, "taken@example.com")
        with pytest.raises(ConflictError):
            await auth_service.update_profile(_ctx(user), "taken@example.com")

    async def test_delete_account_cascades(self, auth_service, memory_store, outbox):
        user = await _verified(auth_service, outbox)
        login = await auth_service.login("test@example.com", "Passw0rd")
        with pytest.raises(AuthenticationError):
            await auth_service.delete_account(_ctx(user), "Wr0ngpass")
        assert await auth_service.delete_account(_ctx(user), "Passw0rd")
        assert memory_store.get_user(user.id) is None
        assert login.session.session_id not in memory_store.sessions


class TestAdministration:
    async def test_role_change_revokes_target_sessions(self, auth_service, outbox):
        admin = await _verified(auth_service, outbox, "admin@example.com")
        target = await _verified(auth_service, outbox, "target@example.com")
        login = await auth_service.login("target@example.com", "Passw0rd")
        updated = await auth_service.set_user_role(_ctx(admin), target.id, "moderator")
        assert updated.role == "moderator"
        assert not (await auth_service.sessions.validate(login.session.token)).valid

    async def test_admin_cannot_demote_or_delete_self(self, auth_service, outbox):
        admin = await _verified(auth_service, outbox, "admin@example.com")
        with pytest.raises(ForbiddenError):
            await auth_service.set_user_role(_ctx(admin), admin.id, "user")
        with pytest.raises(ForbiddenError):
            await auth_service.delete_user(_ctx(admin), admin.id)

    async def test_unknown_targets(self, auth_service, outbox):
        admin = await _verified(auth_service, outbox, "admin@example.com")
        with pytest.raises(NotFoundError):
            await auth_service.set_user_role(_ctx(admin), "missing", "user")
        with pytest.raises(NotFoundError):
            await auth_service.delete_user(_ctx(admin), "missing")
        with pytest.raises(ValidationError):
            await auth_service.set_user_role(_ctx(admin), "missing", "root")

    async def test_list_users_paginates(self, auth_service, outbox):
        for idx in range(5):
            await auth_service.register(f"user{idx}@example.com", "Passw0rd", "Passw0rd")
        page, total = await auth_service.list_users(page=2, limit=2)
        assert total == 5
        assert len(page) == 2
        with pytest.raises(ValidationError):
            await auth_service.list_users(page=0)
        with pytest.raises(ValidationError):
            await auth_service.list_users(limit=101)
