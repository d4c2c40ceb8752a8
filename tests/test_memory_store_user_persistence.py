from datetime import timedelta

import pytest

from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.memory import MemoryStore
from sessionauth.storage.models import PasswordResetToken, Session, utcnow


def test_memory_store_persists_users_sessions_and_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        "Persist@Example.com",
        "hash-value",
        role="admin",
        verification_token_hash="v" * 64,
        verification_ttl_seconds=3600,
    )
    session = Session.new(user.id, "s" * 64, lifetime_seconds=600, ip_address="10.0.0.1")
    store.create_session(session)
    store.create_reset_token(PasswordResetToken.new(user.id, "r" * 64, ttl_seconds=600))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user
    assert reloaded_user.email == "persist@example.com"
    assert reloaded_user.role == "admin"
    assert reloaded.get_password_hash(user.id) == "hash-value"

    reloaded_session = reloaded.get_active_session_by_token_hash("s" * 64)
    assert reloaded_session
    assert reloaded_session.id == session.id
    assert reloaded_session.ip_address == "10.0.0.1"
    assert reloaded_session.expires_at == session.expires_at

    assert reloaded.get_reset_token_by_hash("r" * 64).user_id == user.id
    assert reloaded.get_verification_token_by_hash("v" * 64).user_id == user.id
    assert (tmp_path / "state" / "memory_store.json").exists()


def test_duplicate_email_is_a_constraint_violation(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com", "hash")
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user(" DUP@example.com", "hash")
    assert exc.value.field == "email"


def test_sessions_require_an_existing_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new("missing", "x" * 64, lifetime_seconds=60))


def test_delete_user_cascades(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("delete@example.com", "hash", verification_token_hash="v" * 64)
    keeper = store.create_user("keep@example.com", "hash")
    store.create_session(Session.new(user.id, "a" * 64, lifetime_seconds=60))
    store.create_session(Session.new(keeper.id, "b" * 64, lifetime_seconds=60))
    store.create_reset_token(PasswordResetToken.new(user.id, "r" * 64, ttl_seconds=60))

    assert store.delete_user(user.id) is True
    assert store.delete_user(user.id) is False
    assert store.get_user(user.id) is None
    assert [s.user_id for s in store.sessions.values()] == [keeper.id]
    assert store.reset_tokens == {}
    assert store.verification_tokens == {}


def test_complete_password_reset_is_all_or_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("reset@example.com", "old-hash")
    store.create_session(Session.new(user.id, "a" * 64, lifetime_seconds=60))
    token = PasswordResetToken.new(user.id, "r" * 64, ttl_seconds=60)
    store.create_reset_token(token)

    later = utcnow() + timedelta(minutes=5)
    assert store.complete_password_reset(token.id, user.id, "new-hash", now=later) is None
    assert store.get_password_hash(user.id) == "old-hash"

    assert store.complete_password_reset(token.id, user.id, "new-hash") == 1
    assert store.get_password_hash(user.id) == "new-hash"
    assert store.complete_password_reset(token.id, user.id, "newer-hash") is None
    assert store.get_password_hash(user.id) == "new-hash"
