from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and local development.

    Every mutation runs under one re-entrant lock and is flushed to a JSON
    state file so a restarted process sees the same users, sessions and
    tokens.
    """

    def __init__(self, fs_root: str = "/tmp/sessionauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.verification_tokens: Dict[str, EmailVerificationToken] = {}
        # RLock so multi-step operations can call single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def ping(self) -> bool:
        return True

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        email_verified: bool = False,
        verification_token_hash: Optional[str] = None,
        verification_ttl_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> User:
        now = now or utcnow()
        email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email, role=role, email_verified=email_verified, now=now)
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            if verification_token_hash:
                token = EmailVerificationToken.new(
                    user.id,
                    verification_token_hash,
                    ttl_seconds=verification_ttl_seconds or 24 * 60 * 60,
                    now=now,
                )
                self.verification_tokens[token.id] = token
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def list_users(self, limit: int = 20, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return ordered[offset : offset + limit]

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        revoke_sessions: bool = False,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Store a new password hash; optionally revoke the user's other sessions.

        Returns the number of sessions revoked.
        """
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.credentials[user_id] = password_hash
            user.updated_at = now
            revoked = 0
            if revoke_sessions:
                revoked = self._revoke_user_sessions_locked(user_id, except_session_id, now)
            self._persist_state()
            return revoked

    def update_user_email(
        self, user_id: str, email: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or utcnow()
        email = email.strip().lower()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if any(u.email == email and u.id != user_id for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.email != email:
                user.email = email
                user.email_verified = False
            user.updated_at = now
            self._persist_state()
            return user

    def update_user_role(
        self, user_id: str, role: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = now or utcnow()
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for table in (self.sessions, self.reset_tokens, self.verification_tokens):
                for row_id, row in list(table.items()):
                    if row.user_id == user_id:
                        table.pop(row_id, None)
            self._persist_state()
            return True

    # -- sessions ----------------------------------------------------------

    def create_session(
        self, session: Session, *, max_active: int = 0, now: Optional[datetime] = None
    ) -> List[str]:
        """Insert ``session``, first evicting the oldest active session at the cap.

        Returns the ids of evicted sessions.
        """
        now = now or utcnow()
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            evicted: List[str] = []
            if max_active > 0:
                active = sorted(
                    (
                        s
                        for s in self.sessions.values()
                        if s.user_id == session.user_id and s.is_valid(now)
                    ),
                    key=lambda s: s.created_at,
                )
                if len(active) >= max_active:
                    oldest = active[0]
                    oldest.is_revoked = True
                    evicted.append(oldest.id)
            self.sessions[session.id] = session
            self._persist_state()
            return evicted

    def get_active_session_by_token_hash(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[Session]:
        now = now or utcnow()
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.token_hash == token_hash and sess.is_valid(now):
                    return sess
            return None

    def touch_session(self, session_id: str, now: Optional[datetime] = None) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_activity_at = now or utcnow()
            self._persist_state()

    def extend_session(
        self, token_hash: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> Optional[Session]:
        now = now or utcnow()
        with self._data_lock:
            sess = self.get_active_session_by_token_hash(token_hash, now)
            if not sess:
                return None
            sess.expires_at = expires_at
            sess.last_activity_at = now
            self._persist_state()
            return sess

    def rotate_session_token(
        self,
        old_token_hash: str,
        new_token_hash: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        now = now or utcnow()
        with self._data_lock:
            sess = self.get_active_session_by_token_hash(old_token_hash, now)
            if not sess:
                return None
            sess.token_hash = new_token_hash
            sess.expires_at = expires_at
            sess.last_activity_at = now
            self._persist_state()
            return sess

    def revoke_session(self, session_id: str, user_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id or sess.is_revoked:
                return False
            sess.is_revoked = True
            self._persist_state()
            return True

    def revoke_session_by_token_hash(self, token_hash: str) -> Optional[str]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.token_hash == token_hash and not sess.is_revoked:
                    sess.is_revoked = True
                    self._persist_state()
                    return sess.id
            return None

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            revoked = self._revoke_user_sessions_locked(
                user_id, except_session_id, now or utcnow()
            )
            if revoked:
                self._persist_state()
            return revoked

    def _revoke_user_sessions_locked(
        self, user_id: str, except_session_id: Optional[str], now: datetime
    ) -> int:
        revoked = 0
        for sess in self.sessions.values():
            if sess.user_id != user_id or sess.id == except_session_id:
                continue
            if sess.is_valid(now):
                sess.is_revoked = True
                revoked += 1
        return revoked

    def list_active_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[Session]:
        now = now or utcnow()
        with self._data_lock:
            active = [
                s for s in self.sessions.values() if s.user_id == user_id and s.is_valid(now)
            ]
            return sorted(active, key=lambda s: s.last_activity_at, reverse=True)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.is_revoked or sess.expires_at < now
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- password reset tokens ---------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> int:
        """Insert ``token`` after marking the user's unused tokens as used.

        Returns the number of prior tokens invalidated.
        """
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            invalidated = 0
            for existing in self.reset_tokens.values():
                if existing.user_id == token.user_id and not existing.used:
                    existing.used = True
                    invalidated += 1
            self.reset_tokens[token.id] = token
            self._persist_state()
            return invalidated

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            return next(
                (t for t in self.reset_tokens.values() if t.token_hash == token_hash), None
            )

    def list_reset_tokens(self, user_id: str) -> List[PasswordResetToken]:
        with self._data_lock:
            return sorted(
                (t for t in self.reset_tokens.values() if t.user_id == user_id),
                key=lambda t: t.created_at,
            )

    def complete_password_reset(
        self,
        token_id: str,
        user_id: str,
        password_hash: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """Consume the token, store the new hash and revoke every session.

        Returns the number of sessions revoked, or None when the token was no
        longer usable (nothing is changed in that case).
        """
        now = now or utcnow()
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if (
                token is None
                or token.user_id != user_id
                or not token.is_usable(now)
                or user_id not in self.users
            ):
                return None
            token.used = True
            self.credentials[user_id] = password_hash
            self.users[user_id].updated_at = now
            revoked = self._revoke_user_sessions_locked(user_id, None, now)
            self._persist_state()
            return revoked

    def delete_stale_reset_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                tid
                for tid, tok in self.reset_tokens.items()
                if tok.used or tok.expires_at < now
            ]
            for tid in stale:
                self.reset_tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- email verification tokens -----------------------------------------

    def replace_verification_token(self, token: EmailVerificationToken) -> None:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            for tid, existing in list(self.verification_tokens.items()):
                if existing.user_id == token.user_id:
                    self.verification_tokens.pop(tid, None)
            self.verification_tokens[token.id] = token
            self._persist_state()

    def get_verification_token_by_hash(
        self, token_hash: str
    ) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            return next(
                (t for t in self.verification_tokens.values() if t.token_hash == token_hash),
                None,
            )

    def list_verification_tokens(self, user_id: str) -> List[EmailVerificationToken]:
        with self._data_lock:
            return [t for t in self.verification_tokens.values() if t.user_id == user_id]

    def consume_verification_token(
        self, token_id: str, user_id: str, *, now: Optional[datetime] = None
    ) -> bool:
        """Delete the token and mark the owner verified in one step."""
        now = now or utcnow()
        with self._data_lock:
            token = self.verification_tokens.get(token_id)
            user = self.users.get(user_id)
            if token is None or user is None or token.user_id != user_id:
                return False
            if token.expires_at <= now:
                return False
            self.verification_tokens.pop(token_id, None)
            user.email_verified = True
            user.updated_at = now
            self._persist_state()
            return True

    def delete_expired_verification_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                tid for tid, tok in self.verification_tokens.items() if tok.expires_at < now
            ]
            for tid in stale:
                self.verification_tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": password_hash}
                for user_id, password_hash in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "reset_tokens": [
                self._serialize_reset_token(t) for t in self.reset_tokens.values()
            ],
            "verification_tokens": [
                self._serialize_verification_token(t)
                for t in self.verification_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.reset_tokens = {
            t["id"]: self._deserialize_reset_token(t)
            for t in data.get("reset_tokens", [])
        }
        self.verification_tokens = {
            t["id"]: self._deserialize_verification_token(t)
            for t in data.get("verification_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            path=str(path),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        created_at = self._deserialize_datetime(data["created_at"])
        return User(
            id=str(data["id"]),
            email=data["email"],
            role=data.get("role", "user"),
            email_verified=bool(data.get("email_verified", False)),
            created_at=created_at,
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token_hash": session.token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "is_revoked": session.is_revoked,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_activity_at=self._deserialize_datetime(
                data.get("last_activity_at", data["created_at"])
            ),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            is_revoked=bool(data.get("is_revoked", False)),
        )

    def _serialize_reset_token(self, token: PasswordResetToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "used": token.used,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_reset_token(self, data: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=bool(data.get("used", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_verification_token(self, token: EmailVerificationToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_verification_token(self, data: dict) -> EmailVerificationToken:
        return EmailVerificationToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
