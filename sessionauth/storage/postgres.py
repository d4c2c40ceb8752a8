from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    Session,
    User,
    utcnow,
)

_USER_COLUMNS = "id, email, role, email_verified, created_at, updated_at"


class PostgresStore:
    """Postgres-backed store for users, sessions and credential tokens.

    Each public method checks out one pooled connection; the pool commits on
    a clean exit and rolls back on error, so multi-statement methods are
    atomic.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "users",
            "sessions",
            "password_reset_tokens",
            "email_verification_tokens",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Run scripts/migrate.py to install the schema.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "user"),
            email_verified=bool(row.get("email_verified", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity_at=row.get("last_activity_at") or row["created_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_revoked=bool(row.get("is_revoked", False)),
        )

    @staticmethod
    def _reset_token_from_row(row: Dict[str, Any]) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used=bool(row.get("used", False)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _verification_token_from_row(row: Dict[str, Any]) -> EmailVerificationToken:
        return EmailVerificationToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

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
        user = User.new(email.strip().lower(), role=role, email_verified=email_verified, now=now)
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO users (id, email, password_hash, email_verified, role, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        password_hash,
                        user.email_verified,
                        user.role,
                        user.created_at,
                        user.updated_at,
                    ),
                )
                if verification_token_hash:
                    token = EmailVerificationToken.new(
                        user.id,
                        verification_token_hash,
                        ttl_seconds=verification_ttl_seconds or 24 * 60 * 60,
                        now=now,
                    )
                    conn.execute(
                        """
                        INSERT INTO email_verification_tokens (id, user_id, token_hash, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (token.id, token.user_id, token.token_hash, token.expires_at, token.created_at),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # malformed UUID: no row can match
            return None
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return row["password_hash"] if row else None

    def list_users(self, limit: int = 20, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM users").fetchone()
        return int(row["total"]) if row else 0

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        revoke_sessions: bool = False,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        with self._connect() as conn, conn.transaction():
            result = conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = %s WHERE id = %s",
                (password_hash, now, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if not revoke_sessions:
                return 0
            return self._revoke_user_sessions(conn, user_id, except_session_id, now)

    def update_user_email(
        self, user_id: str, email: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE users
                    SET email = %s,
                        email_verified = CASE WHEN email = %s THEN email_verified ELSE FALSE END,
                        updated_at = %s
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (email.strip().lower(), email.strip().lower(), now, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def update_user_role(
        self, user_id: str, role: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE users SET role = %s, updated_at = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                    (role, now or utcnow(), user_id),
                ).fetchone()
        except errors.CheckViolation:
            raise ConstraintViolation("invalid role", {"field": "role"})
        except errors.InvalidTextRepresentation:
            return None
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
                return result.rowcount > 0
        except errors.InvalidTextRepresentation:
            return False

    # -- sessions ----------------------------------------------------------

    def create_session(
        self, session: Session, *, max_active: int = 0, now: Optional[datetime] = None
    ) -> List[str]:
        now = now or utcnow()
        evicted: List[str] = []
        try:
            with self._connect() as conn, conn.transaction():
                if max_active > 0:
                    rows = conn.execute(
                        """
                        SELECT id FROM sessions
                        WHERE user_id = %s AND is_revoked = FALSE AND expires_at > %s
                        ORDER BY created_at ASC
                        FOR UPDATE
                        """,
                        (session.user_id, now),
                    ).fetchall()
                    if len(rows) >= max_active:
                        oldest_id = str(rows[0]["id"])
                        conn.execute(
                            "UPDATE sessions SET is_revoked = TRUE WHERE id = %s",
                            (oldest_id,),
                        )
                        evicted.append(oldest_id)
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, token_hash, expires_at, ip_address, user_agent, created_at, last_activity_at, is_revoked)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.expires_at,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                        session.last_activity_at,
                        session.is_revoked,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return evicted

    def get_active_session_by_token_hash(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM sessions
                WHERE token_hash = %s AND expires_at > %s AND is_revoked = FALSE
                """,
                (token_hash, now or utcnow()),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, now: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET last_activity_at = %s WHERE id = %s",
                (now or utcnow(), session_id),
            )

    def extend_session(
        self, token_hash: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> Optional[Session]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions
                SET expires_at = %s, last_activity_at = %s
                WHERE token_hash = %s AND expires_at > %s AND is_revoked = FALSE
                RETURNING *
                """,
                (expires_at, now, token_hash, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session_token(
        self,
        old_token_hash: str,
        new_token_hash: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions
                SET token_hash = %s, expires_at = %s, last_activity_at = %s
                WHERE token_hash = %s AND expires_at > %s AND is_revoked = FALSE
                RETURNING *
                """,
                (new_token_hash, expires_at, now, old_token_hash, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str, user_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE sessions SET is_revoked = TRUE
                    WHERE id = %s AND user_id = %s AND is_revoked = FALSE
                    """,
                    (session_id, user_id),
                )
                return result.rowcount > 0
        except errors.InvalidTextRepresentation:
            return False

    def revoke_session_by_token_hash(self, token_hash: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions SET is_revoked = TRUE
                WHERE token_hash = %s AND is_revoked = FALSE
                RETURNING id
                """,
                (token_hash,),
            ).fetchone()
        return str(row["id"]) if row else None

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        with self._connect() as conn:
            return self._revoke_user_sessions(conn, user_id, except_session_id, now or utcnow())

    @staticmethod
    def _revoke_user_sessions(
        conn, user_id: str, except_session_id: Optional[str], now: datetime
    ) -> int:
        if except_session_id:
            result = conn.execute(
                """
                UPDATE sessions SET is_revoked = TRUE
                WHERE user_id = %s AND id <> %s AND is_revoked = FALSE AND expires_at > %s
                """,
                (user_id, except_session_id, now),
            )
        else:
            result = conn.execute(
                """
                UPDATE sessions SET is_revoked = TRUE
                WHERE user_id = %s AND is_revoked = FALSE AND expires_at > %s
                """,
                (user_id, now),
            )
        return result.rowcount

    def list_active_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE user_id = %s AND expires_at > %s AND is_revoked = FALSE
                ORDER BY last_activity_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE expires_at < %s OR is_revoked = TRUE",
                (now or utcnow(),),
            )
            return result.rowcount

    # -- password reset tokens ---------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> int:
        try:
            with self._connect() as conn, conn.transaction():
                result = conn.execute(
                    "UPDATE password_reset_tokens SET used = TRUE WHERE user_id = %s AND used = FALSE",
                    (token.user_id,),
                )
                invalidated = result.rowcount
                conn.execute(
                    """
                    INSERT INTO password_reset_tokens (id, user_id, token_hash, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token_hash,
                        token.expires_at,
                        token.used,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        return invalidated

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._reset_token_from_row(row) if row else None

    def list_reset_tokens(self, user_id: str) -> List[PasswordResetToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM password_reset_tokens WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [self._reset_token_from_row(row) for row in rows]

    def complete_password_reset(
        self,
        token_id: str,
        user_id: str,
        password_hash: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        now = now or utcnow()
        with self._connect() as conn, conn.transaction():
            consumed = conn.execute(
                """
                UPDATE password_reset_tokens SET used = TRUE
                WHERE id = %s AND user_id = %s AND used = FALSE AND expires_at > %s
                RETURNING id
                """,
                (token_id, user_id, now),
            ).fetchone()
            if not consumed:
                return None
            result = conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = %s WHERE id = %s",
                (password_hash, now, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            return self._revoke_user_sessions(conn, user_id, None, now)

    def delete_stale_reset_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_tokens WHERE expires_at < %s OR used = TRUE",
                (now or utcnow(),),
            )
            return result.rowcount

    # -- email verification tokens -----------------------------------------

    def replace_verification_token(self, token: EmailVerificationToken) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "DELETE FROM email_verification_tokens WHERE user_id = %s",
                    (token.user_id,),
                )
                conn.execute(
                    """
                    INSERT INTO email_verification_tokens (id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.id, token.user_id, token.token_hash, token.expires_at, token.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})

    def get_verification_token_by_hash(
        self, token_hash: str
    ) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_verification_tokens WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._verification_token_from_row(row) if row else None

    def list_verification_tokens(self, user_id: str) -> List[EmailVerificationToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM email_verification_tokens WHERE user_id = %s",
                (user_id,),
            ).fetchall()
        return [self._verification_token_from_row(row) for row in rows]

    def consume_verification_token(
        self, token_id: str, user_id: str, *, now: Optional[datetime] = None
    ) -> bool:
        now = now or utcnow()
        with self._connect() as conn, conn.transaction():
            deleted = conn.execute(
                """
                DELETE FROM email_verification_tokens
                WHERE id = %s AND user_id = %s AND expires_at > %s
                RETURNING id
                """,
                (token_id, user_id, now),
            ).fetchone()
            if not deleted:
                return False
            conn.execute(
                "UPDATE users SET email_verified = TRUE, updated_at = %s WHERE id = %s",
                (now, user_id),
            )
            return True

    def delete_expired_verification_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM email_verification_tokens WHERE expires_at < %s",
                (now or utcnow(),),
            )
            return result.rowcount
