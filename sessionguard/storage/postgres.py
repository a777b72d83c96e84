from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, StorageUnavailable
from sessionguard.storage.models import EmailToken, EmailTokenKind, RefreshToken, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_lower_idx ON app_user (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        kind TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS email_token_id_kind_idx ON email_token (id, kind)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        family_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        token_hash TEXT NOT NULL,
        remember BOOLEAN NOT NULL DEFAULT FALSE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_family_idx ON refresh_token (family_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL,
        attempted_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempt_username_idx ON login_attempt (username, attempted_at)",
)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed store for users, credentials and token state."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection; connectivity failures become StorageUnavailable."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, errors.InterfaceError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            email_verified=bool(row.get("email_verified", False)),
            created_at=_aware(row.get("created_at") or datetime.now(timezone.utc)),
        )

    def create_user(self, username: str, email: str) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._user_conflict(exc) from exc
        return self._user_from_row(row)

    @staticmethod
    def _user_conflict(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", "") or ""
        field = "username" if "username" in constraint else "email"
        return ConstraintViolation(f"{field} already exists", {"field": field})

    def update_user(
        self, user_id: str, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        """Rename and/or re-address a user; a changed email starts unverified."""
        try:
            with self._connect() as conn:
                # SET expressions all see the pre-update row
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET username = COALESCE(%s, username),
                        email = COALESCE(%s, email),
                        email_verified = CASE
                            WHEN %s::text IS NOT NULL AND %s::text <> email THEN FALSE
                            ELSE email_verified
                        END,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (username, email, email, email, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._user_conflict(exc) from exc
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        """Resolve a forgot-password identifier that may be an email or a username."""
        if "@" in identifier:
            return self.get_user_by_email(identifier.lower())
        return self.get_user_by_username(identifier)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # email tokens
    @staticmethod
    def _email_token_from_row(row: dict) -> EmailToken:
        return EmailToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=EmailTokenKind(row["kind"]),
            token_hash=row["token_hash"],
            expires_at=_aware(row["expires_at"]),
            created_at=_aware(row["created_at"]),
            used=bool(row["used"]),
        )

    def create_email_token(self, token: EmailToken) -> EmailToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO email_token (id, user_id, kind, token_hash, expires_at, created_at, used)
                    VALUES (%s, %s, %s, %s, %s, %s, FALSE)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.kind.value,
                        token.token_hash,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email token id collision", {"field": "id"}) from exc
        return token

    def get_email_token(self, token_id: str, kind: EmailTokenKind) -> Optional[EmailToken]:
        try:
            uuid.UUID(token_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_token WHERE id = %s AND kind = %s",
                (token_id, EmailTokenKind(kind).value),
            ).fetchone()
        return self._email_token_from_row(row) if row else None

    def consume_email_token(self, token_id: str, kind: EmailTokenKind) -> Optional[str]:
        """Flip ``used`` if the token is still live; returns the owner or None."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_token
                SET used = TRUE
                WHERE id = %s AND kind = %s AND used = FALSE AND expires_at > now()
                RETURNING user_id
                """,
                (token_id, EmailTokenKind(kind).value),
            ).fetchone()
        return str(row["user_id"]) if row else None

    # refresh tokens
    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            user_id=str(row["user_id"]),
            family_id=row["family_id"],
            version=int(row["version"]),
            token_hash=row["token_hash"],
            remember=bool(row["remember"]),
            expires_at=_aware(row["expires_at"]),
            created_at=_aware(row["created_at"]),
            revoked=bool(row["revoked"]),
        )

    @staticmethod
    def _insert_refresh(conn: Any, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token
                (id, user_id, family_id, version, token_hash, remember, expires_at, created_at, revoked)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, FALSE)
            """,
            (
                record.id,
                record.user_id,
                record.family_id,
                record.version,
                record.token_hash,
                record.remember,
                record.expires_at,
                record.created_at,
            ),
        )

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, record)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token id collision", {"field": "id"}) from exc
        return record

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(self, current_id: str, successor: RefreshToken) -> bool:
        """Revoke ``current_id`` and insert ``successor`` in one transaction.

        Returns False when the current token was already revoked or expired,
        which means another caller rotated it first.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    result = conn.execute(
                        """
                        UPDATE refresh_token
                        SET revoked = TRUE
                        WHERE id = %s AND revoked = FALSE AND expires_at > now()
                        """,
                        (current_id,),
                    )
                    if result.rowcount == 0:
                        return False
                    self._insert_refresh(conn, successor)
        except errors.UniqueViolation:
            # Successor id already taken by a concurrent rotation; the transaction rolled back
            return False
        return True

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE id = %s AND revoked = FALSE",
                (token_id,),
            )
            return result.rowcount > 0

    def revoke_refresh_family(self, family_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE family_id = %s AND revoked = FALSE",
                (family_id,),
            )
            return result.rowcount

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return result.rowcount

    # login attempts
    def record_login_failure(self, username: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO login_attempt (username, attempted_at) VALUES (%s, now())",
                (username.lower(),),
            )

    def count_login_failures(self, username: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM login_attempt WHERE username = %s AND attempted_at >= %s",
                (username.lower(), since),
            ).fetchone()
        return int(row["n"]) if row else 0

    def clear_login_failures(self, username: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM login_attempt WHERE username = %s", (username.lower(),))

    # housekeeping
    def purge_expired(self, before: datetime) -> dict[str, int]:
        """Drop email and refresh tokens that expired before ``before``."""
        with self._connect() as conn:
            with conn.transaction():
                email_tokens = conn.execute(
                    "DELETE FROM email_token WHERE expires_at < %s", (before,)
                ).rowcount
                refresh_tokens = conn.execute(
                    "DELETE FROM refresh_token WHERE expires_at < %s", (before,)
                ).rowcount
                login_attempts = conn.execute(
                    "DELETE FROM login_attempt WHERE attempted_at < %s", (before,)
                ).rowcount
        return {
            "email_tokens": email_tokens,
            "refresh_tokens": refresh_tokens,
            "login_attempts": login_attempts,
        }
