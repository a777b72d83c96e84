from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, StorageUnavailable
from sessionguard.storage.models import (
    EmailToken,
    EmailTokenKind,
    LoginAttempt,
    RefreshToken,
    User,
)


class MemoryStore:
    """In-memory backing store with JSON snapshots under ``fs_root``.

    Every mutation happens under ``_data_lock`` and is persisted before the
    lock is released; a failed snapshot rolls the mutation back so callers
    never observe state that was not written.
    """

    def __init__(self, fs_root: str = "/tmp/sessionguard") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.email_tokens: Dict[str, EmailToken] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.login_attempts: List[LoginAttempt] = []
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        self._state_path()

    def _commit(self, rollback: Callable[[], None]) -> None:
        """Persist the current state or undo the mutation that preceded it."""
        try:
            self._persist_state()
        except StorageUnavailable:
            rollback()
            raise

    # users
    def create_user(self, username: str, email: str) -> User:
        with self._data_lock:
            lowered = username.lower()
            if any(u.username.lower() == lowered for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), username=username, email=email)
            self.users[user.id] = user
            self._commit(lambda: self.users.pop(user.id, None))
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username.lower() == lowered), None
            )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        """Resolve a forgot-password identifier that may be an email or a username."""
        if "@" in identifier:
            return self.get_user_by_email(identifier.lower())
        return self.get_user_by_username(identifier)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            previous = user.email_verified
            user.email_verified = True

            def _undo() -> None:
                user.email_verified = previous

            self._commit(_undo)
            return user

    def update_user(
        self, user_id: str, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        """Rename and/or re-address a user; a changed email starts unverified."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if username is not None and any(
                u.id != user_id and u.username.lower() == username.lower()
                for u in self.users.values()
            ):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email is not None and any(
                u.id != user_id and u.email == email for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            previous = (user.username, user.email, user.email_verified)
            if username is not None:
                user.username = username
            if email is not None and email != user.email:
                user.email = email
                user.email_verified = False

            def _undo() -> None:
                user.username, user.email, user.email_verified = previous

            self._commit(_undo)
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            previous = self.credentials.get(user_id)
            self.credentials[user_id] = (password_hash, password_algo)

            def _undo() -> None:
                if previous is None:
                    self.credentials.pop(user_id, None)
                else:
                    self.credentials[user_id] = previous

            self._commit(_undo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # email tokens
    def create_email_token(self, token: EmailToken) -> EmailToken:
        with self._data_lock:
            if token.id in self.email_tokens:
                raise ConstraintViolation("email token id collision", {"field": "id"})
            self.email_tokens[token.id] = token
            self._commit(lambda: self.email_tokens.pop(token.id, None))
            return token

    def get_email_token(self, token_id: str, kind: EmailTokenKind) -> Optional[EmailToken]:
        with self._data_lock:
            token = self.email_tokens.get(token_id)
            if not token or token.kind != EmailTokenKind(kind):
                return None
            return token

    def consume_email_token(self, token_id: str, kind: EmailTokenKind) -> Optional[str]:
        """Flip ``used`` if the token is still live; returns the owner or None."""
        with self._data_lock:
            token = self.email_tokens.get(token_id)
            if not token or token.kind != EmailTokenKind(kind):
                return None
            if token.is_dead(self._now()):
                return None
            token.used = True

            def _undo() -> None:
                token.used = False

            self._commit(_undo)
            return token.user_id

    # refresh tokens
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token id collision", {"field": "id"})
            self.refresh_tokens[record.id] = record
            self._commit(lambda: self.refresh_tokens.pop(record.id, None))
            return record

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token_id)

    def rotate_refresh_token(self, current_id: str, successor: RefreshToken) -> bool:
        """Revoke ``current_id`` and insert ``successor`` as one unit.

        Returns False when the current token was already revoked or expired,
        which means another caller rotated it first.
        """
        with self._data_lock:
            current = self.refresh_tokens.get(current_id)
            if not current or current.revoked or self._now() >= current.expires_at:
                return False
            if successor.id in self.refresh_tokens:
                return False
            current.revoked = True
            self.refresh_tokens[successor.id] = successor

            def _undo() -> None:
                current.revoked = False
                self.refresh_tokens.pop(successor.id, None)

            self._commit(_undo)
            return True

    def _revoke_where(self, predicate: Callable[[RefreshToken], bool]) -> int:
        with self._data_lock:
            targets = [
                rt for rt in self.refresh_tokens.values() if not rt.revoked and predicate(rt)
            ]
            for rt in targets:
                rt.revoked = True

            def _undo() -> None:
                for rt in targets:
                    rt.revoked = False

            if targets:
                self._commit(_undo)
            return len(targets)

    def revoke_refresh_token(self, token_id: str) -> bool:
        return self._revoke_where(lambda rt: rt.id == token_id) > 0

    def revoke_refresh_family(self, family_id: str) -> int:
        return self._revoke_where(lambda rt: rt.family_id == family_id)

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        return self._revoke_where(lambda rt: rt.user_id == user_id)

    # login attempts
    def record_login_failure(self, username: str) -> None:
        with self._data_lock:
            attempt = LoginAttempt(username=username.lower(), attempted_at=self._now())
            self.login_attempts.append(attempt)
            self._commit(lambda: self.login_attempts.remove(attempt))

    def count_login_failures(self, username: str, since: datetime) -> int:
        lowered = username.lower()
        with self._data_lock:
            return sum(
                1
                for a in self.login_attempts
                if a.username == lowered and a.attempted_at >= since
            )

    def clear_login_failures(self, username: str) -> None:
        lowered = username.lower()
        with self._data_lock:
            previous = list(self.login_attempts)
            self.login_attempts = [a for a in previous if a.username != lowered]
            if len(previous) != len(self.login_attempts):

                def _undo() -> None:
                    self.login_attempts = previous

                self._commit(_undo)

    # housekeeping
    def purge_expired(self, before: datetime) -> dict[str, int]:
        """Drop email and refresh tokens that expired before ``before``."""
        with self._data_lock:
            expired_email = [t.id for t in self.email_tokens.values() if t.expires_at < before]
            expired_refresh = [
                t.id for t in self.refresh_tokens.values() if t.expires_at < before
            ]
            for token_id in expired_email:
                self.email_tokens.pop(token_id, None)
            for token_id in expired_refresh:
                self.refresh_tokens.pop(token_id, None)
            stale_attempts = [a for a in self.login_attempts if a.attempted_at < before]
            self.login_attempts = [a for a in self.login_attempts if a.attempted_at >= before]
            self._persist_state()
            return {
                "email_tokens": len(expired_email),
                "refresh_tokens": len(expired_refresh),
                "login_attempts": len(stale_attempts),
            }

    # persistence
    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "email_tokens": [
                self._serialize_email_token(t) for t in self.email_tokens.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "login_attempts": [
                {
                    "username": a.username,
                    "attempted_at": self._serialize_datetime(a.attempted_at),
                }
                for a in self.login_attempts
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise StorageUnavailable(
                f"failed to persist in-memory state: {exc}", operation="persist"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc), path=str(path))
            raise StorageUnavailable(f"failed to load in-memory state: {exc}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.email_tokens = {
            t["id"]: self._deserialize_email_token(t) for t in data.get("email_tokens", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.login_attempts = [
            LoginAttempt(
                username=a["username"],
                attempted_at=self._deserialize_datetime(a["attempted_at"]),
            )
            for a in data.get("login_attempts", [])
        ]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            email_verified=bool(data.get("email_verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_email_token(self, token: EmailToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "kind": token.kind.value,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "used": token.used,
        }

    def _deserialize_email_token(self, data: dict) -> EmailToken:
        return EmailToken(
            id=data["id"],
            user_id=data["user_id"],
            kind=EmailTokenKind(data["kind"]),
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            used=bool(data.get("used", False)),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "family_id": token.family_id,
            "version": token.version,
            "token_hash": token.token_hash,
            "remember": token.remember,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "revoked": token.revoked,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            family_id=data["family_id"],
            version=int(data["version"]),
            token_hash=data["token_hash"],
            remember=bool(data.get("remember", False)),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked=bool(data.get("revoked", False)),
        )
