from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmailTokenKind(str, Enum):
    """Purposes an emailed token can be issued for."""

    PASSWORD_RESET = "reset"
    EMAIL_VERIFY = "verify"


@dataclass
class User:
    id: str
    username: str
    email: str
    email_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    last_updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class EmailToken:
    """Single-use capability grant. Only the hash of the secret is kept."""

    id: str
    user_id: str
    kind: EmailTokenKind
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    used: bool = False

    @classmethod
    def new(
        cls, user_id: str, kind: EmailTokenKind, token_hash: str, ttl: timedelta
    ) -> "EmailToken":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            kind=EmailTokenKind(kind),
            token_hash=token_hash,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_dead(self, now: Optional[datetime] = None) -> bool:
        return self.used or (now or _utcnow()) > self.expires_at


@dataclass
class RefreshToken:
    """Server-side state of one refresh credential in a rotation family.

    ``id`` doubles as the JWT ``jti`` and has the form ``family_id:version``.
    """

    id: str
    user_id: str
    family_id: str
    version: int
    token_hash: str
    expires_at: datetime
    remember: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    revoked: bool = False

    @staticmethod
    def make_id(family_id: str, version: int) -> str:
        return f"{family_id}:{version}"

    @classmethod
    def first(
        cls, user_id: str, expires_at: datetime, *, remember: bool
    ) -> "RefreshToken":
        """Start a new family. ``token_hash`` is filled in once the JWT is signed."""
        family_id = secrets.token_hex(16)
        return cls(
            id=cls.make_id(family_id, 1),
            user_id=user_id,
            family_id=family_id,
            version=1,
            token_hash="",
            expires_at=expires_at,
            remember=remember,
        )

    def successor(self) -> "RefreshToken":
        """Next member of the family; keeps the original expiry."""
        version = self.version + 1
        return RefreshToken(
            id=self.make_id(self.family_id, version),
            user_id=self.user_id,
            family_id=self.family_id,
            version=version,
            token_hash="",
            expires_at=self.expires_at,
            remember=self.remember,
        )


@dataclass
class LoginAttempt:
    username: str
    attempted_at: datetime = field(default_factory=_utcnow)
