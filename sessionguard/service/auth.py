from __future__ import annotations

import base64
import contextlib
import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from sessionguard.config import Settings
from sessionguard.logging import get_logger, redact_email
from sessionguard.service.email_tokens import EmailTokenService
from sessionguard.service.errors import (
    AuthFailedError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    TransientFailureError,
    ValidationError,
)
from sessionguard.service.hashing import SecretHasher
from sessionguard.storage.errors import ConstraintViolation, StorageUnavailable
from sessionguard.storage.models import EmailTokenKind, RefreshToken, User
from sessionguard.storage.redis_cache import CacheBackend

logger = get_logger(__name__)

USERNAME_RE = re.compile(r"^[a-zA-Z0-9]{3,30}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PASSWORD_DIGIT_RE = re.compile(r"[0-9]")
_PASSWORD_SPECIAL_RE = re.compile(r"""[!@#$%^&*()\-_+={}\[\]:;"'<>,.?/\\|]""")
PASSWORD_RULE = "password must be at least 8 characters with a number and a special character"


def validate_username(username: str) -> str:
    if not username or not USERNAME_RE.match(username):
        raise ValidationError(
            "username must be 3-30 letters or digits", detail={"field": "username"}
        )
    return username


def validate_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return email


def validate_password(password: str, *, field: str = "password") -> str:
    if (
        not password
        or len(password) < 8
        or not _PASSWORD_DIGIT_RE.search(password)
        or not _PASSWORD_SPECIAL_RE.search(password)
    ):
        raise ValidationError(PASSWORD_RULE, detail={"field": field})
    return password


class AuthStore(Protocol):
    def create_user(self, username: str, email: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_login(self, identifier: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def update_user(
        self, user_id: str, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(self, current_id: str, successor: RefreshToken) -> bool: ...

    def revoke_refresh_token(self, token_id: str) -> bool: ...

    def revoke_refresh_family(self, family_id: str) -> int: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def record_login_failure(self, username: str) -> None: ...

    def count_login_failures(self, username: str, since: datetime) -> int: ...

    def clear_login_failures(self, username: str) -> None: ...


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    username: str
    remember_me: bool
    refresh_expires_at: datetime


@dataclass
class AccountUpdate:
    user: User
    email_changed: bool = False
    password_changed: bool = False
    revoked_sessions: int = 0


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    remember_me: bool
    refresh_expires_at: datetime


class AuthService:
    """Password login plus the rotating access/refresh token protocol.

    Access tokens are short-lived HS256 JWTs that are never stored. Refresh
    tokens are JWTs whose ``jti`` names a server-side RefreshToken row; the
    row keeps only a keyed hash of the JWT and is rotated on every use.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[CacheBackend],
        settings: Settings,
        *,
        hasher: SecretHasher,
        email_tokens: EmailTokenService,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.hasher = hasher
        self.email_tokens = email_tokens
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @contextlib.contextmanager
    def _storage(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StorageUnavailable as exc:
            self.logger.error("auth_storage_unavailable", operation=operation, error=str(exc))
            raise TransientFailureError("service temporarily unavailable") from exc

    # -- registration and email verification -------------------------------

    async def register(self, username: str, email: str, password: str) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        username = validate_username(username)
        email = validate_email(email)
        password = validate_password(password)
        pwd_hash, algo = self._hash_password(password)
        with self._storage("register"):
            try:
                user = self.store.create_user(username, email)
            except ConstraintViolation as exc:
                field = (exc.detail or {}).get("field", "username")
                raise ConflictError(
                    f"{field} already registered", detail={"field": field}
                ) from exc
            self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_registered", user_id=user.id, to=redact_email(email))
        return user

    async def request_email_verification(self, user: User) -> Tuple[str, str]:
        """Issue a verify token for ``user``; returns ``(raw_secret, token_id)``."""
        return self.email_tokens.create(
            user.id,
            EmailTokenKind.EMAIL_VERIFY,
            timedelta(minutes=self.settings.verify_token_ttl_minutes),
        )

    async def verify_email(self, token_id: str, raw_secret: str) -> User:
        user_id = self.email_tokens.verify(token_id, raw_secret, EmailTokenKind.EMAIL_VERIFY)
        with self._storage("verify_email"):
            user = self.store.mark_email_verified(user_id)
        if user is None:
            self.logger.warning("email_verification_missing_user", user_id=user_id)
            raise AuthFailedError("account no longer exists")
        self.logger.info("email_verified", user_id=user_id)
        return user

    # -- password reset ----------------------------------------------------

    async def request_password_reset(
        self, identifier: str
    ) -> Optional[Tuple[User, str, str]]:
        """Issue a reset token for the account named by email or username.

        Returns ``(user, raw_secret, token_id)``, or None when no account
        matches. Callers must answer both cases identically.
        """
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("email or username is required", detail={"field": "identifier"})
        with self._storage("request_password_reset"):
            user = self.store.get_user_by_login(identifier)
        if user is None:
            self.logger.info(
                "password_reset_unknown_account",
                identifier_hash=hashlib.sha256(identifier.lower().encode()).hexdigest()[:16],
            )
            return None
        raw_secret, token_id = self.email_tokens.create(
            user.id,
            EmailTokenKind.PASSWORD_RESET,
            timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        self.logger.info("password_reset_requested", user_id=user.id, tid=token_id)
        return user, raw_secret, token_id

    async def reset_password(
        self,
        token_id: str,
        raw_secret: str,
        new_password: str,
        confirm_password: Optional[str] = None,
    ) -> User:
        if confirm_password is not None and new_password != confirm_password:
            raise ValidationError("passwords do not match", detail={"field": "confirmNewPassword"})
        validate_password(new_password, field="newPassword")
        user_id = self.email_tokens.verify(token_id, raw_secret, EmailTokenKind.PASSWORD_RESET)
        pwd_hash, algo = self._hash_password(new_password)
        with self._storage("reset_password"):
            user = self.store.get_user(user_id)
            if user is None:
                self.logger.warning("password_reset_user_missing", user_id=user_id)
                raise AuthFailedError("account no longer exists")
            self.store.save_password(user_id, pwd_hash, algo)
            revoked = self.store.revoke_user_refresh_tokens(user_id)
            self.store.clear_login_failures(self._lockout_key(user.username))
        self.logger.info("password_reset_completed", user_id=user_id, revoked_sessions=revoked)
        return user

    # -- account updates -----------------------------------------------------

    async def update_account(
        self,
        user: User,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        old_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> AccountUpdate:
        """Change the username, email or password of an authenticated user.

        All fields are validated before anything is written. A new email is
        unverified until its link is followed; callers issue that link when
        ``email_changed`` is set. A new password needs the current one and
        revokes every refresh token of the user.
        """
        new_username = None
        if username and username != user.username:
            new_username = validate_username(username)
        new_email = None
        if email:
            candidate = validate_email(email)
            if candidate != user.email:
                new_email = candidate
        pwd_record = None
        if new_password:
            validate_password(new_password, field="newPassword")
            with self._storage("update_account"):
                current_ok = bool(old_password) and self.verify_password(user.id, old_password)
            if not current_ok:
                self.logger.info("account_update_rejected", user_id=user.id, reason="old_password")
                raise ValidationError(
                    "current password incorrect", detail={"field": "oldPassword"}
                )
            pwd_record = self._hash_password(new_password)

        updated = user
        revoked = 0
        with self._storage("update_account"):
            if new_username is not None or new_email is not None:
                try:
                    updated = self.store.update_user(
                        user.id, username=new_username, email=new_email
                    )
                except ConstraintViolation as exc:
                    field = (exc.detail or {}).get("field", "username")
                    raise ConflictError(
                        f"{field} already registered", detail={"field": field}
                    ) from exc
                if updated is None:
                    raise AuthFailedError("account no longer exists")
            if pwd_record is not None:
                self.store.save_password(user.id, *pwd_record)
                revoked = self.store.revoke_user_refresh_tokens(user.id)
        self.logger.info(
            "account_updated",
            user_id=user.id,
            username_changed=new_username is not None,
            email_changed=new_email is not None,
            password_changed=pwd_record is not None,
            revoked_sessions=revoked,
        )
        return AccountUpdate(
            user=updated,
            email_changed=new_email is not None,
            password_changed=pwd_record is not None,
            revoked_sessions=revoked,
        )

    # -- login / refresh / logout -----------------------------------------

    def _lockout_key(self, username: str) -> str:
        return username.strip().lower()

    async def login(self, username: str, password: str, remember_me: bool = False) -> LoginResult:
        if not username or not password:
            raise ValidationError("username and password are required")
        key = self._lockout_key(username)
        since = self._now() - timedelta(minutes=self.settings.login_lockout_window_minutes)
        with self._storage("login"):
            failures = self.store.count_login_failures(key, since)
            if failures >= self.settings.login_lockout_threshold:
                self.logger.warning("login_locked", username=key, failures=failures)
                raise RateLimitedError(
                    "Account locked", detail={"retry_after_minutes": self.settings.login_lockout_window_minutes}
                )
            user = self.store.get_user_by_username(username)
            if not user or not self.verify_password(user.id, password):
                self.store.record_login_failure(key)
                self.logger.info("login_failed", username=key, failures=failures + 1)
                raise AuthFailedError("invalid credentials")
            if self.settings.require_email_verification and not user.email_verified:
                raise ForbiddenError("email not verified")
            self.store.clear_login_failures(key)

            refresh_ttl = (
                self.settings.refresh_token_ttl_minutes
                if remember_me
                else self.settings.session_refresh_ttl_minutes
            )
            record = RefreshToken.first(
                user.id, self._now() + timedelta(minutes=refresh_ttl), remember=remember_me
            )
            refresh_token = self._sign_refresh(record)
            self.store.create_refresh_token(record)
        access_token = self._issue_access(user)
        self.logger.info(
            "login_succeeded", user_id=user.id, family=record.family_id, remember=remember_me
        )
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            username=user.username,
            remember_me=remember_me,
            refresh_expires_at=record.expires_at,
        )

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        """Rotate a refresh credential and issue a new access token.

        Every rejection is terminal (AuthFailedError); only storage outages
        surface as TransientFailureError.
        """
        payload = self._decode_jwt(refresh_token) if refresh_token else None
        if not payload or payload.get("token_type") != "refresh" or not payload.get("jti"):
            raise AuthFailedError("invalid refresh token")
        jti = payload["jti"]
        with self._storage("refresh"):
            record = self.store.get_refresh_token(jti)
            if record is None or record.user_id != payload.get("sub"):
                self.logger.info("refresh_rejected", jti=jti, reason="unknown")
                raise AuthFailedError("invalid refresh token")
            if record.revoked:
                revoked = self.store.revoke_refresh_family(record.family_id)
                self.logger.warning(
                    "refresh_token_reuse", jti=jti, family=record.family_id, revoked=revoked
                )
                raise AuthFailedError("invalid refresh token")
            if record.expires_at <= self._now():
                self.logger.info("refresh_rejected", jti=jti, reason="expired")
                raise AuthFailedError("invalid refresh token")
            if not self.hasher.verify(refresh_token, record.token_hash):
                self.logger.warning("refresh_rejected", jti=jti, reason="mismatch")
                raise AuthFailedError("invalid refresh token")
            successor = record.successor()
            new_refresh = self._sign_refresh(successor)
            if not self.store.rotate_refresh_token(record.id, successor):
                self.logger.info("refresh_rejected", jti=jti, reason="rotated_concurrently")
                raise AuthFailedError("invalid refresh token")
            user = self.store.get_user(record.user_id)
        if user is None:
            raise AuthFailedError("invalid refresh token")
        self.logger.info("refresh_rotated", user_id=user.id, jti=successor.id)
        return RefreshResult(
            access_token=self._issue_access(user),
            refresh_token=new_refresh,
            remember_me=successor.remember,
            refresh_expires_at=successor.expires_at,
        )

    async def logout(
        self, refresh_token: Optional[str], access_token: Optional[str] = None
    ) -> None:
        """Revoke the presented credentials. Unknown or expired ones are ignored."""
        payload = self._decode_jwt(refresh_token) if refresh_token else None
        if payload and payload.get("token_type") == "refresh" and payload.get("jti"):
            with self._storage("logout"):
                record = self.store.get_refresh_token(payload["jti"])
                if record and self.hasher.verify(refresh_token, record.token_hash):
                    self.store.revoke_refresh_token(record.id)
                    self.logger.info("logout", user_id=record.user_id, jti=record.id)
        if access_token:
            await self._denylist_access_token(access_token)

    async def _denylist_access_token(self, access_token: str) -> None:
        payload = self._decode_jwt(access_token)
        if not payload or payload.get("token_type") != "access" or not self.cache:
            return
        ttl = int(float(payload.get("exp", 0)) - time.time())
        try:
            await self.cache.denylist_access_token(payload.get("jti", ""), ttl)
        except Exception as exc:
            self.logger.warning("access_denylist_failed", error=str(exc))

    async def authenticate(self, authorization: Optional[str]) -> User:
        """Resolve a ``Bearer`` access token to its user."""
        token = self.extract_bearer(authorization)
        payload = self._decode_jwt(token) if token else None
        if not payload or payload.get("token_type") != "access":
            raise AuthFailedError("invalid access token")
        jti = payload.get("jti")
        if self.cache and jti:
            try:
                denied = await self.cache.is_access_token_denylisted(jti)
            except Exception as exc:
                # Fail closed while the denylist cannot be consulted
                self.logger.warning("access_denylist_check_failed", error=str(exc))
                denied = True
            if denied:
                raise AuthFailedError("invalid access token")
        with self._storage("authenticate"):
            user = self.store.get_user(payload.get("sub", ""))
        if user is None:
            raise AuthFailedError("invalid access token")
        return user

    # -- passwords -----------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    # -- JWT -----------------------------------------------------------------

    def _issue_access(self, user: User) -> str:
        exp = self._now() + timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user.id,
                "username": user.username,
                "token_type": "access",
                "jti": str(uuid.uuid4()),
                "exp": int(exp.timestamp()),
            }
        )

    def _sign_refresh(self, record: RefreshToken) -> str:
        """Sign the refresh JWT for ``record`` and store its hash on the record."""
        token = self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": record.user_id,
                "token_type": "refresh",
                "jti": record.id,
                "exp": int(record.expires_at.timestamp()),
            }
        )
        record.token_hash = self.hasher.hash(token)
        return token

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
