from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Tuple

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    ExpiredOrUsedError,
    InvalidTokenError,
    TransientFailureError,
    ValidationError,
)
from sessionguard.service.hashing import SecretHasher
from sessionguard.storage.errors import StorageUnavailable
from sessionguard.storage.models import EmailToken, EmailTokenKind

logger = get_logger(__name__)

# Upper bound on accepted secret length; anything longer is not one of ours
_MAX_SECRET_LENGTH = 256


class EmailTokenStore(Protocol):
    def create_email_token(self, token: EmailToken) -> EmailToken: ...

    def get_email_token(
        self, token_id: str, kind: EmailTokenKind
    ) -> Optional[EmailToken]: ...

    def consume_email_token(self, token_id: str, kind: EmailTokenKind) -> Optional[str]: ...


class EmailTokenService:
    """Issues and verifies single-use, kind-scoped, expiring emailed tokens.

    The raw secret leaves this class exactly once, as the return value of
    :meth:`create`; storage only ever sees ``SecretHasher.hash(secret)``.
    """

    def __init__(self, store: EmailTokenStore, hasher: SecretHasher) -> None:
        self.store = store
        self.hasher = hasher

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create(
        self, user_id: str, kind: EmailTokenKind, ttl: timedelta
    ) -> Tuple[str, str]:
        """Issue a token and return ``(raw_secret, token_id)``."""
        if not user_id:
            raise ValidationError("user id is required")
        if ttl <= timedelta(0):
            raise ValidationError("token lifetime must be positive")
        kind = EmailTokenKind(kind)
        raw_secret = secrets.token_urlsafe(32)
        token = EmailToken.new(user_id, kind, self.hasher.hash(raw_secret), ttl)
        try:
            self.store.create_email_token(token)
        except StorageUnavailable as exc:
            logger.error(
                "email_token_create_failed", user_id=user_id, kind=kind.value, error=str(exc)
            )
            raise TransientFailureError("could not store token") from exc
        logger.info(
            "email_token_created",
            tid=token.id,
            user_id=user_id,
            kind=kind.value,
            expires_at=token.expires_at.isoformat(),
        )
        return raw_secret, token.id

    def verify(self, token_id: str, raw_secret: str, kind: EmailTokenKind) -> str:
        """Consume a token and return its owner's user id.

        Raises:
            ValidationError: ids or secrets that cannot be ours
            InvalidTokenError: unknown id, wrong kind, or secret mismatch
            ExpiredOrUsedError: token already consumed or past its expiry
            TransientFailureError: storage failed; the token was not consumed
        """
        if not token_id or not raw_secret or len(raw_secret) > _MAX_SECRET_LENGTH:
            raise ValidationError("token id and secret are required")
        try:
            kind = EmailTokenKind(kind)
        except ValueError as exc:
            raise ValidationError("unknown token kind") from exc

        try:
            token = self.store.get_email_token(token_id, kind)
        except StorageUnavailable as exc:
            logger.error("email_token_lookup_failed", tid=token_id, error=str(exc))
            raise TransientFailureError("could not read token") from exc
        if token is None:
            logger.info("email_token_rejected", tid=token_id, kind=kind.value, reason="not_found")
            raise InvalidTokenError("invalid or expired token")
        # Dead tokens are rejected before the secret is looked at
        if token.is_dead(self._now()):
            logger.info(
                "email_token_rejected",
                tid=token_id,
                kind=kind.value,
                reason="used" if token.used else "expired",
            )
            raise ExpiredOrUsedError("invalid or expired token")
        if not self.hasher.verify(raw_secret, token.token_hash):
            logger.warning(
                "email_token_rejected", tid=token_id, kind=kind.value, reason="mismatch"
            )
            raise InvalidTokenError("invalid or expired token")

        try:
            user_id = self.store.consume_email_token(token_id, kind)
        except StorageUnavailable as exc:
            logger.error("email_token_consume_failed", tid=token_id, error=str(exc))
            raise TransientFailureError("could not consume token") from exc
        if user_id is None:
            # Lost the race against a concurrent verify, or expired in between
            logger.info("email_token_rejected", tid=token_id, kind=kind.value, reason="raced")
            raise ExpiredOrUsedError("invalid or expired token")
        logger.info("email_token_consumed", tid=token_id, user_id=user_id, kind=kind.value)
        return user_id
