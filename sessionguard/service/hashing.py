from __future__ import annotations

import hashlib
import hmac


class SecretHasher:
    """Keyed one-way hash for high-entropy secrets (email tokens, refresh JWTs).

    Secrets hashed here are random 256-bit values, so a keyed SHA-256 digest is
    enough to make a leaked table useless without also leaking the key.
    Passwords do not go through this class; they use argon2 in AuthService.
    """

    algorithm = "hmac-sha256"

    def __init__(self, key: str | bytes) -> None:
        if isinstance(key, str):
            key = key.encode("utf-8")
        if not key:
            raise ValueError("secret hasher requires a non-empty key")
        self._key = key

    def hash(self, raw_secret: str) -> str:
        return hmac.new(
            self._key, raw_secret.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def verify(self, raw_secret: str, stored_hash: str) -> bool:
        """Constant-time comparison of ``hash(raw_secret)`` against ``stored_hash``."""
        candidate = self.hash(raw_secret)
        return hmac.compare_digest(candidate.encode("utf-8"), stored_hash.encode("utf-8"))
