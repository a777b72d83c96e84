from __future__ import annotations

import json
import os
import tempfile
import threading
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class TokenScope(str, Enum):
    """Where an access token lives on the client."""

    PERSISTENT = "persistent"  # survives process restarts
    EPHEMERAL = "ephemeral"  # discarded with the process


class TokenStorage(Protocol):
    def load(self) -> Optional[str]: ...

    def save(self, token: str) -> None: ...

    def delete(self) -> None: ...


class MemoryTokenStorage:
    def __init__(self, token: Optional[str] = None) -> None:
        self._token = token

    def load(self) -> Optional[str]:
        return self._token

    def save(self, token: str) -> None:
        self._token = token

    def delete(self) -> None:
        self._token = None


class FileTokenStorage:
    """Stores one token in a private JSON file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def load(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("token_file_unreadable", path=str(self.path), error=str(exc))
            return None
        value = data.get("access_token") if isinstance(data, dict) else None
        return value if isinstance(value, str) and value else None

    def save(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".token_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump({"access_token": token}, handle)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def delete(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class TokenCache:
    """Access-token holder with a persistent and an ephemeral scope.

    A token lives in exactly one scope at a time. Reads prefer the ephemeral
    scope. Every operation holds one lock, so a write is visible to the very
    next read from any thread of the process.

    ``generation`` advances on every :meth:`set` and :meth:`clear`. A refresh
    that started under an older generation must not write its result back.
    """

    def __init__(
        self,
        persistent: Optional[TokenStorage] = None,
        ephemeral: Optional[TokenStorage] = None,
    ) -> None:
        self._stores = {
            TokenScope.PERSISTENT: persistent if persistent is not None else MemoryTokenStorage(),
            TokenScope.EPHEMERAL: ephemeral if ephemeral is not None else MemoryTokenStorage(),
        }
        self._lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self) -> Optional[str]:
        with self._lock:
            return self._read()[0]

    def scope(self) -> Optional[TokenScope]:
        """The scope currently answering :meth:`get`, if any."""
        with self._lock:
            return self._read()[1]

    def set(self, token: str, scope: TokenScope) -> None:
        if not token:
            raise ValueError("token must be non-empty")
        scope = TokenScope(scope)
        other = (
            TokenScope.EPHEMERAL if scope is TokenScope.PERSISTENT else TokenScope.PERSISTENT
        )
        with self._lock:
            self._stores[scope].save(token)
            self._stores[other].delete()
            self._generation += 1

    def replace(self, token: str, *, generation: Optional[int] = None) -> Optional[TokenScope]:
        """Store a refreshed token in whichever scope held the previous one.

        With an empty cache the token goes to the ephemeral scope. When
        ``generation`` is given and the cache has been set or cleared since,
        nothing is stored and None is returned.
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                return None
            scope = self._read()[1] or TokenScope.EPHEMERAL
            self._stores[scope].save(token)
            return scope

    def clear(self, *, generation: Optional[int] = None) -> bool:
        """Forget both scopes; with ``generation``, only if still current."""
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            for store in self._stores.values():
                store.delete()
            self._generation += 1
            return True

    def _read(self) -> tuple[Optional[str], Optional[TokenScope]]:
        for scope in (TokenScope.EPHEMERAL, TokenScope.PERSISTENT):
            token = self._stores[scope].load()
            if token:
                return token, scope
        return None, None
