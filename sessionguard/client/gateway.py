from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable, Optional

import httpx

from sessionguard.client.token_cache import TokenCache
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthFailedError,
    RequestTimeoutError,
    ServiceError,
    TransientFailureError,
)

logger = get_logger(__name__)

Refresher = Callable[[], Awaitable[str]]


async def dispatch(
    http: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    token: Optional[str] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request, mapping transport failures onto the service errors."""
    headers = dict(kwargs.pop("headers", None) or {})
    if token:
        headers["Authorization"] = f"Bearer {token}"
    try:
        return await http.request(method, url, headers=headers, **kwargs)
    except httpx.TimeoutException as exc:
        logger.warning("client_request_timeout", method=method, url=url)
        raise RequestTimeoutError(f"{method} {url} timed out") from exc
    except httpx.TransportError as exc:
        logger.warning(
            "client_transport_error", method=method, url=url, error_type=type(exc).__name__
        )
        raise TransientFailureError(f"{method} {url} failed: {exc}") from exc


class AuthenticatedGateway:
    """Sends privileged requests with the cached access token.

    A 401 answer causes at most one refresh and one retry for that call.
    Concurrent calls that are rejected together share a single refresh.
    """

    def __init__(
        self, http: httpx.AsyncClient, cache: TokenCache, refresher: Refresher
    ) -> None:
        self.http = http
        self.cache = cache
        self._refresher = refresher
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task[str]] = None

    async def call(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = self.cache.get()
        response = await dispatch(self.http, method, url, token=token, **kwargs)
        if response.status_code != 401:
            return response
        logger.info("client_access_rejected", method=method, url=url, had_token=bool(token))
        fresh = await self._refresh_after_rejection(token)
        return await dispatch(self.http, method, url, token=fresh, **kwargs)

    async def refresh(self) -> str:
        """Refresh now, joining a refresh that is already running."""
        return await self._join_refresh(None, force=True)

    async def _refresh_after_rejection(self, rejected: Optional[str]) -> str:
        return await self._join_refresh(rejected, force=False)

    async def _join_refresh(self, rejected: Optional[str], *, force: bool) -> str:
        async with self._lock:
            if not force:
                current = self.cache.get()
                if current and current != rejected:
                    # Another call refreshed after this request went out
                    return current
                if rejected and current is None:
                    # Cleared by logout or a failed refresh in the meantime
                    raise AuthFailedError("session ended")
            if self._inflight is None:
                self._inflight = asyncio.create_task(self._run_refresh(self.cache.generation))
            task = self._inflight
        # One caller being cancelled must not cancel the refresh the others await
        return await asyncio.shield(task)

    async def wait_for_refresh(self) -> None:
        """Let a refresh that is already running finish, whatever its outcome."""
        task = self._inflight
        if task is None:
            return
        with contextlib.suppress(ServiceError):
            await asyncio.shield(task)

    async def _run_refresh(self, generation: int) -> str:
        # A logout or login while the refresh is out makes its result stale
        try:
            token = await self._refresher()
        except AuthFailedError:
            self.cache.clear(generation=generation)
            logger.info("client_refresh_failed", terminal=True)
            raise
        except TransientFailureError as exc:
            logger.warning("client_refresh_failed", terminal=False, error=exc.message)
            raise
        else:
            scope = self.cache.replace(token, generation=generation)
            if scope is None:
                logger.info("client_refresh_discarded", reason="session_changed")
                raise AuthFailedError("session ended during refresh")
            logger.info("client_refresh_succeeded", scope=scope.value)
            return token
        finally:
            self._inflight = None
