from __future__ import annotations

from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from sessionguard.client.gateway import AuthenticatedGateway, dispatch
from sessionguard.client.token_cache import TokenCache, TokenScope
from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthFailedError,
    ConflictError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    RequestTimeoutError,
    ServerError,
    ServiceError,
    TransientFailureError,
    ValidationError,
)

logger = get_logger(__name__)

_ERRORS_BY_CODE: dict[str, type[ServiceError]] = {
    "validation_error": ValidationError,
    "invalid_token": InvalidTokenError,
    "unauthorized": AuthFailedError,
    "forbidden": ForbiddenError,
    "not_found": NotFoundError,
    "conflict": ConflictError,
    "rate_limited": RateLimitedError,
    "server_error": ServerError,
    "unavailable": TransientFailureError,
    "timeout": RequestTimeoutError,
}


def _error_from_response(response: httpx.Response) -> ServiceError:
    """Rebuild the server's ServiceError from an error envelope."""
    code, message, details = None, f"HTTP {response.status_code}", {}
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        code = error.get("code")
        message = error.get("message") or message
        details = error.get("details") if isinstance(error.get("details"), dict) else {}
    error_cls = _ERRORS_BY_CODE.get(code or "")
    if error_cls is None:
        if response.status_code >= 500:
            error_cls = TransientFailureError
        else:
            return ServiceError(message, status_code=response.status_code, detail=details)
    return error_cls(message, detail=details)


def _data(response: httpx.Response, *, what: str = "response") -> dict[str, Any]:
    if not response.is_success:
        raise _error_from_response(response)
    try:
        body = response.json()
    except ValueError as exc:
        raise TransientFailureError(f"malformed {what}") from exc
    if not isinstance(body, dict):
        raise TransientFailureError(f"malformed {what}")
    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise TransientFailureError(f"malformed {what}")
    return data


class SessionClient:
    """Client-side session operations against the HTTP API.

    The refresh credential travels only as an HTTP-only cookie held by the
    httpx cookie jar. The access token lives in the injected TokenCache.
    """

    def __init__(self, http: httpx.AsyncClient, cache: Optional[TokenCache] = None) -> None:
        self.http = http
        self.cache = cache if cache is not None else TokenCache()
        self.gateway = AuthenticatedGateway(self.http, self.cache, self._request_refresh)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[TokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SessionClient":
        settings = settings or get_settings()
        http = httpx.AsyncClient(
            base_url=settings.api_base_url.rstrip("/") + "/",
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )
        return cls(http, cache)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "SessionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def register(self, username: str, email: str, password: str) -> dict[str, Any]:
        response = await dispatch(
            self.http,
            "POST",
            "register",
            json={"username": username, "email": email, "password": password},
        )
        return _data(response)

    async def verify_email(self, token_id: str, token: str) -> bool:
        """Follow an emailed verification link; True when the account was verified."""
        response = await dispatch(
            self.http,
            "GET",
            "verify-email",
            params={"tid": token_id, "t": token},
            follow_redirects=False,
        )
        if not response.is_redirect:
            raise _error_from_response(response)
        query = parse_qs(urlparse(response.headers.get("location", "")).query)
        return query.get("success") == ["1"]

    async def login(self, username: str, password: str, remember_me: bool = False) -> dict[str, Any]:
        response = await dispatch(
            self.http,
            "POST",
            "login",
            json={"username": username, "password": password, "rememberMe": remember_me},
        )
        data = _data(response)
        scope = TokenScope.PERSISTENT if remember_me else TokenScope.EPHEMERAL
        self.cache.set(data["access_token"], scope)
        logger.info("client_logged_in", username=data.get("username"), scope=scope.value)
        return data

    async def refresh(self) -> str:
        """Obtain a new access token now; shares any refresh already in flight."""
        return await self.gateway.refresh()

    async def _request_refresh(self) -> str:
        response = await dispatch(self.http, "POST", "refresh")
        if response.status_code in (400, 401):
            raise AuthFailedError("session expired")
        if not response.is_success:
            raise TransientFailureError(f"refresh failed with HTTP {response.status_code}")
        token = _data(response, what="refresh response").get("access_token")
        if not token:
            raise TransientFailureError("refresh response carried no access token")
        return token

    async def logout(self) -> None:
        """Tell the server to revoke the session, then forget local tokens.

        The server call is best effort; local state is cleared regardless.
        A refresh already on the wire is allowed to land first so the cookie
        sent with the logout names the newest refresh token.
        """
        access_token = self.cache.get()
        self.cache.clear()
        await self.gateway.wait_for_refresh()
        try:
            response = await dispatch(self.http, "POST", "logout", token=access_token)
            if not response.is_success:
                logger.warning("client_logout_rejected", status_code=response.status_code)
        except TransientFailureError as exc:
            logger.warning("client_logout_failed", error=exc.message)
        finally:
            self.cache.clear()
            self.http.cookies.clear()

    async def forgot_password(self, identifier: str) -> str:
        response = await dispatch(
            self.http, "POST", "forgot-password", json={"identifier": identifier}
        )
        return _data(response).get("message", "")

    async def reset_password(
        self, token_id: str, token: str, new_password: str, confirm_new_password: str
    ) -> str:
        response = await dispatch(
            self.http,
            "POST",
            "reset-password",
            json={
                "tokenId": token_id,
                "token": token,
                "newPassword": new_password,
                "confirmNewPassword": confirm_new_password,
            },
        )
        return _data(response).get("message", "")

    async def call(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.gateway.call(method, url, **kwargs)

    async def me(self) -> dict[str, Any]:
        return _data(await self.call("GET", "me"))

    async def update_account(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        old_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> dict[str, Any]:
        """Change account fields; only the arguments given are sent."""
        fields = {
            "username": username,
            "email": email,
            "oldPassword": old_password,
            "newPassword": new_password,
        }
        payload = {key: value for key, value in fields.items() if value}
        data = _data(await self.call("PUT", "me", json=payload))
        if data.get("password_changed"):
            # Every refresh token was revoked server side
            self.cache.clear()
            self.http.cookies.clear()
        return data
