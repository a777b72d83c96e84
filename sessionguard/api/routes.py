from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from sessionguard.api.error_handling import _error_response
from sessionguard.api.schemas import (
    AccountUpdateResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    UpdateAccountRequest,
    UserResponse,
)
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthFailedError,
    InvalidTokenError,
    TransientFailureError,
    ValidationError,
)
from sessionguard.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

FORGOT_PASSWORD_MESSAGE = "If an account exists, we sent a reset link"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce rate limit and optionally apply headers to response.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)
    return info


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _set_refresh_cookie(
    response: Response,
    settings: Settings,
    refresh_token: str,
    *,
    remember_me: bool,
    expires_at: datetime,
) -> None:
    # Remembered sessions outlive the browser; others end with it
    max_age = None
    if remember_me:
        max_age = max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        max_age=max_age,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


async def _send_verification_email(runtime, user) -> None:
    try:
        raw_secret, token_id = await runtime.auth.request_email_verification(user)
    except TransientFailureError as exc:
        logger.warning(
            "verification_email_not_sent",
            user_id=user.id,
            error_type=type(exc).__name__,
            error=exc.message,
        )
        return
    runtime.send_in_background(
        "verification_email_not_sent",
        runtime.email.send_email_verification,
        user.email,
        token_id,
        raw_secret,
        failure_level="warning",
    )


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and email a verification link.

    Raises:
        400: If username, email or password fail validation
        403: If signup is disabled
        409: If the username or email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email.lower()}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.register(body.username, body.email, body.password)
    await _send_verification_email(runtime, user)
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=user.id,
            username=user.username,
            email_verification_required=runtime.settings.require_email_verification,
        ),
    )


@router.get("/verify-email", tags=["auth"])
async def verify_email(
    tid: str = Query("", max_length=64),
    t: str = Query("", max_length=256),
):
    """Consume an emailed verification link and bounce to the web app."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "verify-email", runtime.settings.reset_rate_limit_per_minute * 12, 60
    )
    success = True
    try:
        await runtime.auth.verify_email(tid, t)
    except (InvalidTokenError, ValidationError, AuthFailedError) as exc:
        logger.info("email_verification_rejected", tid=tid, error_type=type(exc).__name__)
        success = False
    target = f"{runtime.settings.app_base_url.rstrip('/')}/verified?{urlencode({'success': int(success)})}"
    return RedirectResponse(target, status_code=303)


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with username and password.

    Returns an access token and sets the refresh cookie.

    Raises:
        401: If credentials are invalid
        403: If the email address is not verified yet
        429: If rate limit exceeded or the account is locked
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(body.username, body.password, body.remember_me)
    _set_refresh_cookie(
        response,
        runtime.settings,
        result.refresh_token,
        remember_me=result.remember_me,
        expires_at=result.refresh_expires_at,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            username=result.username,
            remember_me=result.remember_me,
            refresh_expires_at=result.refresh_expires_at,
        ),
    )


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(request: Request, response: Response):
    """Rotate the refresh cookie and issue a new access token.

    Raises:
        401: If the refresh cookie is missing, expired, revoked or reused
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_address(request)}",
        settings.session_rate_limit_per_minute,
        60,
    )
    try:
        result = await runtime.auth.refresh(request.cookies.get(settings.refresh_cookie_name))
    except AuthFailedError as exc:
        denied: JSONResponse = _error_response(401, exc.message, code="unauthorized")
        _clear_refresh_cookie(denied, settings)
        return denied
    _set_refresh_cookie(
        response,
        settings,
        result.refresh_token,
        remember_me=result.remember_me,
        expires_at=result.refresh_expires_at,
    )
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access_token,
            remember_me=result.remember_me,
            refresh_expires_at=result.refresh_expires_at,
        ),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"logout:{_client_address(request)}",
        runtime.settings.session_rate_limit_per_minute,
        60,
    )
    access_token = runtime.auth.extract_bearer(authorization)
    await runtime.auth.logout(
        request.cookies.get(runtime.settings.refresh_cookie_name), access_token
    )
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="Logged out"))


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Email a reset link. The answer never reveals whether the account exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.identifier.lower()}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    try:
        issued = await runtime.auth.request_password_reset(body.identifier)
    except TransientFailureError as exc:
        logger.error(
            "password_reset_email_not_sent",
            error_type=type(exc).__name__,
            error=exc.message,
        )
        issued = None
    if issued is not None:
        user, raw_secret, token_id = issued
        # Not awaited: response time must not depend on whether the account exists
        runtime.send_in_background(
            "password_reset_email_not_sent",
            runtime.email.send_password_reset,
            user.email,
            token_id,
            raw_secret,
        )
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    """Set a new password with an emailed reset token.

    Raises:
        400: If the passwords differ, are too weak, or the token is invalid or expired
    """
    runtime = get_runtime()
    # Rate limit to prevent token brute-forcing
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{body.token_id}",
        runtime.settings.reset_rate_limit_per_minute,
        300,
    )
    await runtime.auth.reset_password(
        body.token_id, body.token, body.new_password, body.confirm_new_password
    )
    return Envelope(status="ok", data=MessageResponse(message="Password reset"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(authorization: Optional[str] = Header(None)):
    """Get the profile behind the bearer access token."""
    runtime = get_runtime()
    user = await runtime.auth.authenticate(authorization)
    return Envelope(
        status="ok",
        data=UserResponse(
            id=user.id,
            username=user.username,
            email=user.email,
            email_verified=user.email_verified,
            created_at=user.created_at,
        ),
    )


@router.put("/me", response_model=Envelope, tags=["auth"])
async def update_current_user(
    body: UpdateAccountRequest, authorization: Optional[str] = Header(None)
):
    """Change username, email or password for the bearer's account.

    A new email must be verified again; a new password ends every session.

    Raises:
        400: If a field fails validation or oldPassword is wrong
        401: If the access token is missing or invalid
        409: If the username or email belongs to another account
        429: If rate limit exceeded for this account
    """
    runtime = get_runtime()
    user = await runtime.auth.authenticate(authorization)
    await _enforce_rate_limit(
        runtime,
        f"account:{user.id}",
        runtime.settings.account_update_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.update_account(
        user,
        username=body.username,
        email=body.email,
        old_password=body.old_password,
        new_password=body.new_password,
    )
    if result.email_changed:
        await _send_verification_email(runtime, result.user)
    updated = result.user
    return Envelope(
        status="ok",
        data=AccountUpdateResponse(
            id=updated.id,
            username=updated.username,
            email=updated.email,
            email_verified=updated.email_verified,
            created_at=updated.created_at,
            email_changed=result.email_changed,
            password_changed=result.password_changed,
            sessions_revoked=result.revoked_sessions,
        ),
    )
