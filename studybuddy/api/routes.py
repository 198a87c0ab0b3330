from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from studybuddy.api.error_handling import error_response
from studybuddy.api.schemas import (
    AccountResponse,
    DeleteAccountRequest,
    EmailRequest,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    ProfileUpdateRequest,
    RegisterRequest,
    SessionResponse,
    TokenRefreshRequest,
)
from studybuddy.logging import get_logger
from studybuddy.service.errors import (
    UNAUTHORIZED_MESSAGE,
    RateLimitedError,
    UnauthorizedError,
    ValidationFailedError,
)
from studybuddy.service.runtime import Runtime, check_rate_limit, get_runtime
from studybuddy.service.tokens import TokenPair
from studybuddy.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE_PATH = "/v1/auth"

FORGOT_PASSWORD_MESSAGE = "If this email exists, a reset link has been sent."
RESEND_VERIFICATION_MESSAGE = (
    "If this email exists and is unverified, a new verification link has been sent."
)


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
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one request from the bucket for ``key``; 429 when it is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(detail={"retry_after": max(1, reset_seconds)})
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _send_best_effort(send: Callable[..., bool], *args: Any, **kwargs: Any) -> None:
    """Run a blocking email send in a worker thread; failures are logged only."""
    try:
        sent = await asyncio.to_thread(send, *args, **kwargs)
    except Exception as exc:
        logger.error(
            "email_delivery_failed",
            template=getattr(send, "__name__", "unknown"),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return
    if not sent:
        logger.warning("email_not_delivered", template=getattr(send, "__name__", "unknown"))


def _set_refresh_cookie(response: Response, runtime: Runtime, tokens: TokenPair) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=REFRESH_COOKIE_PATH,
        secure=settings.secure_cookies,
        httponly=True,
        samesite="strict",
    )


def _account_data(account: Account) -> dict:
    return AccountResponse(**account.public_view()).model_dump()


def _session_data(account: Account, tokens: TokenPair) -> dict:
    return SessionResponse(
        **tokens.public_view(), account=AccountResponse(**account.public_view())
    ).model_dump()


async def get_current_account(authorization: Optional[str] = Header(None)) -> Account:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an unverified account and email a verification link."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )
    account, raw_token = await asyncio.to_thread(
        runtime.auth.register, body.email, body.password, name=body.name
    )
    await _send_best_effort(runtime.email.send_email_verification, account.email, raw_token)
    return Envelope(
        success=True,
        message="Registration successful. Please check your email to verify your account.",
        data=_account_data(account),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for an access token and a refresh cookie.

    Signing in to a deactivated account reactivates it.

    Raises:
        401: Unknown email, deleted account, or wrong password (same response)
        403: Email not yet verified
        429: Rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )
    ip_addr = _client_ip(request)
    result = await asyncio.to_thread(
        runtime.auth.login, body.email, body.password, ip_addr=ip_addr
    )
    _set_refresh_cookie(response, runtime, result.tokens)
    if result.new_location and runtime.settings.send_login_alerts:
        await _send_best_effort(
            runtime.email.send_login_alert,
            result.account.email,
            name=result.account.name,
            ip_addr=ip_addr,
            user_agent=request.headers.get("user-agent"),
            at=result.account.last_login_at or datetime.now(timezone.utc),
        )
    message = (
        "Welcome back! Your account has been reactivated."
        if result.reactivated
        else "Login successful"
    )
    return Envelope(
        success=True, message=message, data=_session_data(result.account, result.tokens)
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    """Rotate the refresh token. Any failure clears the cookie."""
    runtime = get_runtime()
    presented = request.cookies.get(runtime.settings.refresh_cookie_name) or (
        body.refresh_token if body else None
    )
    try:
        account, tokens = runtime.auth.refresh(presented)
    except UnauthorizedError:
        failure = error_response(401, UNAUTHORIZED_MESSAGE, code="unauthorized")
        _clear_refresh_cookie(failure, runtime)
        return failure
    _set_refresh_cookie(response, runtime, tokens)
    return Envelope(
        success=True, message="Token refreshed", data=_session_data(account, tokens)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    runtime.auth.logout(
        refresh_token=request.cookies.get(runtime.settings.refresh_cookie_name),
        authorization=authorization,
    )
    _clear_refresh_cookie(response, runtime)
    return Envelope(success=True, message="Logged out successfully")


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    account = runtime.auth.verify_email(body.token)
    return Envelope(
        success=True,
        message="Email verified successfully. You can now sign in.",
        data=_account_data(account),
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend-verification:{_client_ip(request)}",
        runtime.settings.resend_verification_rate_limit,
        runtime.settings.resend_verification_rate_limit_window_seconds,
        response=response,
    )
    issued = runtime.auth.request_email_verification(body.email)
    if issued:
        account, raw_token = issued
        await _send_best_effort(
            runtime.email.send_email_verification, account.email, raw_token
        )
    # same response whether or not the account exists
    return Envelope(success=True, message=RESEND_VERIFICATION_MESSAGE)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot-password:{_client_ip(request)}",
        runtime.settings.forgot_password_rate_limit,
        runtime.settings.forgot_password_rate_limit_window_seconds,
        response=response,
    )
    issued = runtime.auth.request_password_reset(body.email)
    if issued:
        account, raw_token = issued
        await _send_best_effort(runtime.email.send_password_reset, account.email, raw_token)
    # same response whether or not the account exists
    return Envelope(success=True, message=FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, response: Response):
    runtime = get_runtime()
    account = await asyncio.to_thread(runtime.auth.reset_password, body.token, body.password)
    _clear_refresh_cookie(response, runtime)
    await _send_best_effort(runtime.email.send_password_changed, account.email)
    return Envelope(
        success=True,
        message="Password has been reset. Please sign in with your new password.",
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(account: Account = Depends(get_current_account)):
    return Envelope(success=True, data=_account_data(account))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, account: Account = Depends(get_current_account)
):
    preferences = body.preferences.model_dump(exclude_none=True) if body.preferences else None
    if body.name is None and body.avatar is None and not preferences:
        raise ValidationFailedError("Nothing to update")
    runtime = get_runtime()
    updated = runtime.auth.update_profile(
        account, name=body.name, avatar=body.avatar, preferences=preferences
    )
    return Envelope(success=True, message="Profile updated", data=_account_data(updated))


@router.put("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    account: Account = Depends(get_current_account),
):
    """Change the password, sign out every session, and start a fresh one here."""
    runtime = get_runtime()
    updated, tokens = await asyncio.to_thread(
        runtime.auth.change_password, account, body.current_password, body.new_password
    )
    _set_refresh_cookie(response, runtime, tokens)
    await _send_best_effort(runtime.email.send_password_changed, updated.email)
    return Envelope(
        success=True,
        message="Password changed successfully",
        data=_session_data(updated, tokens),
    )


@router.post("/auth/deactivate", response_model=Envelope, tags=["auth"])
async def deactivate(response: Response, account: Account = Depends(get_current_account)):
    runtime = get_runtime()
    runtime.auth.deactivate(account)
    _clear_refresh_cookie(response, runtime)
    await _send_best_effort(
        runtime.email.send_account_deactivated, account.email, name=account.name
    )
    return Envelope(
        success=True, message="Account deactivated. You can reactivate by signing in."
    )


@router.post("/auth/delete-account", response_model=Envelope, tags=["auth"])
async def delete_account(
    body: DeleteAccountRequest,
    request: Request,
    response: Response,
    account: Account = Depends(get_current_account),
):
    """Permanently delete the account and everything it owns.

    Requires the current password. Cannot be undone.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"delete-account:{_client_ip(request)}",
        runtime.settings.delete_account_rate_limit,
        runtime.settings.delete_account_rate_limit_window_seconds,
        response=response,
    )
    removed = await asyncio.to_thread(runtime.auth.delete_account, account, body.password)
    _clear_refresh_cookie(response, runtime)
    await _send_best_effort(
        runtime.email.send_account_deleted, account.email, name=account.name
    )
    return Envelope(
        success=True,
        message="Account and all data permanently deleted.",
        data={"removed": removed},
    )
