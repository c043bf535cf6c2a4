from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from taskdesk.api.schemas import (
    Envelope,
    LoginResponse,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    OtpRequest,
    OtpRequestResponse,
    OtpVerifyRequest,
    TokenRefreshRequest,
    TokenRefreshResponse,
    UserResponse,
)
from taskdesk.logging import get_logger
from taskdesk.service.audit import RequestMeta
from taskdesk.service.errors import RateLimitedError
from taskdesk.service.runtime import check_rate_limit, get_runtime
from taskdesk.service.session import AuthContext

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


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
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        RateLimitedError (429) if the limit is exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limited", scope=key.split(":", 1)[0])
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            detail={"retry_after": reset_seconds},
        )

    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.session.authenticate, authorization)


@router.post("/auth/request-otp", response_model=Envelope, tags=["auth"])
async def request_otp(body: OtpRequest, request: Request, response: Response):
    """Email a one-time login code, creating the account on first use.

    Raises:
        429: If too many codes were requested for this address from this client
        502: If the email could not be delivered
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp_request:{_client_ip(request)}:{body.email}",
        runtime.settings.otp_request_rate_limit,
        runtime.settings.otp_request_rate_window_seconds,
        response=response,
    )
    result = await asyncio.to_thread(
        runtime.session.request_otp, body.email, _request_meta(request)
    )
    return Envelope(status="ok", data=OtpRequestResponse(**result))


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OtpVerifyRequest, request: Request, response: Response):
    """Exchange an emailed code for an access and refresh token pair."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp_verify:{_client_ip(request)}:{body.email}",
        runtime.settings.otp_verify_rate_limit,
        runtime.settings.otp_verify_rate_window_seconds,
        response=response,
    )
    result = await asyncio.to_thread(
        runtime.session.verify_otp, body.email, body.otp, _request_meta(request)
    )
    return Envelope(status="ok", data=LoginResponse(**result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.session.refresh, body.refresh_token, _request_meta(request)
    )
    return Envelope(status="ok", data=TokenRefreshResponse(**result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.session.logout,
        body.refresh_token,
        principal.user_id,
        _request_meta(request),
    )
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: AuthContext = Depends(get_user)):
    """Revoke every refresh token the caller holds."""
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.session.logout_all, principal.user_id, _request_meta(request)
    )
    return Envelope(status="ok", data=LogoutAllResponse(**result))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.session.get_user, principal.user_id)
    return Envelope(status="ok", data={"user": UserResponse(**user.to_public())})
