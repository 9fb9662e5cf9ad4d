from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from storefront_auth.api.schemas import (
    AuthPayload,
    EmailRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordResetConfirm,
    RefreshRequest,
    RegisterRequest,
    UserResponse,
)
from storefront_auth.logging import get_logger
from storefront_auth.service.runtime import get_runtime
from storefront_auth.service.sessions import AuthResult, Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _client_context(request: Request) -> dict:
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        max_age=settings.refresh_cookie_max_age_seconds,
        path=settings.refresh_cookie_path,
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )


def _presented_refresh_token(request: Request, body: Optional[RefreshRequest]) -> Optional[str]:
    """Body wins over cookie so API clients can refresh without cookies."""
    if body and body.refresh_token:
        return body.refresh_token
    return request.cookies.get(get_runtime().settings.refresh_cookie_name)


def _auth_envelope(result: AuthResult, response: Response, message: str) -> Envelope:
    _set_refresh_cookie(response, result.refresh_token)
    payload = AuthPayload(
        user=UserResponse.from_user(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )
    return Envelope(
        success=True,
        message=message,
        data=payload.model_dump(mode="json", by_alias=True),
    )


async def get_principal(authorization: Optional[str] = Header(default=None)) -> Principal:
    return await get_runtime().sessions.authenticate(authorization)


@router.post(
    "/register", response_model=Envelope, response_model_exclude_none=True, status_code=201
)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and start its first session."""
    result = await get_runtime().sessions.register(
        body.email,
        body.password,
        {"first_name": body.first_name, "last_name": body.last_name},
        **_client_context(request),
    )
    return _auth_envelope(result, response, "registered")


@router.post("/login", response_model=Envelope, response_model_exclude_none=True)
async def login(body: LoginRequest, request: Request, response: Response):
    result = await get_runtime().sessions.login(
        body.email, body.password, **_client_context(request)
    )
    return _auth_envelope(result, response, "logged in")


@router.post("/refresh", response_model=Envelope, response_model_exclude_none=True)
async def refresh(
    request: Request, response: Response, body: Optional[RefreshRequest] = None
):
    """Rotate a refresh token.

    The presented secret is consumed; the response carries its successor.
    Replaying a consumed secret signs the account out everywhere.
    """
    result = await get_runtime().sessions.refresh(
        _presented_refresh_token(request, body), **_client_context(request)
    )
    return _auth_envelope(result, response, "token refreshed")


@router.post("/logout", response_model=Envelope, response_model_exclude_none=True)
async def logout(request: Request, response: Response, body: Optional[LogoutRequest] = None):
    await get_runtime().sessions.logout(_presented_refresh_token(request, body))
    _clear_refresh_cookie(response)
    return Envelope(success=True, message="logged out")


@router.get("/profile", response_model=Envelope, response_model_exclude_none=True)
async def profile(principal: Principal = Depends(get_principal)):
    user = await get_runtime().sessions.get_profile(principal.user_id)
    return Envelope(
        success=True,
        data={"user": UserResponse.from_user(user).model_dump(mode="json", by_alias=True)},
    )


@router.post("/send-verify", response_model=Envelope, response_model_exclude_none=True)
async def send_verification(body: EmailRequest):
    await get_runtime().sessions.request_email_verification(body.email)
    # same answer whether or not the address is registered
    return Envelope(
        success=True, message="if the account exists, a verification email has been sent"
    )


@router.get("/verify", response_model=Envelope, response_model_exclude_none=True)
async def verify_email(token: str = Query(..., min_length=1, max_length=2048)):
    user = await get_runtime().sessions.verify_email(token)
    return Envelope(
        success=True,
        message="email verified",
        data={"user": UserResponse.from_user(user).model_dump(mode="json", by_alias=True)},
    )


@router.post(
    "/password-reset/request", response_model=Envelope, response_model_exclude_none=True
)
async def request_password_reset(body: EmailRequest):
    await get_runtime().sessions.request_password_reset(body.email)
    return Envelope(
        success=True, message="if the account exists, a password reset email has been sent"
    )


@router.post(
    "/password-reset/confirm", response_model=Envelope, response_model_exclude_none=True
)
async def confirm_password_reset(body: PasswordResetConfirm, response: Response):
    await get_runtime().sessions.confirm_password_reset(body.token, body.new_password)
    _clear_refresh_cookie(response)
    return Envelope(success=True, message="password updated")
