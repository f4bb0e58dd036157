from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from gatehouse.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SecondFactorStatusResponse,
    TokenResponse,
    UserResponse,
    VerifyCodeRequest,
    VerifyEmailRequest,
    VerifyEmailResponse,
)
from gatehouse.service.errors import UnauthorizedError
from gatehouse.service.gate import require_owner_or_admin
from gatehouse.service.runtime import get_runtime
from gatehouse.service.sessions import Identity
from gatehouse.storage.models import User

router = APIRouter()


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        verified=user.verified,
        two_factor_enabled=user.two_factor_enabled,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    token = _extract_bearer(authorization)
    if not token:
        raise UnauthorizedError("missing bearer token")
    return await get_runtime().sessions.authenticate(token)


async def get_gated_identity(
    request: Request,
    identity: Identity = Depends(get_identity),
    user_agent: Optional[str] = Header(None),
) -> Identity:
    """Authenticated identity that has also passed the second-factor gate."""
    runtime = get_runtime()
    await runtime.gate.check(
        identity,
        path=request.url.path,
        trusted_device_token=request.cookies.get(runtime.settings.trusted_device_cookie_name),
        user_agent=user_agent,
    )
    return identity


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create an account and start a session.

    The very first account becomes an already verified admin.

    Raises:
        409: If the email is already registered
    """
    runtime = get_runtime()
    result = await runtime.sessions.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    _set_refresh_cookie(response, result.tokens.refresh_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(result.user), access_token=result.tokens.access_token
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    result = await runtime.sessions.login(
        body.email, body.password, ip=_client_ip(request), user_agent=user_agent
    )
    _set_refresh_cookie(response, result.tokens.refresh_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(result.user), access_token=result.tokens.access_token
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request, response: Response):
    """Rotate the refresh cookie and issue a new access token."""
    runtime = get_runtime()
    presented = request.cookies.get(runtime.settings.refresh_cookie_name)
    if not presented:
        raise UnauthorizedError("invalid refresh token")
    tokens = await runtime.sessions.refresh(body.user_id, presented)
    _set_refresh_cookie(response, tokens.refresh_token)
    return Envelope(status="ok", data=TokenResponse(access_token=tokens.access_token))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    identity: Identity = Depends(get_gated_identity),
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await runtime.sessions.logout(
        identity.user_id, ip=_client_ip(request), user_agent=user_agent
    )
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: Identity = Depends(get_gated_identity)):
    runtime = get_runtime()
    user = await runtime.sessions.get_user(identity.user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/send-verification-email", response_model=Envelope, tags=["auth"])
async def send_verification_email(identity: Identity = Depends(get_gated_identity)):
    """Email the caller a link that confirms their address.

    Raises:
        502: If the message could not be delivered
    """
    await get_runtime().sessions.send_verification_email(identity.user_id)
    return Envelope(status="ok", data=MessageResponse(message="verification email sent"))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    result = await get_runtime().sessions.verify_email(body.token)
    message = "email already verified" if result.already_verified else "email verified"
    return Envelope(
        status="ok",
        data=VerifyEmailResponse(
            email=result.email, already_verified=result.already_verified, message=message
        ),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Send a reset link. The response is the same whether or not the email exists."""
    await get_runtime().sessions.send_reset_password_email(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(message="if the account exists, a reset link has been sent"),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, response: Response):
    await get_runtime().sessions.reset_password(body.token, body.new_password)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.post("/2fa/send-code", response_model=Envelope, tags=["2fa"])
async def send_code(identity: Identity = Depends(get_gated_identity)):
    await get_runtime().second_factor.send_code(identity.user_id, identity.email)
    return Envelope(status="ok", data=MessageResponse(message="code sent"))


@router.post("/2fa/verify-code", response_model=Envelope, tags=["2fa"])
async def verify_code(
    response: Response,
    body: VerifyCodeRequest,
    identity: Identity = Depends(get_gated_identity),
    user_agent: Optional[str] = Header(None),
):
    """Check a one-time code and upgrade the session to 2FA-verified.

    With ``trust_device`` the current browser also gets a trusted-device
    cookie that skips the code on later sessions.
    """
    runtime = get_runtime()
    await runtime.second_factor.verify_code(identity.user_id, body.code)
    tokens = await runtime.sessions.issue_verified_tokens(identity.user_id)
    _set_refresh_cookie(response, tokens.refresh_token)
    if body.trust_device:
        settings = runtime.settings
        device_token = await runtime.second_factor.create_trusted_device(
            identity.user_id, user_agent or ""
        )
        response.set_cookie(
            settings.trusted_device_cookie_name,
            device_token,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="strict",
            max_age=settings.trusted_device_ttl_days * 24 * 60 * 60,
            path="/",
        )
    return Envelope(
        status="ok",
        data=TokenResponse(access_token=tokens.access_token, second_factor_verified=True),
    )


@router.post("/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_second_factor(identity: Identity = Depends(get_gated_identity)):
    user = await get_runtime().second_factor.set_enabled(identity.user_id, True)
    return Envelope(
        status="ok", data=SecondFactorStatusResponse(two_factor_enabled=user.two_factor_enabled)
    )


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_second_factor(identity: Identity = Depends(get_gated_identity)):
    user = await get_runtime().second_factor.set_enabled(identity.user_id, False)
    return Envelope(
        status="ok", data=SecondFactorStatusResponse(two_factor_enabled=user.two_factor_enabled)
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(user_id: str, identity: Identity = Depends(get_gated_identity)):
    require_owner_or_admin(identity, user_id)
    user = await get_runtime().sessions.get_user(user_id)
    return Envelope(status="ok", data=_user_response(user))
