"""Authentication API endpoints."""

from typing import Optional

import structlog
from fastapi import APIRouter, Cookie, Depends, Response, status

from project_auth.api.dependencies import (
    enforce_route_limit,
    get_auth_service,
    get_current_user,
)
from project_auth.config import Settings, get_settings
from project_auth.models.auth import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    OkPayload,
    RegisterRequest,
    ResendOtpRequest,
    ResetPasswordRequest,
    SessionPayload,
    UserPayload,
    VerifyEmailRequest,
)
from project_auth.models.user import User
from project_auth.services.auth_service import AuthService, SessionResult

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])

# Per-path, per-client request window on routes that take codes or passwords
throttled = [Depends(enforce_route_limit)]

REFRESH_COOKIE_NAME = "refreshToken"


def _apply_session_cookie(
    response: Response, result: SessionResult, settings: Settings
) -> None:
    """Set or clear the refresh cookie as the session result asks."""
    if result.refresh_token is not None:
        response.set_cookie(
            key=REFRESH_COOKIE_NAME,
            value=result.refresh_token,
            max_age=settings.refresh_cookie_max_age_seconds,
            httponly=True,
            secure=settings.is_production,
            samesite="lax",
            path="/",
        )
    elif result.clear_cookie:
        response.delete_cookie(
            key=REFRESH_COOKIE_NAME,
            httponly=True,
            secure=settings.is_production,
            samesite="lax",
            path="/",
        )


@router.post("/register", status_code=status.HTTP_201_CREATED, dependencies=throttled)
async def register(
    request: RegisterRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Envelope[UserPayload]:
    """Create an account and email a verification code.

    Raises:
        EmailInUseError (409): Email belongs to a verified account
        EmailDeliveryError (503): Verification email could not be sent
    """
    user = await auth_service.register(request.email, request.password, request.name)
    return Envelope(
        data=UserPayload(user=user),
        message="Registration successful, please check your email",
    )


@router.post("/verify-email", dependencies=throttled)
async def verify_email(
    request: VerifyEmailRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Envelope[UserPayload]:
    """Verify an email address with a one-time code."""
    user = await auth_service.verify_email(request.email, request.code)
    return Envelope(data=UserPayload(user=user), message="Email verified")


@router.post("/resend-otp", dependencies=throttled)
async def resend_otp(
    request: ResendOtpRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Envelope[OkPayload]:
    """Send a fresh verification code, subject to the resend cooldown."""
    await auth_service.resend_otp(request.email)
    return Envelope(data=OkPayload(), message="A new code has been sent")


@router.post("/login", dependencies=throttled)
async def login(
    request: LoginRequest,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
) -> Envelope[SessionPayload]:
    """Login with email and password.

    The access token is returned in the body; the refresh token only in
    an httpOnly cookie.
    """
    result = await auth_service.login(request.email, request.password)
    _apply_session_cookie(response, result, settings)
    return Envelope(
        data=SessionPayload(access_token=result.access_token, user=result.user),
        message="Signed in",
    )


@router.post("/refresh")
async def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(default=None, alias=REFRESH_COOKIE_NAME),
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
) -> Envelope[SessionPayload]:
    """Rotate the refresh cookie and issue a new access token.

    A missing or unusable session is not an error: both fields come back
    null and the client must sign in again.
    """
    result = await auth_service.refresh_session(refresh_token)
    _apply_session_cookie(response, result, settings)

    if not result.authenticated:
        return Envelope(data=SessionPayload())

    return Envelope(
        data=SessionPayload(access_token=result.access_token, user=result.user),
        message="Access token renewed",
    )


@router.post("/logout")
async def logout(
    response: Response,
    refresh_token: Optional[str] = Cookie(default=None, alias=REFRESH_COOKIE_NAME),
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
) -> Envelope[OkPayload]:
    """Revoke the current refresh session and clear the cookie."""
    result = await auth_service.logout(refresh_token)
    _apply_session_cookie(response, result, settings)
    return Envelope(data=OkPayload(), message="Signed out")


@router.get("/me")
async def get_me(
    current_user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> Envelope[UserPayload]:
    """Get the profile of the authenticated user."""
    user = await auth_service.get_profile(current_user.id)
    return Envelope(data=UserPayload(user=user))


@router.post("/forgot-password", dependencies=throttled)
async def forgot_password(
    request: ForgotPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Envelope[OkPayload]:
    """Email a password reset link if the account exists."""
    await auth_service.forgot_password(request.email)
    return Envelope(
        data=OkPayload(),
        message="If the account exists, a reset link has been sent",
    )


@router.post("/reset-password", dependencies=throttled)
async def reset_password(
    request: ResetPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Envelope[OkPayload]:
    """Set a new password using the emailed reset code."""
    await auth_service.reset_password(request.email, request.token, request.password)
    return Envelope(data=OkPayload(), message="Password has been reset")
