"""FastAPI dependencies for wiring services and authenticating requests."""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from project_auth.config import Settings, get_settings
from project_auth.database import get_pool
from project_auth.errors import InvalidTokenError, RateLimitedError, UnauthenticatedError
from project_auth.models.user import User
from project_auth.services.auth_service import AuthService
from project_auth.services.rate_guard import RateGuard, get_rate_guard

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_auth_service() -> AuthService:
    """Build the auth service against the shared pool and rate guard."""
    pool = await get_pool()
    return AuthService.from_pool(get_settings(), pool)


async def enforce_route_limit(
    request: Request,
    settings: Settings = Depends(get_settings),
    rate_guard: RateGuard = Depends(get_rate_guard),
) -> None:
    """Allow ``rate_limit_max`` requests per window, per path and client.

    Raises:
        RateLimitedError: Once the window is used up
    """
    client_host = request.client.host if request.client else "unknown"
    window = await rate_guard.hit_window(
        f"route:{request.url.path}:{client_host}",
        limit=settings.rate_limit_max,
        window_seconds=settings.rate_limit_window_seconds,
    )
    if not window.allowed:
        logger.warning(
            "route_rate_limited",
            client=client_host,
            retry_after_seconds=window.retry_after_seconds,
        )
        raise RateLimitedError(retry_after_seconds=window.retry_after_seconds)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    """Resolve the user behind a Bearer access token.

    Raises:
        UnauthenticatedError: If the token is missing, invalid or expired,
            or its user no longer exists
    """
    if credentials is None:
        raise UnauthenticatedError()

    try:
        payload = auth_service.tokens.verify_access(credentials.credentials)
        user_id = UUID(payload["sub"])
    except (InvalidTokenError, ValueError):
        raise UnauthenticatedError("Invalid or expired access token")

    user = await auth_service.users.get_by_id(user_id)
    if user is None:
        raise UnauthenticatedError("Invalid or expired access token")

    return user
