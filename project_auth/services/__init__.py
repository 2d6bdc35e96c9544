"""Services package exports."""

from project_auth.services.auth_service import AuthService, SessionResult
from project_auth.services.logging_service import configure_logging, get_logger

__all__ = [
    "AuthService",
    "SessionResult",
    "configure_logging",
    "get_logger",
]
