"""API package exports."""

from project_auth.api.auth import router as auth_router
from project_auth.api.middleware import CorrelationIdMiddleware
from project_auth.api.routes import router

__all__ = ["auth_router", "router", "CorrelationIdMiddleware"]
