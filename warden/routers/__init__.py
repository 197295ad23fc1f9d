"""API routers."""

from warden.routers.auth import router as auth_router
from warden.routers.mfa import router as mfa_router
from warden.routers.sessions import router as sessions_router

__all__ = ["auth_router", "mfa_router", "sessions_router"]
