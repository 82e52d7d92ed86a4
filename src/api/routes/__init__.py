"""API route modules."""

from .health import router as health_router
from .sync import router as sync_router
from .users import router as users_router

__all__ = ["health_router", "sync_router", "users_router"]
