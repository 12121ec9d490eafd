"""
API Routes for ORTHRUS.
"""
from .auth import router as auth_router
from .two_factor import router as two_factor_router
from .health import router as health_router

__all__ = [
    "auth_router",
    "two_factor_router",
    "health_router",
]
