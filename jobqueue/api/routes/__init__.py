"""
API routes module.
"""

from jobqueue.api.routes.auth import router as auth_router
from jobqueue.api.routes.health import router as health_router
from jobqueue.api.routes.methods import router as methods_router

__all__ = ["methods_router", "auth_router", "health_router"]
