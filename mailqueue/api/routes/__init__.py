"""
API routes module.
"""

from mailqueue.api.routes.auth import router as auth_router
from mailqueue.api.routes.emails import router as emails_router
from mailqueue.api.routes.health import router as health_router

__all__ = ["emails_router", "auth_router", "health_router"]
