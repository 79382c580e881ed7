"""API endpoints package for the service."""

from ratekeeper.app.api.admin import router as admin_router

__all__ = [
    "admin_router",
]
