"""Middleware package for the service."""

from ratekeeper.app.middleware.auth import require_admin
from ratekeeper.app.middleware.rate_limit import RateLimitMiddleware
from ratekeeper.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_admin",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
