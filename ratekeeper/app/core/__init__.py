"""Core utilities for the service."""

from ratekeeper.app.core.config import settings
from ratekeeper.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
]
