"""Ratekeeper: rate limiting core for the booking web application."""

__version__ = "0.1.0"
