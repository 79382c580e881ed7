"""Custom exceptions for the rate limiting service."""

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ratekeeper.app.middleware.rate_limit.models import RateLimitResult


class RatekeeperException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class StoreErrorKind(str, Enum):
    """Classification of counter store failures.

    Reconnect decisions are made on this value, never on the text of the
    underlying driver error.
    """
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    RESPONSE = "response"
    UNEXPECTED = "unexpected"

    @property
    def should_reconnect(self) -> bool:
        return self in (StoreErrorKind.CONNECTION, StoreErrorKind.TIMEOUT)


class StoreUnavailableError(RatekeeperException):
    """Raised when the counter store cannot be reached or answers badly.

    Maps to HTTP 503 Service Unavailable when it escapes to a handler.
    """
    status_code = 503

    def __init__(self, kind: StoreErrorKind, message: str = "Counter store unavailable"):
        self.kind = kind
        super().__init__(message)


class InvalidKeyError(RatekeeperException):
    """Raised when no identity can be derived from a request.

    Limiters catch this and fall back to the shared "unknown" bucket.
    """
    status_code = 400

    def __init__(self, message: str = "Unable to derive rate limit identity"):
        super().__init__(message)


class ConfigurationError(RatekeeperException):
    """Raised for malformed limiter configuration.

    Fatal at process start. Per request it only appears when the limiter
    registry was never initialised.
    """
    status_code = 500


class RateLimitExceededError(RatekeeperException):
    """Raised by the dependency form of the limiter when quota is exhausted.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        result: "RateLimitResult",
        message: str | None = None,
        status_code: int = 429,
    ):
        self.result = result
        self.status_code = status_code
        super().__init__(message or "Too many requests, please try again later.")
