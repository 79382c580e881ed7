"""Rate limiting data models.

This module contains dataclasses for limiter configuration, store state,
per-request results and the admin event log entries.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ratekeeper.app.exceptions import ConfigurationError

FIXED_WINDOW = "fixed_window"
SLIDING_WINDOW = "sliding_window"
ALGORITHMS = (FIXED_WINDOW, SLIDING_WINDOW)


def now_ms() -> int:
    """Current UNIX time in milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RequestContext:
    """Framework independent view of an inbound request."""
    source_ip: str
    path: str = "/"
    method: str = "GET"
    user_id: Optional[str] = None


@dataclass(frozen=True)
class WindowCounter:
    """Counter state returned by a store after an increment.

    Attributes:
        count: Requests counted in the current window, including this one
        window_start_ms: When the current window (or oldest log entry) began
        window_ms: Window duration
    """
    count: int
    window_start_ms: int
    window_ms: int

    @property
    def reset_at_ms(self) -> int:
        return self.window_start_ms + self.window_ms


@dataclass(frozen=True)
class LimiterConfig:
    """Immutable policy for one named limiter.

    Attributes:
        scope: Name of the limiter, used as the key namespace
        window_ms: Window duration in milliseconds
        max_requests: Requests allowed per window
        key_extractor: Maps a RequestContext to an identity string
        algorithm: ``fixed_window`` or ``sliding_window``
        message: Body message for denied requests
        status_code: HTTP status for denied requests
        skip: Optional predicate; matching requests bypass the limiter
    """
    scope: str
    window_ms: int
    max_requests: int
    key_extractor: Optional[Callable[[RequestContext], Optional[str]]] = None
    algorithm: str = FIXED_WINDOW
    message: str = "Too many requests, please try again later."
    status_code: int = 429
    skip: Optional[Callable[[RequestContext], bool]] = None

    def __post_init__(self) -> None:
        if not self.scope or ":" in self.scope:
            raise ConfigurationError(f"Invalid limiter scope: {self.scope!r}")
        if self.window_ms <= 0:
            raise ConfigurationError(
                f"window_ms must be positive for scope '{self.scope}'"
            )
        if self.max_requests <= 0:
            raise ConfigurationError(
                f"max_requests must be positive for scope '{self.scope}'"
            )
        if self.algorithm not in ALGORITHMS:
            raise ConfigurationError(
                f"Unknown algorithm '{self.algorithm}' for scope '{self.scope}'"
            )
        if not 400 <= self.status_code < 600:
            raise ConfigurationError(
                f"status_code must be an HTTP error status for scope '{self.scope}'"
            )

    @classmethod
    def from_seconds(cls, scope: str, max_requests: int, window_seconds: int, **kwargs) -> "LimiterConfig":
        return cls(scope=scope, window_ms=window_seconds * 1000, max_requests=max_requests, **kwargs)


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed
        limit: Max requests per window
        remaining: Requests left in the current window (0 when blocked)
        reset_at_ms: UNIX epoch milliseconds when the window resets
        retry_after_ms: Milliseconds to wait, only set when blocked
        scope: Limiter that produced the result
        store_available: False when the decision came from the fail-open or
            fail-closed policy instead of the store
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_ms: Optional[int] = None
    scope: str = ""
    store_available: bool = True

    @property
    def reset_at_seconds(self) -> int:
        return math.ceil(self.reset_at_ms / 1000)

    @property
    def retry_after_seconds(self) -> Optional[int]:
        if self.retry_after_ms is None:
            return None
        return max(1, math.ceil(self.retry_after_ms / 1000))

    def to_headers(self) -> Dict[str, str]:
        """Standard rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds or 1)
        return headers


@dataclass
class RateLimitEvent:
    """A denied or degraded decision, kept for the admin view."""
    scope: str
    key_hash: str
    path: str
    method: str
    limit: int
    remaining: int
    reset_at_ms: int
    exceeded: bool
    retry_after_ms: Optional[int] = None
    store_available: bool = True
    timestamp_ms: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "scope": self.scope,
            "key_hash": self.key_hash,
            "path": self.path,
            "method": self.method,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at_ms": self.reset_at_ms,
            "retry_after_ms": self.retry_after_ms,
            "exceeded": self.exceeded,
            "store_available": self.store_available,
            "timestamp_ms": self.timestamp_ms,
        }
