"""Rate limiting for the service.

Stores keep the counters, limiters apply a policy per scope, and the
adapters plug limiters into FastAPI routes and middleware.
"""

from ratekeeper.app.middleware.rate_limit.adapter import (
    RateLimitMiddleware,
    apply_rate_limit,
    rate_limit_dependency,
    rate_limit_exceeded_response,
    with_rate_limit,
)
from ratekeeper.app.middleware.rate_limit.events import RateLimitEventLog
from ratekeeper.app.middleware.rate_limit.keys import (
    build_key,
    build_request_context,
    ip_identity,
    route_identity,
    user_identity,
    user_or_ip_identity,
)
from ratekeeper.app.middleware.rate_limit.limiter import RateLimiter
from ratekeeper.app.middleware.rate_limit.models import (
    LimiterConfig,
    RateLimitEvent,
    RateLimitResult,
    RequestContext,
    WindowCounter,
)
from ratekeeper.app.middleware.rate_limit.registry import (
    LimiterRegistry,
    build_default_registry,
)
from ratekeeper.app.middleware.rate_limit.stores import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    create_counter_store,
)
from ratekeeper.app.middleware.rate_limit.websocket import WebSocketRateLimiter

__all__ = [
    # Models
    "LimiterConfig",
    "RateLimitEvent",
    "RateLimitResult",
    "RequestContext",
    "WindowCounter",
    # Stores
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
    # Keys
    "build_key",
    "build_request_context",
    "ip_identity",
    "route_identity",
    "user_identity",
    "user_or_ip_identity",
    # Policy
    "RateLimiter",
    "LimiterRegistry",
    "build_default_registry",
    "RateLimitEventLog",
    "WebSocketRateLimiter",
    # HTTP adapters
    "RateLimitMiddleware",
    "apply_rate_limit",
    "rate_limit_dependency",
    "rate_limit_exceeded_response",
    "with_rate_limit",
]
