"""Registry of named limiters sharing one counter store."""

from typing import Dict, Iterator, List, Optional

from ratekeeper.app.core.config import DEFAULT_SCOPES, Settings, settings as default_settings
from ratekeeper.app.core.logging import get_logger
from ratekeeper.app.exceptions import ConfigurationError
from ratekeeper.app.middleware.rate_limit.events import RateLimitEventLog
from ratekeeper.app.middleware.rate_limit.keys import (
    ip_identity,
    route_identity,
    user_or_ip_identity,
)
from ratekeeper.app.middleware.rate_limit.limiter import RateLimiter
from ratekeeper.app.middleware.rate_limit.models import FIXED_WINDOW, SLIDING_WINDOW, LimiterConfig
from ratekeeper.app.middleware.rate_limit.stores import CounterStore

logger = get_logger(__name__)

# Body messages for denied requests, per scope
SCOPE_MESSAGES = {
    "auth": "Too many authentication attempts, please try again later.",
    "admin": "Too many admin requests, please slow down.",
    "financial": "Too many payment requests, please try again later.",
    "signup": "Too many sign-up attempts, please try again later.",
    "password_reset": "Too many password reset requests, please try again later.",
    "token": "Too many token requests, please try again later.",
    "sensitive_api": "Too many requests to a sensitive endpoint, please try again later.",
    "api": "Too many requests, please try again later.",
    "websocket": "Too many connection attempts, please try again later.",
}

# Scopes keyed by user when authenticated; the rest key on IP so attackers
# cannot dodge the limit by cycling accounts.
_USER_KEYED_SCOPES = {"admin", "financial", "sensitive_api", "api"}

# Sensitive scopes use the sliding log so a burst at a window edge cannot
# double the effective limit.
_SLIDING_SCOPES = {"auth", "password_reset", "financial"}


def default_config(scope: str, cfg: Settings) -> LimiterConfig:
    """Build the LimiterConfig for one of the built-in scopes."""
    try:
        max_requests, window_seconds = cfg.scope_limits(scope)
    except AttributeError as e:
        raise ConfigurationError(f"No thresholds configured for scope '{scope}'") from e

    if scope == "sensitive_api":
        extractor = route_identity
    elif scope in _USER_KEYED_SCOPES:
        extractor = user_or_ip_identity
    else:
        extractor = ip_identity

    return LimiterConfig.from_seconds(
        scope,
        max_requests,
        window_seconds,
        key_extractor=extractor,
        algorithm=SLIDING_WINDOW if scope in _SLIDING_SCOPES else FIXED_WINDOW,
        message=SCOPE_MESSAGES.get(scope, SCOPE_MESSAGES["api"]),
    )


class LimiterRegistry:
    """All limiters of the process, keyed by scope name.

    Every limiter registered here shares the registry's store and fail
    policy. Limiters are created once at startup and never change.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        fail_closed: bool = False,
        event_log: Optional[RateLimitEventLog] = None,
        route_scopes: Optional[Dict[str, str]] = None,
        default_scope: Optional[str] = None,
    ):
        self.store = store
        self.fail_closed = fail_closed
        self.event_log = event_log
        self._limiters: Dict[str, RateLimiter] = {}
        # Longest prefix first so "/api/auth/signup" beats "/api/auth"
        self._route_scopes = sorted(
            (route_scopes or {}).items(), key=lambda item: len(item[0]), reverse=True
        )
        self.default_scope = default_scope

    def __contains__(self, scope: str) -> bool:
        return scope in self._limiters

    def __iter__(self) -> Iterator[RateLimiter]:
        return iter(self._limiters.values())

    def __len__(self) -> int:
        return len(self._limiters)

    def register(self, config: LimiterConfig) -> RateLimiter:
        """Create and register a limiter for config.scope.

        Raises:
            ConfigurationError: If the scope is already registered
        """
        if config.scope in self._limiters:
            raise ConfigurationError(f"Limiter '{config.scope}' is already registered")
        limiter = RateLimiter(
            config,
            self.store,
            fail_closed=self.fail_closed,
            event_log=self.event_log,
        )
        self._limiters[config.scope] = limiter
        logger.debug(
            f"Registered limiter '{config.scope}': {config.max_requests} per {config.window_ms}ms",
            extra={"scope": config.scope},
        )
        return limiter

    def get(self, scope: str) -> RateLimiter:
        try:
            return self._limiters[scope]
        except KeyError:
            raise ConfigurationError(f"Unknown rate limit scope '{scope}'") from None

    def for_path(self, path: str) -> Optional[RateLimiter]:
        """Resolve the limiter guarding a request path.

        Returns None when no prefix matches and there is no default scope.
        """
        for prefix, scope in self._route_scopes:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return self.get(scope)
        if self.default_scope is None:
            return None
        return self.get(self.default_scope)

    def describe(self) -> List[dict]:
        """Configured scopes, for the admin view."""
        return [
            {
                "scope": limiter.scope,
                "max_requests": limiter.config.max_requests,
                "window_ms": limiter.config.window_ms,
                "algorithm": limiter.config.algorithm,
                "fail_closed": limiter.fail_closed,
            }
            for limiter in self._limiters.values()
        ]


def build_default_registry(
    store: CounterStore,
    cfg: Optional[Settings] = None,
    event_log: Optional[RateLimitEventLog] = None,
) -> LimiterRegistry:
    """Registry with every built-in scope configured from settings.

    Raises:
        ConfigurationError: If a route points at an unknown scope
    """
    cfg = cfg or default_settings
    registry = LimiterRegistry(
        store,
        fail_closed=cfg.rate_limit_fail_closed,
        event_log=event_log,
        route_scopes=cfg.rate_limit_route_scopes,
        default_scope=cfg.rate_limit_default_scope,
    )
    for scope in DEFAULT_SCOPES:
        registry.register(default_config(scope, cfg))

    referenced = set(cfg.rate_limit_route_scopes.values()) | {cfg.rate_limit_default_scope}
    unknown = sorted(s for s in referenced if s not in registry)
    if unknown:
        raise ConfigurationError(f"Routes reference unknown scopes: {', '.join(unknown)}")
    return registry
