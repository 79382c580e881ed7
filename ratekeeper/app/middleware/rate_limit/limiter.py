"""Limiter policy: turns counter store state into allow/deny decisions."""

from typing import Callable, Optional, Union

from ratekeeper.app.core.logging import get_log_context, get_logger
from ratekeeper.app.exceptions import InvalidKeyError, StoreUnavailableError
from ratekeeper.app.middleware.rate_limit.events import RateLimitEventLog
from ratekeeper.app.middleware.rate_limit.keys import (
    UNKNOWN_IDENTITY,
    build_key,
    ip_identity,
)
from ratekeeper.app.middleware.rate_limit.models import (
    SLIDING_WINDOW,
    LimiterConfig,
    RateLimitEvent,
    RateLimitResult,
    RequestContext,
    WindowCounter,
    now_ms,
)
from ratekeeper.app.middleware.rate_limit.stores import CounterStore

logger = get_logger(__name__)


class RateLimiter:
    """A named rate limiting policy over a shared counter store.

    Limiters with different scopes may share one store: every key is
    namespaced as ``ratelimit:{scope}:{identity}``, so exhausting one scope
    never affects another for the same caller.

    When the store is unavailable the limiter never raises. With
    ``fail_closed=False`` the request is allowed and a warning is logged;
    with ``fail_closed=True`` it is denied for one window.
    """

    def __init__(
        self,
        config: LimiterConfig,
        store: CounterStore,
        *,
        fail_closed: bool = False,
        clock: Callable[[], int] = now_ms,
        event_log: Optional[RateLimitEventLog] = None,
    ):
        self.config = config
        self.store = store
        self.fail_closed = fail_closed
        self._clock = clock
        self._event_log = event_log

    @property
    def scope(self) -> str:
        return self.config.scope

    def identity_for(self, context: RequestContext) -> str:
        """Compute the caller identity, falling back to the shared unknown bucket."""
        extractor = self.config.key_extractor or ip_identity
        try:
            identity = extractor(context)
        except InvalidKeyError as e:
            logger.debug(
                f"No identity for rate limit ({e.message}), using shared bucket",
                extra=get_log_context(scope=self.scope, path=context.path),
            )
            return UNKNOWN_IDENTITY
        return identity or UNKNOWN_IDENTITY

    def key_for(self, context: RequestContext) -> str:
        return build_key(self.scope, self.identity_for(context))

    def should_skip(self, context: RequestContext) -> bool:
        return self.config.skip is not None and self.config.skip(context)

    async def _count(self, key: str) -> WindowCounter:
        if self.config.algorithm == SLIDING_WINDOW:
            return await self.store.record_in_log(
                key, self.config.window_ms, self.config.max_requests
            )
        return await self.store.increment_and_get_window(key, self.config.window_ms)

    async def check(self, context: RequestContext) -> RateLimitResult:
        """Count the request and decide whether it may proceed."""
        key = self.key_for(context)
        key_hash = key.rsplit(":", 1)[-1]

        try:
            counter = await self._count(key)
        except StoreUnavailableError as e:
            result = self._store_failure_result(e)
            self._record(context, key_hash, result)
            self._tally(result)
            return result

        now = self._clock()
        limit = self.config.max_requests
        reset_at = counter.reset_at_ms
        allowed = counter.count <= limit

        result = RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - counter.count),
            reset_at_ms=reset_at,
            retry_after_ms=None if allowed else max(1, reset_at - now),
            scope=self.scope,
        )

        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    scope=self.scope,
                    key_hash=key_hash,
                    path=context.path,
                    method=context.method,
                    limit=limit,
                    retry_after_ms=result.retry_after_ms,
                ),
            )
            self._record(context, key_hash, result)
        self._tally(result)
        return result

    def _store_failure_result(self, error: StoreUnavailableError) -> RateLimitResult:
        """Apply the fail-open / fail-closed policy."""
        now = self._clock()
        window_ms = self.config.window_ms
        context = get_log_context(scope=self.scope, error_kind=error.kind.value)

        if self.fail_closed:
            logger.warning(
                "Rate limit store unavailable, failing closed. Request denied.",
                extra=context,
            )
            return RateLimitResult(
                allowed=False,
                limit=self.config.max_requests,
                remaining=0,
                reset_at_ms=now + window_ms,
                retry_after_ms=window_ms,
                scope=self.scope,
                store_available=False,
            )

        logger.warning(
            "Rate limit store unavailable, failing open. Request allowed without check.",
            extra=context,
        )
        return RateLimitResult(
            allowed=True,
            limit=self.config.max_requests,
            remaining=self.config.max_requests,
            reset_at_ms=now + window_ms,
            scope=self.scope,
            store_available=False,
        )

    def _tally(self, result: RateLimitResult) -> None:
        if self._event_log is not None:
            self._event_log.tally(result)

    def _record(self, context: RequestContext, key_hash: str, result: RateLimitResult) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            RateLimitEvent(
                scope=self.scope,
                key_hash=key_hash,
                path=context.path,
                method=context.method,
                limit=result.limit,
                remaining=result.remaining,
                reset_at_ms=result.reset_at_ms,
                retry_after_ms=result.retry_after_ms,
                exceeded=not result.allowed,
                store_available=result.store_available,
                timestamp_ms=self._clock(),
            )
        )

    async def reset(self, target: Union[str, RequestContext]) -> None:
        """Clear a caller's counter.

        Args:
            target: A RequestContext, or an identity string as produced by
                the key extractor (e.g. ``"ip:203.0.113.7"``)
        """
        identity = self.identity_for(target) if isinstance(target, RequestContext) else target
        await self.store.reset(build_key(self.scope, identity))
