"""HTTP adapters: bridge Starlette/FastAPI requests to rate limiters.

Three ways to protect a handler:

- ``RateLimitMiddleware`` maps path prefixes to scopes for the whole app;
- ``with_rate_limit(limiter)`` wraps a single route handler;
- ``Depends(rate_limit_dependency("auth"))`` raises RateLimitExceededError,
  which the application turns into the same 429 payload.
"""

import functools
import inspect
from typing import Any, Awaitable, Callable, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ratekeeper.app.core.config import settings
from ratekeeper.app.core.logging import get_logger
from ratekeeper.app.exceptions import ConfigurationError, RateLimitExceededError
from ratekeeper.app.middleware.rate_limit.keys import build_request_context
from ratekeeper.app.middleware.rate_limit.limiter import RateLimiter
from ratekeeper.app.middleware.rate_limit.models import RateLimitResult
from ratekeeper.app.middleware.rate_limit.registry import LimiterRegistry

logger = get_logger(__name__)

# Extra handler parameter FastAPI fills with its sub-response
_RESPONSE_PARAM = "rate_limit_response"


def rate_limit_exceeded_response(
    result: RateLimitResult,
    message: str,
    status_code: int = 429,
) -> JSONResponse:
    """Standard denial: ``{"success": false, "message": ...}`` plus quota headers."""
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message},
        headers=result.to_headers(),
    )


async def apply_rate_limit(request: Request, limiter: RateLimiter) -> Optional[JSONResponse]:
    """Check request against limiter.

    Returns:
        A ready 429 response when the request is denied, otherwise None so
        the caller can go on to the protected handler. The result is left on
        ``request.state.rate_limit`` either way.
    """
    context = build_request_context(request)
    if limiter.should_skip(context):
        return None

    result = await limiter.check(context)
    request.state.rate_limit = result
    if result.allowed:
        return None
    return rate_limit_exceeded_response(
        result, limiter.config.message, limiter.config.status_code
    )


def _add_quota_headers(response: Response, result: RateLimitResult) -> None:
    # A response that already carries quota headers was produced by an inner
    # limiter (dependency or wrapped handler) and must keep its own numbers.
    if "X-RateLimit-Limit" in response.headers:
        return
    response.headers.update(result.to_headers())


def _find_request_param(handler: Callable[..., Any]) -> str:
    for name, param in inspect.signature(handler).parameters.items():
        if param.annotation is Request or name == "request":
            return name
    raise ConfigurationError(
        f"{handler.__qualname__} needs a 'request: Request' parameter to be rate limited"
    )


def _with_response_param(signature: inspect.Signature) -> inspect.Signature:
    params = list(signature.parameters.values())
    extra = inspect.Parameter(_RESPONSE_PARAM, inspect.Parameter.KEYWORD_ONLY, annotation=Response)
    if params and params[-1].kind is inspect.Parameter.VAR_KEYWORD:
        params.insert(len(params) - 1, extra)
    else:
        params.append(extra)
    return signature.replace(parameters=params)


def with_rate_limit(
    limiter: RateLimiter,
    handler: Optional[Callable[..., Awaitable[Any]]] = None,
) -> Any:
    """Wrap a route handler so it runs only when limiter allows the request.

    Usable as ``with_rate_limit(limiter, handler)`` or as a decorator::

        @router.post("/login")
        @with_rate_limit(auth_limiter)
        async def login(request: Request): ...

    The handler must accept the Request. FastAPI sees the handler's own
    signature plus a ``Response`` parameter, through which the quota headers
    reach handlers that return plain data instead of a Response.
    """
    if handler is None:
        return functools.partial(with_rate_limit, limiter)

    param_name = _find_request_param(handler)
    signature = inspect.signature(handler)

    @functools.wraps(handler)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        injected = kwargs.pop(_RESPONSE_PARAM, None)
        bound = signature.bind_partial(*args, **kwargs)
        request = bound.arguments[param_name]
        denied = await apply_rate_limit(request, limiter)
        if denied is not None:
            return denied
        response = await handler(*args, **kwargs)
        result = getattr(request.state, "rate_limit", None)
        if result is not None:
            target = response if isinstance(response, Response) else injected
            if target is not None:
                _add_quota_headers(target, result)
        return response

    wrapper.__signature__ = _with_response_param(signature)
    return wrapper


def get_registry(request: Request) -> LimiterRegistry:
    """The process registry built in the application lifespan."""
    registry = getattr(request.app.state, "rate_limit_registry", None)
    if registry is None:
        raise ConfigurationError("Rate limit registry is not initialised")
    return registry


def rate_limit_dependency(scope: str) -> Callable[[Request], Awaitable[Optional[RateLimitResult]]]:
    """FastAPI dependency enforcing the limiter registered for scope.

    Returns None for requests the limiter's skip predicate exempts.

    Raises:
        RateLimitExceededError: When the request is denied
    """

    async def enforce_rate_limit(request: Request) -> Optional[RateLimitResult]:
        limiter = get_registry(request).get(scope)
        context = build_request_context(request)
        if limiter.should_skip(context):
            return None
        result = await limiter.check(context)
        request.state.rate_limit = result
        if not result.allowed:
            raise RateLimitExceededError(
                result,
                message=limiter.config.message,
                status_code=limiter.config.status_code,
            )
        return result

    return enforce_rate_limit


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on every HTTP request.

    The limiter is picked from the registry by longest matching path prefix.
    Paths in skip_paths are never counted. Allowed responses carry the
    X-RateLimit-* headers, unless an inner limiter already set its own.
    """

    def __init__(
        self,
        app,
        registry: Optional[LimiterRegistry] = None,
        skip_paths: Optional[Iterable[str]] = None,
        enabled: Optional[bool] = None,
    ):
        super().__init__(app)
        self._registry = registry
        self.skip_paths = set(skip_paths if skip_paths is not None else settings.rate_limit_skip_paths)
        self.enabled = enabled if enabled is not None else settings.rate_limit_enabled

    def _resolve_registry(self, request: Request) -> Optional[LimiterRegistry]:
        if self._registry is not None:
            return self._registry
        return getattr(request.app.state, "rate_limit_registry", None)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not self.enabled or request.url.path in self.skip_paths:
            return await call_next(request)

        registry = self._resolve_registry(request)
        if registry is None:
            logger.warning("Rate limit registry missing, request not limited")
            return await call_next(request)

        limiter = registry.for_path(request.url.path)
        if limiter is None:
            return await call_next(request)

        denied = await apply_rate_limit(request, limiter)
        if denied is not None:
            return denied
        # Read before call_next: a route dependency may overwrite it
        result = getattr(request.state, "rate_limit", None)

        response = await call_next(request)

        if result is not None:
            _add_quota_headers(response, result)
        return response
