import asyncio
import contextlib
import traceback
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ratekeeper.app.api.admin import router as admin_router
from ratekeeper.app.core.config import settings
from ratekeeper.app.core.logging import get_logger, setup_logging
from ratekeeper.app.exceptions import (
    RatekeeperException,
    RateLimitExceededError,
    StoreUnavailableError,
)
from ratekeeper.app.middleware.rate_limit import (
    CounterStore,
    RateLimitEventLog,
    RateLimitMiddleware,
    WebSocketRateLimiter,
    build_default_registry,
    create_counter_store,
    rate_limit_exceeded_response,
)
from ratekeeper.app.middleware.request_id import RequestIdMiddleware


async def _run_store_cleanup(store: CounterStore, interval_seconds: int) -> None:
    """Periodically drop expired counters (no-op for Redis, keys expire)."""
    logger = get_logger(__name__)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await store.cleanup()
        except StoreUnavailableError as e:
            logger.warning(
                f"Rate limit store cleanup failed: {e.message}",
                extra={"error_kind": e.kind.value},
            )
            continue
        if removed:
            logger.debug(f"Removed {removed} expired rate limit entries")


def create_app(store: Optional[CounterStore] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Counter store to use instead of the one selected by settings

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the counter store and limiters once, close them on shutdown."""
        counter_store = store or create_counter_store()
        event_log = RateLimitEventLog(settings.rate_limit_event_log_size)
        registry = build_default_registry(counter_store, settings, event_log)

        app.state.rate_limit_store = counter_store
        app.state.rate_limit_events = event_log
        app.state.rate_limit_registry = registry
        app.state.websocket_limiter = WebSocketRateLimiter(
            registry.get("websocket"),
            max_connections_per_ip=settings.websocket_max_connections_per_ip,
            max_messages_per_minute=settings.websocket_max_messages_per_minute,
            max_message_size_bytes=settings.websocket_max_message_size_bytes,
        )

        cleanup_task = asyncio.create_task(
            _run_store_cleanup(counter_store, settings.rate_limit_cleanup_interval_seconds)
        )

        logger.info(
            "Application startup complete",
            extra={
                "store": type(counter_store).__name__,
                "scopes": [limiter.scope for limiter in registry],
                "fail_closed": settings.rate_limit_fail_closed,
            },
        )

        yield

        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
        await counter_store.close()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Ratekeeper",
        description="Scoped rate limiting with in-memory and Redis counter stores",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    # Rate limit middleware
    app.add_middleware(RateLimitMiddleware)

    # Request ID middleware, outside the limiter so 429s carry the ID too
    app.add_middleware(RequestIdMiddleware)

    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=600,
    )

    app.include_router(admin_router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Health check including counter store reachability."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        counter_store = getattr(request.app.state, "rate_limit_store", None)
        if counter_store is None:
            health_status["status"] = "degraded"
            health_status["components"]["rate_limit_store"] = {
                "status": "error",
                "error": "not initialised",
            }
            return health_status

        try:
            await counter_store.ping()
            health_status["components"]["rate_limit_store"] = {
                "status": "ok",
                "type": type(counter_store).__name__,
            }
        except StoreUnavailableError as e:
            health_status["status"] = "degraded"
            health_status["components"]["rate_limit_store"] = {
                "status": "error",
                "type": type(counter_store).__name__,
                "error": e.kind.value,
            }

        return health_status

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError raised by route dependencies."""
        return rate_limit_exceeded_response(exc.result, exc.message, exc.status_code)

    @app.exception_handler(RatekeeperException)
    async def ratekeeper_error_handler(request: Request, exc: RatekeeperException) -> JSONResponse:
        """Handle service errors with their mapped status code."""
        logger.warning(
            f"{type(exc).__name__}: {exc.message}",
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; the full details are logged.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "traceback": traceback.format_exc(),
            },
        )

        content = {
            "success": False,
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
