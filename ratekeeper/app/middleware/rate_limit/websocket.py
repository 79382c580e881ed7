"""WebSocket rate limiting.

Connection attempts are counted per IP through a regular RateLimiter, so they
share the configured store like every other scope. Open connections and
message rates are tracked per process, since a socket only ever lives in the
worker that accepted it.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

from starlette.websockets import WebSocket

from ratekeeper.app.core.logging import get_log_context, get_logger
from ratekeeper.app.middleware.rate_limit.keys import build_request_context, hash_identity
from ratekeeper.app.middleware.rate_limit.limiter import RateLimiter
from ratekeeper.app.middleware.rate_limit.models import RequestContext, now_ms

logger = get_logger(__name__)

# Close code for policy violations (RFC 6455)
WS_POLICY_VIOLATION = 1008
MESSAGE_WINDOW_MS = 60_000


@dataclass
class _MessageWindow:
    window_start_ms: int
    count: int = 0


class WebSocketRateLimiter:
    """Limits WebSocket connection attempts, open sockets and message rate.

    A successful can_connect() holds a slot for the IP until the caller
    either registers the connection or cancels the reservation, so
    concurrent handshakes cannot overshoot max_connections_per_ip.
    """

    def __init__(
        self,
        connect_limiter: RateLimiter,
        max_connections_per_ip: int = 5,
        max_messages_per_minute: int = 60,
        max_message_size_bytes: int = 65536,
        clock: Callable[[], int] = now_ms,
    ):
        if min(max_connections_per_ip, max_messages_per_minute, max_message_size_bytes) < 1:
            raise ValueError("WebSocket limits must be >= 1")
        self.connect_limiter = connect_limiter
        self.max_connections_per_ip = max_connections_per_ip
        self.max_messages_per_minute = max_messages_per_minute
        self.max_message_size_bytes = max_message_size_bytes
        self._clock = clock
        self._connections: Dict[str, Set[str]] = defaultdict(set)
        self._reserved: Dict[str, int] = {}
        self._message_windows: Dict[str, _MessageWindow] = {}

    def open_connections(self, ip: str) -> int:
        """Registered connections plus slots held by pending handshakes."""
        return len(self._connections.get(ip, ())) + self._reserved.get(ip, 0)

    async def can_connect(self, ip: str, path: str = "/ws") -> bool:
        """Count a connection attempt from ip and decide whether to accept it.

        On True a slot stays reserved for ip; follow up with
        register_connection() or cancel_reservation().
        """
        if self.open_connections(ip) >= self.max_connections_per_ip:
            logger.warning(
                "WebSocket connection refused: too many open connections",
                extra=get_log_context(scope=self.connect_limiter.scope, key_hash=hash_identity(ip)),
            )
            return False

        # Taken before the store call so concurrent handshakes see it
        self._reserved[ip] = self._reserved.get(ip, 0) + 1
        allowed = False
        try:
            result = await self.connect_limiter.check(RequestContext(source_ip=ip, path=path))
            allowed = result.allowed
        finally:
            if not allowed:
                self.cancel_reservation(ip)
        return allowed

    def cancel_reservation(self, ip: str) -> None:
        count = self._reserved.get(ip, 0)
        if count <= 1:
            self._reserved.pop(ip, None)
        else:
            self._reserved[ip] = count - 1

    def register_connection(self, ip: str, connection_id: str) -> None:
        self.cancel_reservation(ip)
        self._connections[ip].add(connection_id)
        self._message_windows[connection_id] = _MessageWindow(window_start_ms=self._clock())

    def unregister_connection(self, ip: str, connection_id: str) -> None:
        connections = self._connections.get(ip)
        if connections is not None:
            connections.discard(connection_id)
            if not connections:
                del self._connections[ip]
        self._message_windows.pop(connection_id, None)

    async def can_send_message(self, ip: str, connection_id: str, size_bytes: int) -> bool:
        """Decide whether a message of size_bytes may be processed."""
        if size_bytes > self.max_message_size_bytes:
            logger.warning(
                f"WebSocket message rejected: {size_bytes} bytes exceeds limit",
                extra=get_log_context(scope=self.connect_limiter.scope, key_hash=hash_identity(ip)),
            )
            return False

        window = self._message_windows.get(connection_id)
        if window is None or connection_id not in self._connections.get(ip, ()):
            return False

        now = self._clock()
        if now - window.window_start_ms >= MESSAGE_WINDOW_MS:
            window.window_start_ms = now
            window.count = 0

        if window.count >= self.max_messages_per_minute:
            return False
        window.count += 1
        return True

    async def admit(self, websocket: WebSocket) -> Optional[str]:
        """Accept websocket if allowed, otherwise close it with 1008.

        Returns:
            The connection id to pass to release(), or None when refused
        """
        context = build_request_context(websocket)
        if not await self.can_connect(context.source_ip, context.path):
            await websocket.close(code=WS_POLICY_VIOLATION)
            return None
        try:
            await websocket.accept()
        except Exception:
            self.cancel_reservation(context.source_ip)
            raise
        connection_id = uuid.uuid4().hex
        self.register_connection(context.source_ip, connection_id)
        return connection_id

    def release(self, websocket: WebSocket, connection_id: str) -> None:
        context = build_request_context(websocket)
        self.unregister_connection(context.source_ip, connection_id)
