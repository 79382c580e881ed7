"""Identity extraction and key building for rate limiters."""

import hashlib
from typing import Optional

from starlette.requests import HTTPConnection

from ratekeeper.app.exceptions import InvalidKeyError
from ratekeeper.app.middleware.rate_limit.models import RequestContext

KEY_PREFIX = "ratelimit"
UNKNOWN_IDENTITY = "unknown"

# Identities longer than this are rejected rather than hashed, so a client
# cannot make us hash megabyte-sized headers on every request.
MAX_IDENTITY_LENGTH = 512


def hash_identity(identity: str) -> str:
    """Hash an identity so raw IPs and user ids never reach the store or logs.

    Uses 32 hex chars (128 bits) of SHA-256 for collision resistance.
    """
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:32]


def build_key(scope: str, identity: str) -> str:
    """Build the namespaced store key ``ratelimit:{scope}:{hash}``.

    The unknown bucket is kept readable since it carries no personal data.
    """
    if identity == UNKNOWN_IDENTITY:
        return f"{KEY_PREFIX}:{scope}:{UNKNOWN_IDENTITY}"
    return f"{KEY_PREFIX}:{scope}:{hash_identity(identity)}"


def _require(value: Optional[str], what: str) -> str:
    if value is None or not value.strip():
        raise InvalidKeyError(f"Request has no {what}")
    value = value.strip()
    if len(value) > MAX_IDENTITY_LENGTH:
        raise InvalidKeyError(f"{what} too long (max {MAX_IDENTITY_LENGTH} characters)")
    return value


def ip_identity(context: RequestContext) -> str:
    """Key on the caller IP."""
    return "ip:" + _require(context.source_ip, "source IP")


def user_identity(context: RequestContext) -> str:
    """Key on the authenticated user id."""
    return "user:" + _require(context.user_id, "user id")


def user_or_ip_identity(context: RequestContext) -> str:
    """Key on the user id when authenticated, otherwise the IP."""
    if context.user_id and context.user_id.strip():
        return user_identity(context)
    return ip_identity(context)


def route_identity(context: RequestContext) -> str:
    """Key on caller and route, so each endpoint gets its own budget."""
    return f"{user_or_ip_identity(context)}|{context.method.upper()} {context.path}"


def get_client_ip(connection: HTTPConnection) -> str:
    """Resolve the caller IP.

    Order: first hop of X-Forwarded-For, X-Real-IP, then the socket peer.
    Returns an empty string when nothing is available.
    """
    forwarded = connection.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = connection.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return connection.client.host if connection.client else ""


def build_request_context(connection: HTTPConnection) -> RequestContext:
    """Build a RequestContext from a Starlette request or websocket.

    The user id is whatever upstream auth middleware put on
    ``request.state.user_id``.
    """
    user_id = getattr(connection.state, "user_id", None)
    return RequestContext(
        source_ip=get_client_ip(connection),
        path=connection.url.path,
        method=connection.scope.get("method", "GET"),
        user_id=str(user_id) if user_id is not None else None,
    )
