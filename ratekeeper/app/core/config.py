import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# Scopes that get a limiter out of the box. Each one reads
# rate_limit_<scope>_requests / rate_limit_<scope>_window_seconds.
DEFAULT_SCOPES = (
    "auth",
    "admin",
    "financial",
    "signup",
    "password_reset",
    "token",
    "sensitive_api",
    "api",
    "websocket",
)


def _parse_string_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # JSON is the documented format, but a plain comma separated value is
    # common enough in .env files to accept as well.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]

    seen: set[str] = set()
    result: list[str] = []
    for part in parts:
        if part in seen:
            continue
        seen.add(part)
        result.append(part)
    return result


def _parse_route_scopes(raw: Any) -> dict[str, str]:
    """Parse a path-prefix -> scope mapping.

    Accepts a dict, a JSON object, or ``"/api/auth=auth,/api/admin=admin"``.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k).strip(): str(v).strip() for k, v in raw.items() if str(k).strip()}

    raw = str(raw).strip()
    if not raw or raw == "{}":
        return {}
    if raw.startswith("{"):
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("rate_limit_route_scopes must be a JSON object")
        return {str(k).strip(): str(v).strip() for k, v in parsed.items()}

    mapping: dict[str, str] = {}
    for pair in _parse_string_list(raw):
        prefix, sep, scope = pair.partition("=")
        if not sep or not prefix or not scope:
            raise ValueError(f"Invalid route scope entry: {pair!r}")
        mapping[prefix.strip()] = scope.strip()
    return mapping


class Settings(BaseSettings):
    """Service settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (optional). When disabled the in-memory store is used,
    # which is only correct for a single worker process.
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 2.0

    # Counter store behaviour
    rate_limit_enabled: bool = True
    rate_limit_store_timeout: float = 1.0  # Seconds before a store call counts as unavailable
    rate_limit_fail_closed: bool = False  # If True, deny requests when the store is unavailable
    rate_limit_max_entries: int = 10000  # In-memory store LRU bound
    rate_limit_cleanup_interval_seconds: int = 60
    rate_limit_event_log_size: int = 500

    # Paths never rate limited by the middleware
    rate_limit_skip_paths: Annotated[list[str], NoDecode] = ["/health"]

    # Path prefix -> scope. Longest prefix wins; unmatched paths use "api".
    rate_limit_route_scopes: Annotated[dict[str, str], NoDecode] = {
        "/api/auth/signup": "signup",
        "/api/auth/reset-password": "password_reset",
        "/api/auth/token": "token",
        "/api/auth": "auth",
        "/api/admin": "admin",
        "/api/payments": "financial",
        "/api/business/financial": "financial",
        "/api/user/sensitive": "sensitive_api",
        "/ws": "websocket",
    }
    rate_limit_default_scope: str = "api"

    # Per-scope thresholds
    rate_limit_auth_requests: int = 10
    rate_limit_auth_window_seconds: int = 900
    rate_limit_admin_requests: int = 30
    rate_limit_admin_window_seconds: int = 60
    rate_limit_financial_requests: int = 10
    rate_limit_financial_window_seconds: int = 60
    rate_limit_signup_requests: int = 5
    rate_limit_signup_window_seconds: int = 3600
    rate_limit_password_reset_requests: int = 3
    rate_limit_password_reset_window_seconds: int = 3600
    rate_limit_token_requests: int = 20
    rate_limit_token_window_seconds: int = 60
    rate_limit_sensitive_api_requests: int = 20
    rate_limit_sensitive_api_window_seconds: int = 60
    rate_limit_api_requests: int = 100
    rate_limit_api_window_seconds: int = 60
    rate_limit_websocket_requests: int = 10
    rate_limit_websocket_window_seconds: int = 60

    # WebSocket limits
    websocket_max_connections_per_ip: int = 5
    websocket_max_messages_per_minute: int = 60
    websocket_max_message_size_bytes: int = 65536

    # Admin API
    admin_token: str = ""

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", "rate_limit_skip_paths", mode="before")
    @classmethod
    def decode_string_list(cls, v: Any) -> list[str]:
        return _parse_string_list(v)

    @field_validator("rate_limit_route_scopes", mode="before")
    @classmethod
    def decode_route_scopes(cls, v: Any) -> dict[str, str]:
        return _parse_route_scopes(v)

    @field_validator(
        "rate_limit_auth_requests",
        "rate_limit_auth_window_seconds",
        "rate_limit_admin_requests",
        "rate_limit_admin_window_seconds",
        "rate_limit_financial_requests",
        "rate_limit_financial_window_seconds",
        "rate_limit_signup_requests",
        "rate_limit_signup_window_seconds",
        "rate_limit_password_reset_requests",
        "rate_limit_password_reset_window_seconds",
        "rate_limit_token_requests",
        "rate_limit_token_window_seconds",
        "rate_limit_sensitive_api_requests",
        "rate_limit_sensitive_api_window_seconds",
        "rate_limit_api_requests",
        "rate_limit_api_window_seconds",
        "rate_limit_websocket_requests",
        "rate_limit_websocket_window_seconds",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "rate_limit_max_entries",
        "rate_limit_cleanup_interval_seconds",
        "rate_limit_event_log_size",
        "websocket_max_connections_per_ip",
        "websocket_max_messages_per_minute",
        "websocket_max_message_size_bytes",
    )
    @classmethod
    def validate_limits_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("limit values must be at least 1")
        return v

    @field_validator("rate_limit_store_timeout", "redis_socket_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    def scope_limits(self, scope: str) -> tuple[int, int]:
        """Return ``(max_requests, window_seconds)`` configured for a scope.

        Raises:
            AttributeError: If the scope has no configured thresholds
        """
        return (
            getattr(self, f"rate_limit_{scope}_requests"),
            getattr(self, f"rate_limit_{scope}_window_seconds"),
        )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
