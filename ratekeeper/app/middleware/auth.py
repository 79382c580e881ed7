import hmac

from fastapi import HTTPException, Request

from ratekeeper.app.core.config import settings


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    token = auth[7:].strip()
    return token or None


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Raises:
        HTTPException: 401 if admin token is missing or invalid, 503 if no
            admin token is configured
    """
    expected_token = settings.admin_token
    if not expected_token:
        raise HTTPException(status_code=503, detail="Admin API is disabled")

    # Always compare, even against an empty token, to keep timing uniform
    token = get_bearer_token(request) or ""
    if not hmac.compare_digest(token, expected_token):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
