"""Admin endpoints for inspecting and overriding rate limits."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ratekeeper.app.core.logging import get_logger
from ratekeeper.app.exceptions import ConfigurationError
from ratekeeper.app.middleware.auth import require_admin
from ratekeeper.app.middleware.rate_limit.adapter import get_registry
from ratekeeper.app.middleware.rate_limit.events import RateLimitEventLog
from ratekeeper.app.middleware.rate_limit.keys import hash_identity
from ratekeeper.app.middleware.rate_limit.models import now_ms
from ratekeeper.app.middleware.rate_limit.registry import LimiterRegistry

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/admin/rate-limits",
    tags=["admin-rate-limits"],
    dependencies=[Depends(require_admin)],
)


def _event_log(request: Request) -> Optional[RateLimitEventLog]:
    return getattr(request.app.state, "rate_limit_events", None)


def _since(range_ms: Optional[int]) -> Optional[int]:
    return now_ms() - range_ms if range_ms is not None else None


@router.get("")
async def list_rate_limits(
    request: Request,
    scope: Optional[str] = None,
    range_ms: Optional[int] = Query(None, ge=1, description="Only events from the last range_ms, e.g. 3600000 for 1h"),
    limit: int = Query(100, ge=1, le=1000),
    registry: LimiterRegistry = Depends(get_registry),
) -> dict:
    """Configured scopes, decision stats and the most recent denied requests."""
    event_log = _event_log(request)
    events = (
        event_log.recent(limit=limit, scope=scope, since_ms=_since(range_ms))
        if event_log is not None
        else []
    )
    return {
        "store": type(registry.store).__name__,
        "scopes": registry.describe(),
        "stats": event_log.stats() if event_log is not None else {},
        "events": [e.to_dict() for e in events],
    }


@router.get("/suspicious")
async def list_suspicious(
    request: Request,
    range_ms: Optional[int] = Query(None, ge=1),
    limit: int = Query(10, ge=1, le=100),
) -> dict:
    """Hashed identities ranked by exceeded requests."""
    event_log = _event_log(request)
    offenders = (
        event_log.top_offenders(limit=limit, since_ms=_since(range_ms))
        if event_log is not None
        else []
    )
    return {"offenders": offenders}


@router.delete("/events")
async def clear_events(
    request: Request,
    older_than_ms: Optional[int] = Query(None, ge=1, description="Only clear events older than this"),
) -> dict:
    """Clear the event log of this process."""
    event_log = _event_log(request)
    cleared = event_log.clear(before_ms=_since(older_than_ms)) if event_log is not None else 0
    return {"success": True, "cleared": cleared}


@router.delete("/{scope}")
async def reset_counter(
    scope: str,
    identity: str = Query(..., min_length=1, description="Identity as keyed, e.g. ip:203.0.113.7"),
    registry: LimiterRegistry = Depends(get_registry),
) -> dict:
    """Reset one caller's counter in one scope."""
    try:
        limiter = registry.get(scope)
    except ConfigurationError:
        raise HTTPException(status_code=404, detail=f"Unknown scope '{scope}'") from None

    await limiter.reset(identity)
    logger.info(
        "Rate limit counter reset by admin",
        extra={"scope": scope, "key_hash": hash_identity(identity)},
    )
    return {"success": True, "scope": scope}
