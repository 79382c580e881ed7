"""Bounded in-process log of rate limit events for the admin view."""

from collections import Counter, defaultdict, deque
from typing import Deque, Dict, List, Optional

from ratekeeper.app.middleware.rate_limit.models import RateLimitEvent, RateLimitResult


class RateLimitEventLog:
    """Keeps the most recent denied or degraded decisions.

    Besides the events themselves it counts every decision per scope, so
    the admin view can show allowed vs exceeded totals.

    Per-process only; each worker shows its own events.
    """

    def __init__(self, max_events: int = 500):
        if max_events < 1:
            raise ValueError("max_events must be >= 1")
        self._events: Deque[RateLimitEvent] = deque(maxlen=max_events)
        self._decisions: Dict[str, Counter] = defaultdict(Counter)

    def __len__(self) -> int:
        return len(self._events)

    def record(self, event: RateLimitEvent) -> None:
        self._events.append(event)

    def tally(self, result: RateLimitResult) -> None:
        """Count one decision for the per-scope stats."""
        counts = self._decisions[result.scope]
        counts["allowed" if result.allowed else "exceeded"] += 1
        if not result.store_available:
            counts["degraded"] += 1

    def recent(
        self,
        limit: Optional[int] = None,
        scope: Optional[str] = None,
        since_ms: Optional[int] = None,
    ) -> List[RateLimitEvent]:
        """Return events newest first, optionally filtered by scope and age.

        Args:
            limit: Maximum number of events
            scope: Only events of this scope
            since_ms: Only events at or after this UNIX time in milliseconds
        """
        events = [
            e for e in reversed(self._events)
            if (scope is None or e.scope == scope)
            and (since_ms is None or e.timestamp_ms >= since_ms)
        ]
        if limit is not None:
            events = events[:limit]
        return events

    def top_offenders(self, limit: int = 10, since_ms: Optional[int] = None) -> List[dict]:
        """Identities with the most exceeded requests, most first."""
        offenders: Dict[str, dict] = {}
        for event in self.recent(since_ms=since_ms):
            if not event.exceeded:
                continue
            entry = offenders.setdefault(
                event.key_hash,
                {"key_hash": event.key_hash, "violations": 0, "scopes": set(), "last_seen_ms": event.timestamp_ms},
            )
            entry["violations"] += 1
            entry["scopes"].add(event.scope)
            entry["last_seen_ms"] = max(entry["last_seen_ms"], event.timestamp_ms)

        ranked = sorted(offenders.values(), key=lambda e: (-e["violations"], -e["last_seen_ms"]))
        return [{**e, "scopes": sorted(e["scopes"])} for e in ranked[:limit]]

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Decision counts per scope since start or the last full clear."""
        return {
            scope: {
                "allowed": counts["allowed"],
                "exceeded": counts["exceeded"],
                "degraded": counts["degraded"],
            }
            for scope, counts in sorted(self._decisions.items())
        }

    def clear(self, before_ms: Optional[int] = None) -> int:
        """Drop events; only those older than before_ms when given.

        A full clear also resets the per-scope decision counts.
        """
        if before_ms is None:
            count = len(self._events)
            self._events.clear()
            self._decisions.clear()
            return count

        kept = [e for e in self._events if e.timestamp_ms >= before_ms]
        count = len(self._events) - len(kept)
        self._events.clear()
        self._events.extend(kept)
        return count
