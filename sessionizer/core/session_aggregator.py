# ==============================================================================
# Session Aggregation - Pure Domain Logic
# ==============================================================================
"""
Reference definition of the session rollup.

The rollup is recomputed from the full set of events stored for a session,
never patched incrementally. That makes it a pure function of the event set:
duplicates collapse on event_id before they get here, and arrival order does
not matter because min/max/count/sum are order-independent.

The PostgreSQL aggregator computes the same thing in one SQL statement; this
module is the in-process equivalent used by in-memory stores and tests.

Cost is O(events in session) per refresh, which is fine for short-lived
sessions and grows with very long-lived ones.
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from sessionizer.core.models import ClickEvent, SessionRollup


class EmptySessionError(ValueError):
    """Raised when asked to aggregate a session with no events."""


def aggregate_events(
    session_id: str,
    user_id: str,
    events: Iterable[ClickEvent],
    updated_at: datetime | None = None,
) -> SessionRollup:
    """
    Compute the rollup for one session.

    Args:
        session_id: Session to aggregate
        user_id: Owner recorded on the session row
        events: Stored events; those for other sessions are ignored
        updated_at: Value for last_updated_at

    Returns:
        SessionRollup over every matching event

    Raises:
        EmptySessionError: If no event belongs to session_id
    """
    matching = [e for e in events if e.session_id == session_id]
    if not matching:
        raise EmptySessionError(f"no events stored for session {session_id!r}")

    return SessionRollup(
        session_id=session_id,
        user_id=user_id,
        session_start=min(e.ts for e in matching),
        session_end=max(e.ts for e in matching),
        event_count=len(matching),
        pageviews=sum(1 for e in matching if e.is_page_view),
        conversions=sum(1 for e in matching if e.is_conversion),
        revenue_total=sum((e.revenue or Decimal("0") for e in matching), Decimal("0")),
        last_updated_at=updated_at,
    )
