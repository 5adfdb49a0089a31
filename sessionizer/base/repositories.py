# ==============================================================================
# Repository Abstract Base Classes
# ==============================================================================
"""
Repository ABCs for data persistence.

These define the "what" (store an event, refresh a session) not the "how"
(insert-ignore, advisory locks, upserts). Concrete implementations in
infrastructure/ handle the specifics.

Repositories do not own their connections: the connection pool is created
by the consumer, handed to each repository, and closed by the consumer.
"""

from abc import ABC, abstractmethod

from sessionizer.core.models import ClickEvent, SessionRollup


class EventRepository(ABC):
    """Append-only store for decoded events."""

    @abstractmethod
    def save(self, event: ClickEvent) -> bool:
        """
        Persist one event.

        Re-submitting an event with the same event_id must not create a
        second row. Events without event_id are appended unconditionally.

        Args:
            event: Validated event

        Returns:
            True if a row was stored, False if it was a duplicate
        """
        ...


class SessionRepository(ABC):
    """Materialized per-session rollups."""

    @abstractmethod
    def refresh(self, session_id: str, user_id: str) -> SessionRollup:
        """
        Recompute and upsert the rollup for one session.

        The rollup is derived from every event currently stored for
        session_id and must be written atomically with that read.

        Args:
            session_id: Session to refresh
            user_id: Owner recorded when the row is first created

        Returns:
            The rollup as written
        """
        ...
