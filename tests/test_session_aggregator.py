# ==============================================================================
# Tests for Session Aggregation — core/session_aggregator.py
# ==============================================================================
"""
Tests for aggregate_events(): aggregate correctness, order independence and
the first-event / follow-up scenarios.
"""

import itertools
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from sessionizer.core.models import ClickEvent
from sessionizer.core.session_aggregator import EmptySessionError, aggregate_events


def _event(ts: str, event_name: str = "page_view", session_id: str = "s1", **extra) -> ClickEvent:
    return ClickEvent(
        ts=ts, user_id="u1", session_id=session_id, event_name=event_name, **extra
    )


# ==============================================================================
# Scenarios
# ==============================================================================


class TestScenarios:
    """First event, a follow-up checkout, and out-of-order arrival."""

    def test_single_page_view(self):
        rollup = aggregate_events("s1", "u1", [_event("2024-01-01T00:00:00Z")])

        assert rollup.session_start == datetime(2024, 1, 1, tzinfo=UTC)
        assert rollup.session_end == rollup.session_start
        assert rollup.event_count == 1
        assert rollup.pageviews == 1
        assert rollup.conversions == 0
        assert rollup.revenue_total == Decimal("0")

    def test_follow_up_checkout(self):
        events = [
            _event("2024-01-01T00:00:00Z"),
            _event("2024-01-01T00:05:00Z", "checkout", revenue=Decimal("50.00")),
        ]
        rollup = aggregate_events("s1", "u1", events)

        assert rollup.event_count == 2
        assert rollup.pageviews == 1
        assert rollup.conversions == 1
        assert rollup.revenue_total == Decimal("50.00")
        assert rollup.session_end == datetime(2024, 1, 1, 0, 5, tzinfo=UTC)
        assert rollup.duration_seconds == 300

    def test_out_of_order_arrival(self):
        later = _event("2024-01-01T00:05:00Z")
        earlier = _event("2024-01-01T00:00:00Z")
        rollup = aggregate_events("s1", "u1", [later, earlier])

        assert rollup.session_start == datetime(2024, 1, 1, tzinfo=UTC)
        assert rollup.session_end == datetime(2024, 1, 1, 0, 5, tzinfo=UTC)


# ==============================================================================
# Properties
# ==============================================================================


class TestAggregateProperties:
    """Order independence and aggregate correctness."""

    EVENTS = [
        _event("2024-01-01T00:00:00Z"),
        _event("2024-01-01T00:02:00Z", "add_to_cart"),
        _event("2024-01-01T00:01:00Z"),
        _event("2024-01-01T00:04:00Z", "checkout", revenue=Decimal("19.99")),
        _event("2024-01-01T00:03:00Z", "checkout", revenue=Decimal("5.01")),
    ]

    def test_every_order_gives_same_rollup(self):
        expected = aggregate_events("s1", "u1", self.EVENTS).aggregate_fields()

        for order in itertools.permutations(self.EVENTS):
            assert aggregate_events("s1", "u1", order).aggregate_fields() == expected

    def test_aggregate_values(self):
        rollup = aggregate_events("s1", "u1", self.EVENTS)

        assert rollup.session_start == min(e.ts for e in self.EVENTS)
        assert rollup.session_end == max(e.ts for e in self.EVENTS)
        assert rollup.event_count == 5
        assert rollup.pageviews == 2
        assert rollup.conversions == 2
        assert rollup.revenue_total == Decimal("25.00")

    def test_revenue_on_non_checkout_events_counts(self):
        events = [_event("2024-01-01T00:00:00Z", revenue=Decimal("1.50"))]
        assert aggregate_events("s1", "u1", events).revenue_total == Decimal("1.50")

    def test_other_sessions_ignored(self):
        events = self.EVENTS + [_event("2024-01-02T00:00:00Z", session_id="s2")]
        rollup = aggregate_events("s1", "u1", events)

        assert rollup.event_count == 5
        assert rollup.session_end == datetime(2024, 1, 1, 0, 4, tzinfo=UTC)

    def test_updated_at_passed_through(self):
        now = datetime(2024, 6, 1, tzinfo=UTC)
        rollup = aggregate_events("s1", "u1", self.EVENTS, updated_at=now)

        assert rollup.last_updated_at == now
        assert "last_updated_at" not in rollup.aggregate_fields()

    def test_accepts_generator(self):
        rollup = aggregate_events("s1", "u1", (e for e in self.EVENTS))
        assert rollup.event_count == 5


class TestEmptySession:
    """Sessions without stored events."""

    def test_no_events(self):
        with pytest.raises(EmptySessionError):
            aggregate_events("s1", "u1", [])

    def test_only_other_sessions(self):
        with pytest.raises(EmptySessionError, match="s1"):
            aggregate_events("s1", "u1", [_event("2024-01-01T00:00:00Z", session_id="s2")])

    def test_is_a_value_error(self):
        assert issubclass(EmptySessionError, ValueError)
