# ==============================================================================
# Core Domain Logic
# ==============================================================================
"""
Pure domain logic with no external dependencies.

This module contains:
- Domain models (ClickEvent, EventType, SessionRollup)
- Event decoding and idempotency-key synthesis
- Session aggregation

All code here is I/O-free and easily unit-testable.
"""

from sessionizer.core.decoder import (
    Decoded,
    DecodeResult,
    Rejected,
    decode_event,
    decode_payload,
    synthesize_event_id,
)
from sessionizer.core.models import ClickEvent, EventType, SessionRollup
from sessionizer.core.session_aggregator import EmptySessionError, aggregate_events

__all__ = [
    "ClickEvent",
    "Decoded",
    "DecodeResult",
    "EmptySessionError",
    "EventType",
    "Rejected",
    "SessionRollup",
    "aggregate_events",
    "decode_event",
    "decode_payload",
    "synthesize_event_id",
]
