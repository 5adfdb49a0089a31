# ==============================================================================
# Base Abstract Classes
# ==============================================================================
"""
Abstract base classes defining the ports of the ingestion pipeline.
"""

from sessionizer.base.consumer import BaseConsumer
from sessionizer.base.repositories import EventRepository, SessionRepository

__all__ = [
    "BaseConsumer",
    "EventRepository",
    "SessionRepository",
]
