"""
Consumer module for clickstream session ingestion.

Usage:
    from sessionizer.consumers import SessionConsumer

    consumer = SessionConsumer()
    consumer.setup()
    consumer.run()
"""

from sessionizer.consumers.kafka_consumer import LaneFailure, SessionConsumer
from sessionizer.consumers.pipeline import MessageOutcome, MessagePipeline
from sessionizer.consumers.progress import ProgressCounters, ProgressReporter

__all__ = [
    "LaneFailure",
    "MessageOutcome",
    "MessagePipeline",
    "ProgressCounters",
    "ProgressReporter",
    "SessionConsumer",
]
