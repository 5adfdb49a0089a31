# ==============================================================================
# Per-Message Ingestion Pipeline
# ==============================================================================
"""
Drives one Kafka record through decode → store → aggregate.

    1. decode_event(record.value)          - validate, synthesize event_id
    2. event_repo.save(event)              - idempotent insert
    3. session_repo.refresh(session, user) - full-recompute upsert

The session is refreshed even when the insert was a duplicate: a crash
between steps 2 and 3 leaves a stored event without its rollup, and the
redelivered message is what repairs it. A duplicate whose session has no
stored events reused the event_id of another session's event; it is
rejected like malformed input instead of failing the lane on every
redelivery.

A partition lane runs process() over its records strictly in offset order.
Decode rejections are outcomes, not errors. Storage errors propagate so the
consumer can skip the offset commit.
"""

import logging
from dataclasses import dataclass
from typing import Any, Literal

from sessionizer.base.repositories import EventRepository, SessionRepository
from sessionizer.consumers.progress import ProgressReporter
from sessionizer.core.decoder import Rejected, body_preview, decode_event
from sessionizer.core.models import SessionRollup
from sessionizer.core.session_aggregator import EmptySessionError

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["stored", "duplicate", "rejected"]


@dataclass(frozen=True)
class MessageOutcome:
    """What happened to one record."""

    status: OutcomeStatus
    offset: int
    rollup: SessionRollup | None = None
    reason: str | None = None


class MessagePipeline:
    """
    Sequential decode → store → aggregate for Kafka records.

    Safe to share between partition lanes: it holds no per-message state and
    the repositories borrow pooled connections per call.
    """

    def __init__(
        self,
        event_repo: EventRepository,
        session_repo: SessionRepository,
        progress: ProgressReporter,
        synthesize_event_id: bool = True,
        dead_letters=None,
    ):
        """
        Initialize the pipeline.

        Args:
            event_repo: Event store writer
            session_repo: Session aggregator
            progress: Counters shared with the consumer
            synthesize_event_id: Derive event_id when a payload has none
            dead_letters: Optional DeadLetterPublisher for rejected records
        """
        self._event_repo = event_repo
        self._session_repo = session_repo
        self._progress = progress
        self._synthesize_event_id = synthesize_event_id
        self._dead_letters = dead_letters

    def process(self, record: Any) -> MessageOutcome:
        """
        Run one record through the pipeline.

        Args:
            record: Kafka ConsumerRecord (topic, partition, offset, key, value)

        Returns:
            MessageOutcome

        Raises:
            Any storage or dead-letter error
        """
        self._progress.record_received()
        result = decode_event(record.value, synthesize_key=self._synthesize_event_id)

        if isinstance(result, Rejected):
            self._reject(record, result)
            return MessageOutcome("rejected", record.offset, reason=result.reason)

        event = result.event
        stored = self._event_repo.save(event)
        if stored:
            self._progress.record_stored()

        try:
            rollup = self._session_repo.refresh(event.session_id, event.user_id)
        except EmptySessionError:
            if stored:
                raise
            # The key already belongs to an event of another session
            rejection = Rejected(
                f"event_id {event.event_id!r} is already stored for another session",
                body_preview(record.value),
            )
            self._reject(record, rejection)
            return MessageOutcome("rejected", record.offset, reason=rejection.reason)

        if not stored:
            self._progress.record_duplicate()
            logger.info(
                "Duplicate event %s at %s[%d]@%d, refreshed session %s",
                event.event_id,
                record.topic,
                record.partition,
                record.offset,
                event.session_id,
            )
        self._progress.record_session_refreshed()
        return MessageOutcome("stored" if stored else "duplicate", record.offset, rollup=rollup)

    def process_partition(self, records: list[Any]) -> list[MessageOutcome]:
        """
        Process one partition's records in offset order.

        Stops at the first failing record and re-raises; records after it
        are left for redelivery.

        Args:
            records: Records of a single partition, in offset order

        Returns:
            Outcomes of every record
        """
        outcomes = []
        for record in records:
            try:
                outcomes.append(self.process(record))
            except Exception as e:
                self._progress.record_failure()
                logger.error(
                    "Failed to process %s[%d]@%d: %s",
                    record.topic,
                    record.partition,
                    record.offset,
                    e,
                )
                raise
        return outcomes

    def _reject(self, record: Any, rejection: Rejected) -> None:
        self._progress.record_rejected()
        logger.warning(
            "Rejected %s[%d]@%d: %s | body=%r",
            record.topic,
            record.partition,
            record.offset,
            rejection.reason,
            rejection.preview,
        )
        if self._dead_letters is None:
            return
        self._dead_letters.publish(
            value=record.value,
            key=record.key,
            reason=rejection.reason,
            source_topic=record.topic,
            partition=record.partition,
            offset=record.offset,
        )
        self._progress.record_dead_lettered()
