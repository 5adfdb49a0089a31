# ==============================================================================
# kafka-python Session Consumer
# ==============================================================================
"""
Stream consumer that feeds the ingestion pipeline using kafka-python.

Uses:
- kafka-python for group membership, fetching and manual offset commits
- PostgreSQLEventRepository / PostgreSQLSessionRepository for persistence
- A ThreadPoolExecutor running one lane per partition

Processing model:
- Each poll returns records grouped by partition. Every partition's records
  go to one lane and are processed strictly in offset order; lanes for
  different partitions run concurrently, bounded by CONSUMER_MAX_LANES.
- The next poll only happens after every lane of the current batch has
  finished, so no partition advances past an unfinished message.
- Offsets are committed after all lanes succeed (at-least-once). If any
  lane fails, nothing from the batch is committed and the error is raised;
  redelivery plus idempotent writes recover after a restart.

Shutdown: the ShutdownSignal is checked before each poll. The in-flight
batch is drained and committed, then the lanes, broker session, dead-letter
producer and connection pool are closed in that order.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait

from kafka.consumer.subscription_state import ConsumerRebalanceListener
from kafka.errors import CommitFailedError, KafkaError

from sessionizer.base.consumer import BaseConsumer
from sessionizer.consumers.pipeline import MessageOutcome, MessagePipeline
from sessionizer.consumers.progress import ProgressReporter
from sessionizer.infrastructure.kafka import DeadLetterPublisher, create_consumer
from sessionizer.infrastructure.repositories.postgresql import (
    PostgreSQLEventRepository,
    PostgreSQLSessionRepository,
    open_pool,
)
from sessionizer.utils.config import Settings, get_settings
from sessionizer.utils.shutdown import ShutdownSignal
from sessionizer.utils.versions import get_package_version

logger = logging.getLogger(__name__)


class _RebalanceListener(ConsumerRebalanceListener):
    """Logs partition movement and counts assignments."""

    def __init__(self, progress: ProgressReporter):
        self._progress = progress

    def on_partitions_revoked(self, revoked):
        logger.info("Revoked %d partitions", len(revoked))

    def on_partitions_assigned(self, assigned):
        logger.info(
            "Assigned %d partitions: %s",
            len(assigned),
            [f"{tp.topic}-{tp.partition}" for tp in assigned],
        )
        self._progress.record_rebalance()


class LaneFailure(Exception):
    """Raised when one or more partition lanes failed during a batch."""

    def __init__(self, failures: dict):
        self.failures = failures
        partitions = ", ".join(f"{tp.topic}-{tp.partition}" for tp in failures)
        super().__init__(f"{len(failures)} partition lane(s) failed: {partitions}")


class SessionConsumer(BaseConsumer):
    """
    Kafka consumer driving decode → store → aggregate per partition lane.

    Collaborators are created in setup() from settings; tests may pass a
    ready-made kafka consumer and pipeline instead.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        shutdown: ShutdownSignal | None = None,
        kafka_consumer=None,
        pipeline: MessagePipeline | None = None,
        progress: ProgressReporter | None = None,
    ):
        """
        Initialize the consumer.

        Args:
            settings: Application settings. If None, uses get_settings().
            shutdown: Cancellation context shared with the entry point
            kafka_consumer: Pre-built, subscribed KafkaConsumer
            pipeline: Pre-built MessagePipeline
            progress: Pre-built ProgressReporter
        """
        self._settings = settings or get_settings()
        self._shutdown = shutdown or ShutdownSignal()
        consumer_settings = self._settings.consumer
        self.progress = progress or ProgressReporter(
            progress_every=consumer_settings.progress_every,
            summary_interval_seconds=consumer_settings.summary_interval_seconds,
            on_summary=self._log_consumer_lag,
        )

        self._consumer = kafka_consumer
        self._pipeline = pipeline
        self._pool = None
        self._dead_letters: DeadLetterPublisher | None = None
        self._executor: ThreadPoolExecutor | None = None

    @property
    def version(self) -> str:
        """Client library and version, for startup logging."""
        return f"kafka-python v{get_package_version('kafka-python')}"

    @property
    def shutdown(self) -> ShutdownSignal:
        return self._shutdown

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self) -> None:
        """
        Open the connection pool, build the pipeline and join the group.

        Raises:
            psycopg2.OperationalError: If PostgreSQL is unreachable
            kafka.errors.NoBrokersAvailable: If no broker is reachable
        """
        settings = self._settings
        kafka_settings = settings.kafka

        if self._pipeline is None:
            self._pool = open_pool(settings.postgres)
            if kafka_settings.dead_letter_topic:
                self._dead_letters = DeadLetterPublisher(
                    kafka_settings.dead_letter_topic, kafka_settings
                )
                logger.info("Dead-letter topic: %s", kafka_settings.dead_letter_topic)
            if not settings.consumer.synthesize_event_id:
                logger.warning(
                    "Event ID synthesis disabled: events without event_id are appended "
                    "without deduplication"
                )
            self._pipeline = MessagePipeline(
                PostgreSQLEventRepository(self._pool),
                PostgreSQLSessionRepository(self._pool),
                self.progress,
                synthesize_event_id=settings.consumer.synthesize_event_id,
                dead_letters=self._dead_letters,
            )

        if self._consumer is None:
            self._consumer = create_consumer(kafka_settings, settings.consumer.batch_size)
            self._consumer.subscribe(
                [kafka_settings.topic], listener=_RebalanceListener(self.progress)
            )

        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_lanes, thread_name_prefix="partition-lane"
        )

        logger.info("Consumer group: %s", kafka_settings.group_id)
        logger.info(
            "Topic: %s (from_beginning=%s)", kafka_settings.topic, kafka_settings.from_beginning
        )
        logger.info(
            "Lanes: %d | batch_size=%d | pool_size=%d",
            settings.max_lanes,
            settings.consumer.batch_size,
            settings.postgres.pool_size,
        )

    def run(self) -> None:
        """
        Poll and process until shutdown is requested.

        Raises:
            LaneFailure: If a partition lane failed (batch left uncommitted)
            KeyboardInterrupt: On a forced shutdown; running lanes are not awaited
        """
        if self._executor is None:
            self.setup()

        logger.info("Starting session consumer (%s)...", self.version)
        forced = False
        try:
            while not self._shutdown.requested:
                self.poll_once()
            logger.info("Shutdown requested (%s), in-flight work drained", self._shutdown.reason)
        except KeyboardInterrupt:
            forced = True
            logger.warning("Forced shutdown, abandoning in-flight partition lanes")
            raise
        except Exception as e:
            logger.exception("Consumer error: %s", e)
            raise
        finally:
            self.close(wait=not forced)

    def stop(self) -> None:
        """Request shutdown; run() returns after the current batch."""
        self._shutdown.request("stop() called")

    def close(self, wait: bool = True) -> None:
        """
        Release lanes, broker session, dead-letter producer and pool.

        Args:
            wait: Wait for running lanes to finish. When False, lanes that
                have not started are cancelled and running ones are left to
                fail once the pool closes their connections.
        """
        if self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=not wait)
            self._executor = None
        if self._consumer is not None:
            try:
                self._consumer.close(autocommit=False)
                logger.info("Kafka consumer closed")
            except KafkaError as e:
                logger.warning("Error closing Kafka consumer: %s", e)
            self._consumer = None
        if self._dead_letters is not None:
            try:
                self._dead_letters.close()
            except KafkaError as e:
                logger.warning("Error closing dead-letter producer: %s", e)
            self._dead_letters = None
        if self._pool is not None:
            self._pool.close()
            self._pool = None
        self.progress.log_final_summary()
        logger.info("Session consumer shutdown complete.")

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def poll_once(self) -> int:
        """
        Poll one batch, process it on partition lanes, then commit.

        Returns:
            Number of records processed (0 when the poll was empty)
        """
        consumer_settings = self._settings.consumer

        t_poll = time.monotonic()
        batches = self._consumer.poll(
            timeout_ms=consumer_settings.poll_timeout_ms,
            max_records=consumer_settings.batch_size,
        )
        poll_ms = (time.monotonic() - t_poll) * 1000

        batches = {tp: records for tp, records in (batches or {}).items() if records}
        if not batches:
            return 0

        t_process = time.monotonic()
        self.process_batch(batches)
        process_ms = (time.monotonic() - t_process) * 1000

        t_commit = time.monotonic()
        self._commit()
        commit_ms = (time.monotonic() - t_commit) * 1000

        self.progress.record_batch(poll_ms, process_ms, commit_ms)
        return sum(len(records) for records in batches.values())

    def process_batch(self, batches: dict) -> dict:
        """
        Process records grouped by partition, one lane per partition.

        Waits for every lane to finish before returning or raising.

        Args:
            batches: Mapping of TopicPartition to records in offset order

        Returns:
            Mapping of TopicPartition to list[MessageOutcome]

        Raises:
            LaneFailure: If any lane raised
        """
        futures = {
            tp: self._executor.submit(self._pipeline.process_partition, records)
            for tp, records in batches.items()
        }
        wait(futures.values())

        results: dict[object, list[MessageOutcome]] = {}
        failures: dict[object, BaseException] = {}
        for tp, future in futures.items():
            error = future.exception()
            if error is not None:
                failures[tp] = error
            else:
                results[tp] = future.result()

        if failures:
            raise LaneFailure(failures) from next(iter(failures.values()))
        return results

    def _commit(self) -> None:
        try:
            self._consumer.commit()
        except CommitFailedError as e:
            # Partitions were reassigned mid-batch; the new owner re-processes
            logger.warning("Offset commit failed, batch will be redelivered: %s", e)

    def _log_consumer_lag(self) -> None:
        """Log consumer lag for all assigned partitions."""
        if self._consumer is None:
            return
        assigned = self._consumer.assignment()
        if not assigned:
            return
        end_offsets = self._consumer.end_offsets(list(assigned))
        parts = []
        total_lag = 0
        for tp in sorted(assigned, key=lambda tp: tp.partition):
            lag = max(0, end_offsets.get(tp, 0) - self._consumer.position(tp))
            parts.append(f"p{tp.partition}={lag:,}")
            total_lag += lag
        logger.info("Consumer lag: %s | total=%s", " ".join(parts), f"{total_lag:,}")
