# ==============================================================================
# Tests for SessionConsumer — consumers/kafka_consumer.py
# ==============================================================================
"""
Tests for the poll → partition lanes → commit loop.

The KafkaConsumer is a MagicMock; the pipeline is either the real
MessagePipeline over in-memory repositories or a MagicMock when a test
needs to inject failures.
"""

import logging
import threading
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from kafka.errors import CommitFailedError
from kafka.structs import TopicPartition

from sessionizer.consumers.kafka_consumer import LaneFailure, SessionConsumer, _RebalanceListener
from sessionizer.core.session_aggregator import aggregate_events
from sessionizer.utils.config import KafkaSettings
from sessionizer.utils.shutdown import ShutdownSignal

MODULE = "sessionizer.consumers.kafka_consumer"

TP0 = TopicPartition("clickstream", 0)
TP1 = TopicPartition("clickstream", 1)


def _payload(ts: str, session_id: str = "s1") -> dict:
    return {"ts": ts, "user_id": "u1", "session_id": session_id, "event_name": "page_view"}


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture()
def make_consumer(settings, pipeline, progress):
    """Factory for a set-up SessionConsumer over a mocked KafkaConsumer.

    Every consumer created is closed at teardown.
    """
    created = []

    def _make(pipeline_override=None, shutdown=None):
        kafka_consumer = MagicMock()
        consumer = SessionConsumer(
            settings,
            shutdown or ShutdownSignal(),
            kafka_consumer=kafka_consumer,
            pipeline=pipeline_override or pipeline,
            progress=progress,
        )
        consumer.setup()
        created.append(consumer)
        return consumer, kafka_consumer

    yield _make

    for consumer in created:
        consumer.close()


# ==============================================================================
# poll_once
# ==============================================================================


class TestPollOnce:
    """Tests for one poll → process → commit cycle."""

    def test_processes_all_partitions_then_commits(
        self, make_consumer, make_record, event_repo, session_repo, progress
    ):
        consumer, kafka_consumer = make_consumer()
        kafka_consumer.poll.return_value = {
            TP0: [
                make_record(_payload("2024-01-01T00:00:00Z"), offset=0),
                make_record(_payload("2024-01-01T00:01:00Z"), offset=1),
            ],
            TP1: [make_record(_payload("2024-01-01T00:00:00Z", "s2"), offset=0, partition=1)],
        }

        processed = consumer.poll_once()

        assert processed == 3
        assert len(event_repo.rows) == 3
        assert session_repo.sessions["s1"].event_count == 2
        assert session_repo.sessions["s2"].event_count == 1
        kafka_consumer.commit.assert_called_once_with()
        assert progress.snapshot().batches == 1

    def test_poll_uses_configured_limits(self, make_consumer, settings):
        consumer, kafka_consumer = make_consumer()
        kafka_consumer.poll.return_value = {}

        consumer.poll_once()

        kafka_consumer.poll.assert_called_once_with(
            timeout_ms=settings.consumer.poll_timeout_ms,
            max_records=settings.consumer.batch_size,
        )

    @pytest.mark.parametrize("batch", [{}, None, {TP0: []}])
    def test_empty_poll_does_not_commit(self, make_consumer, batch):
        consumer, kafka_consumer = make_consumer()
        kafka_consumer.poll.return_value = batch

        assert consumer.poll_once() == 0
        kafka_consumer.commit.assert_not_called()

    def test_partition_records_processed_in_offset_order(
        self, make_consumer, make_record, pipeline
    ):
        consumer, kafka_consumer = make_consumer()
        kafka_consumer.poll.return_value = {
            tp: [
                make_record(
                    _payload(f"2024-01-01T00:00:{i:02d}Z"), offset=i, partition=tp.partition
                )
                for i in range(20)
            ]
            for tp in (TP0, TP1)
        }
        seen = []

        with patch.object(pipeline, "process", side_effect=lambda r: seen.append(r)):
            consumer.poll_once()

        for partition in (0, 1):
            offsets = [r.offset for r in seen if r.partition == partition]
            assert offsets == list(range(20))

    def test_malformed_message_is_committed_with_batch(
        self, make_consumer, make_record, event_repo, progress
    ):
        consumer, kafka_consumer = make_consumer()
        kafka_consumer.poll.return_value = {
            TP0: [
                make_record(_payload("2024-01-01T00:00:00Z"), offset=0),
                make_record(b"\x00garbage", offset=1),
                make_record(_payload("2024-01-01T00:02:00Z"), offset=2),
            ]
        }

        assert consumer.poll_once() == 3
        assert len(event_repo.rows) == 2
        assert progress.snapshot().rejected == 1
        kafka_consumer.commit.assert_called_once()

    def test_commit_failure_is_logged_not_raised(self, make_consumer, make_record, caplog):
        consumer, kafka_consumer = make_consumer()
        kafka_consumer.poll.return_value = {
            TP0: [make_record(_payload("2024-01-01T00:00:00Z"))]
        }
        kafka_consumer.commit.side_effect = CommitFailedError("group rebalanced")

        with caplog.at_level(logging.WARNING, logger=MODULE):
            assert consumer.poll_once() == 1

        assert "Offset commit failed" in caplog.text


# ==============================================================================
# Concurrent refreshes of one session
# ==============================================================================


def _ts(minute: int) -> str:
    return f"2024-01-01T00:{minute:02d}:00Z"


class TestSessionAcrossPartitions:
    """One session's events on two partitions, refreshed from concurrent lanes."""

    def test_final_rollup_matches_full_recompute(
        self, make_consumer, make_record, event_repo, session_repo
    ):
        consumer, _ = make_consumer()
        lockstep = threading.Barrier(2)
        lanes = set()
        save = event_repo.save

        def _save_in_lockstep(event):
            # Both lanes insert, then both refresh, record after record
            lanes.add(threading.current_thread().name)
            lockstep.wait(timeout=5)
            return save(event)

        event_repo.save = _save_in_lockstep

        page_views = [
            make_record(_payload(_ts(minute)), offset=i)
            for i, minute in enumerate(range(0, 20, 2))
        ]
        # Later timestamps first on this partition
        checkouts = [
            make_record(
                {**_payload(_ts(minute)), "event_name": "checkout", "revenue": "5.00"},
                offset=i,
                partition=1,
            )
            for i, minute in enumerate(range(19, 0, -2))
        ]

        results = consumer.process_batch({TP0: page_views, TP1: checkouts})

        assert len(lanes) == 2
        assert all(o.status == "stored" for outcomes in results.values() for o in outcomes)

        rollup = session_repo.sessions["s1"]
        expected = aggregate_events("s1", "u1", event_repo.rows)
        assert rollup.aggregate_fields() == expected.aggregate_fields()
        assert rollup.event_count == 20
        assert rollup.pageviews == 10
        assert rollup.conversions == 10
        assert rollup.revenue_total == Decimal("50.00")
        assert rollup.session_start == datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
        assert rollup.session_end == datetime(2024, 1, 1, 0, 19, tzinfo=UTC)

    def test_last_refresh_sees_every_event(self, make_consumer, make_record, session_repo):
        consumer, _ = make_consumer()
        batch = {
            tp: [
                make_record(_payload(_ts(minute)), offset=i, partition=tp.partition)
                for i, minute in enumerate(range(tp.partition, 40, 2))
            ]
            for tp in (TP0, TP1)
        }

        results = consumer.process_batch(batch)

        final_counts = [outcomes[-1].rollup.event_count for outcomes in results.values()]
        assert max(final_counts) == 40
        assert session_repo.sessions["s1"].event_count == 40


# ==============================================================================
# Lane failures
# ==============================================================================


class TestLaneFailure:
    """A failing lane aborts the batch without committing."""

    @staticmethod
    def _failing_pipeline(fail_partition: int, seen: list):
        pipeline = MagicMock()

        def _process_partition(records):
            seen.append(records[0].partition)
            if records[0].partition == fail_partition:
                raise RuntimeError("database unavailable")
            return []

        pipeline.process_partition.side_effect = _process_partition
        return pipeline

    def test_no_commit_when_a_lane_fails(self, make_consumer, make_record):
        seen = []
        consumer, kafka_consumer = make_consumer(self._failing_pipeline(1, seen))
        kafka_consumer.poll.return_value = {
            TP0: [make_record(b"{}", offset=0)],
            TP1: [make_record(b"{}", offset=0, partition=1)],
        }

        with pytest.raises(LaneFailure) as exc_info:
            consumer.poll_once()

        kafka_consumer.commit.assert_not_called()
        assert list(exc_info.value.failures) == [TP1]
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "clickstream-1" in str(exc_info.value)

    def test_other_lanes_finish_before_raising(self, make_consumer, make_record):
        seen = []
        consumer, kafka_consumer = make_consumer(self._failing_pipeline(0, seen))
        kafka_consumer.poll.return_value = {
            TP0: [make_record(b"{}", offset=0)],
            TP1: [make_record(b"{}", offset=0, partition=1)],
        }

        with pytest.raises(LaneFailure):
            consumer.poll_once()

        assert sorted(seen) == [0, 1]

    def test_run_reraises_and_closes(self, make_consumer, make_record):
        seen = []
        consumer, kafka_consumer = make_consumer(self._failing_pipeline(0, seen))
        kafka_consumer.poll.return_value = {TP0: [make_record(b"{}")]}

        with pytest.raises(LaneFailure):
            consumer.run()

        kafka_consumer.commit.assert_not_called()
        kafka_consumer.close.assert_called_once_with(autocommit=False)


# ==============================================================================
# Run loop and shutdown
# ==============================================================================


class TestRunAndShutdown:
    """Tests for run(), stop() and close()."""

    def test_drains_in_flight_batch_then_stops(self, make_consumer, make_record, event_repo):
        shutdown = ShutdownSignal()
        consumer, kafka_consumer = make_consumer(shutdown=shutdown)
        batch = {TP0: [make_record(_payload("2024-01-01T00:00:00Z"))]}

        def _poll(**kwargs):
            shutdown.request("test")
            return batch

        kafka_consumer.poll.side_effect = _poll

        consumer.run()

        assert len(event_repo.rows) == 1
        kafka_consumer.commit.assert_called_once()
        kafka_consumer.close.assert_called_once_with(autocommit=False)

    def test_no_poll_after_shutdown_requested(self, make_consumer):
        shutdown = ShutdownSignal()
        shutdown.request("before start")
        consumer, kafka_consumer = make_consumer(shutdown=shutdown)

        consumer.run()

        kafka_consumer.poll.assert_not_called()
        kafka_consumer.close.assert_called_once_with(autocommit=False)

    def test_stop_requests_shutdown(self, make_consumer):
        consumer, _ = make_consumer()

        consumer.stop()

        assert consumer.shutdown.requested
        assert consumer.shutdown.reason == "stop() called"

    def test_close_releases_resources_in_order(self, make_consumer):
        consumer, kafka_consumer = make_consumer()
        order = []
        kafka_consumer.close.side_effect = lambda **kw: order.append("consumer")
        consumer._dead_letters = MagicMock()
        consumer._dead_letters.close.side_effect = lambda: order.append("dead_letters")
        consumer._pool = MagicMock()
        consumer._pool.close.side_effect = lambda: order.append("pool")

        consumer.close()

        assert order == ["consumer", "dead_letters", "pool"]

    def test_close_is_idempotent(self, make_consumer):
        consumer, kafka_consumer = make_consumer()

        consumer.close()
        consumer.close()

        kafka_consumer.close.assert_called_once()

    def test_graceful_close_waits_for_lanes(self, make_consumer):
        consumer, _ = make_consumer()
        consumer._executor.shutdown()
        executor = consumer._executor = MagicMock()

        consumer.close()

        executor.shutdown.assert_called_once_with(wait=True, cancel_futures=False)

    def test_forced_shutdown_does_not_wait_for_running_lane(self, make_consumer, make_record):
        started = threading.Event()
        release = threading.Event()
        finished = threading.Event()

        def _stuck_lane(records):
            started.set()
            release.wait(timeout=10)
            finished.set()
            return []

        stuck = MagicMock()
        stuck.process_partition.side_effect = _stuck_lane
        consumer, kafka_consumer = make_consumer(stuck)
        kafka_consumer.poll.return_value = {TP0: [make_record(b"{}")]}

        def _interrupted(futures):
            started.wait(timeout=5)
            raise KeyboardInterrupt

        try:
            with patch(f"{MODULE}.wait", side_effect=_interrupted):
                with pytest.raises(KeyboardInterrupt):
                    consumer.run()

            assert not finished.is_set()
            kafka_consumer.commit.assert_not_called()
            kafka_consumer.close.assert_called_once_with(autocommit=False)
        finally:
            release.set()

    def test_final_summary_logged(self, make_consumer, caplog):
        consumer, _ = make_consumer()

        with caplog.at_level(logging.INFO):
            consumer.close()

        assert "Final: no messages processed" in caplog.text
        assert "Session consumer shutdown complete." in caplog.text


# ==============================================================================
# setup()
# ==============================================================================


class TestSetup:
    """Tests for wiring collaborators from settings."""

    def test_builds_pipeline_and_subscribes(self, settings):
        settings = settings.model_copy(
            update={
                "kafka": KafkaSettings(KAFKA_BROKERS="localhost:9092", dead_letter_topic="dlq")
            }
        )
        with (
            patch(f"{MODULE}.open_pool") as mock_open_pool,
            patch(f"{MODULE}.create_consumer") as mock_create_consumer,
            patch(f"{MODULE}.DeadLetterPublisher") as mock_publisher,
        ):
            consumer = SessionConsumer(settings, ShutdownSignal())
            consumer.setup()
            consumer.close()

        mock_open_pool.assert_called_once_with(settings.postgres)
        mock_create_consumer.assert_called_once_with(settings.kafka, settings.consumer.batch_size)
        mock_publisher.assert_called_once_with("dlq", settings.kafka)

        kafka_consumer = mock_create_consumer.return_value
        topics = kafka_consumer.subscribe.call_args.args[0]
        listener = kafka_consumer.subscribe.call_args.kwargs["listener"]
        assert topics == ["clickstream"]
        assert isinstance(listener, _RebalanceListener)

        mock_open_pool.return_value.close.assert_called_once()
        mock_publisher.return_value.close.assert_called_once()

    def test_no_dead_letter_publisher_by_default(self, settings):
        with (
            patch(f"{MODULE}.open_pool"),
            patch(f"{MODULE}.create_consumer"),
            patch(f"{MODULE}.DeadLetterPublisher") as mock_publisher,
        ):
            consumer = SessionConsumer(settings, ShutdownSignal())
            consumer.setup()
            consumer.close()

        mock_publisher.assert_not_called()

    def test_pool_failure_propagates(self, settings):
        with (
            patch(f"{MODULE}.open_pool", side_effect=RuntimeError("no database")),
            patch(f"{MODULE}.create_consumer") as mock_create_consumer,
        ):
            consumer = SessionConsumer(settings, ShutdownSignal())
            with pytest.raises(RuntimeError, match="no database"):
                consumer.setup()

        mock_create_consumer.assert_not_called()

    def test_version_names_client_library(self, settings):
        consumer = SessionConsumer(settings, ShutdownSignal(), kafka_consumer=MagicMock())
        assert consumer.version.startswith("kafka-python v")


# ==============================================================================
# Rebalances and lag
# ==============================================================================


class TestRebalanceAndLag:
    """Tests for the rebalance listener and lag logging."""

    def test_assignment_counted(self, progress, caplog):
        listener = _RebalanceListener(progress)

        with caplog.at_level(logging.INFO, logger=MODULE):
            listener.on_partitions_assigned({TP0, TP1})
            listener.on_partitions_revoked({TP0})

        assert progress.snapshot().rebalances == 1
        assert "Assigned 2 partitions" in caplog.text
        assert "Revoked 1 partitions" in caplog.text

    def test_consumer_lag_logged(self, make_consumer, caplog):
        consumer, kafka_consumer = make_consumer()
        kafka_consumer.assignment.return_value = {TP0, TP1}
        kafka_consumer.end_offsets.return_value = {TP0: 100, TP1: 50}
        kafka_consumer.position.side_effect = lambda tp: {TP0: 40, TP1: 50}[tp]

        with caplog.at_level(logging.INFO, logger=MODULE):
            consumer._log_consumer_lag()

        assert "Consumer lag: p0=60 p1=0 | total=60" in caplog.text

    def test_no_lag_line_without_assignment(self, make_consumer, caplog):
        consumer, kafka_consumer = make_consumer()
        kafka_consumer.assignment.return_value = set()

        with caplog.at_level(logging.INFO, logger=MODULE):
            consumer._log_consumer_lag()

        assert "Consumer lag" not in caplog.text
