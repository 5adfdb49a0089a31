# ==============================================================================
# Progress Reporter
# ==============================================================================
"""
Counters and periodic throughput logging for the ingestion pipeline.

Partition lanes update counters concurrently, so every mutation happens
under one lock. Logging never affects correctness; a failing on_summary
callback is logged at DEBUG and otherwise ignored.

Logs:
- A progress line every `progress_every` stored events
- Per-batch timing (poll / process / commit) at DEBUG
- A periodic throughput summary (default every 30s)
- A final summary on shutdown
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass

logger = logging.getLogger(__name__)


@dataclass
class ProgressCounters:
    """Cumulative pipeline counters."""

    received: int = 0
    stored: int = 0
    duplicates: int = 0
    rejected: int = 0
    dead_lettered: int = 0
    sessions_refreshed: int = 0
    failed: int = 0
    batches: int = 0
    rebalances: int = 0


class ProgressReporter:
    """Thread-safe pipeline counters with periodic summaries."""

    def __init__(
        self,
        progress_every: int = 250,
        summary_interval_seconds: float = 30.0,
        on_summary: Callable[[], None] | None = None,
        log: logging.Logger | None = None,
    ):
        """
        Initialize the reporter.

        Args:
            progress_every: Log a progress line every N stored events
            summary_interval_seconds: How often to log throughput summaries
            on_summary: Optional callback invoked during periodic summaries
                        (e.g., for consumer lag logging from the caller)
            log: Optional logger override. Defaults to this module's logger.
        """
        self._progress_every = progress_every
        self._summary_interval = summary_interval_seconds
        self._on_summary = on_summary
        self._log = log or logger
        self._lock = threading.Lock()

        self._totals = ProgressCounters()
        self._start_time = time.monotonic()

        # Period stats (reset each summary interval)
        self._period_received = 0
        self._period_batches = 0
        self._period_poll_ms = 0.0
        self._period_process_ms = 0.0
        self._period_commit_ms = 0.0
        self._last_summary_time = self._start_time

    # ------------------------------------------------------------------
    # Per-message counters (called from partition lanes)
    # ------------------------------------------------------------------

    def record_received(self, count: int = 1) -> None:
        with self._lock:
            self._totals.received += count
            self._period_received += count

    def record_stored(self) -> None:
        with self._lock:
            self._totals.stored += 1
            stored = self._totals.stored
            if stored % self._progress_every != 0:
                return
            duplicates = self._totals.duplicates
            rejected = self._totals.rejected
        self._log.info(
            "Progress: stored=%s duplicates=%s rejected=%s",
            f"{stored:,}",
            f"{duplicates:,}",
            f"{rejected:,}",
        )

    def record_duplicate(self) -> None:
        with self._lock:
            self._totals.duplicates += 1

    def record_rejected(self) -> None:
        with self._lock:
            self._totals.rejected += 1

    def record_dead_lettered(self) -> None:
        with self._lock:
            self._totals.dead_lettered += 1

    def record_session_refreshed(self) -> None:
        with self._lock:
            self._totals.sessions_refreshed += 1

    def record_failure(self) -> None:
        with self._lock:
            self._totals.failed += 1

    # ------------------------------------------------------------------
    # Loop-level timing (called from the consumer thread)
    # ------------------------------------------------------------------

    def record_batch(self, poll_ms: float, process_ms: float, commit_ms: float) -> None:
        """
        Record timings for one poll → process → commit cycle.

        Triggers a periodic summary when the configured interval has elapsed.
        """
        with self._lock:
            self._totals.batches += 1
            self._period_batches += 1
            self._period_poll_ms += poll_ms
            self._period_process_ms += process_ms
            self._period_commit_ms += commit_ms

        self._log.debug(
            "Batch: poll=%.0fms process=%.0fms commit=%.0fms", poll_ms, process_ms, commit_ms
        )
        self.maybe_log_summary()

    def record_rebalance(self) -> None:
        """Record a partition assignment event."""
        with self._lock:
            self._totals.rebalances += 1

    def snapshot(self) -> ProgressCounters:
        """Copy of the cumulative counters."""
        with self._lock:
            return ProgressCounters(**asdict(self._totals))

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def maybe_log_summary(self, now: float | None = None) -> bool:
        """
        Log a throughput summary if the interval has elapsed.

        Returns:
            True if a summary was logged
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            elapsed = now - self._last_summary_time
            if elapsed < self._summary_interval:
                return False
            received = self._period_received
            batches = self._period_batches
            poll_ms = self._period_poll_ms
            process_ms = self._period_process_ms
            commit_ms = self._period_commit_ms
            totals = ProgressCounters(**asdict(self._totals))

            self._period_received = 0
            self._period_batches = 0
            self._period_poll_ms = 0.0
            self._period_process_ms = 0.0
            self._period_commit_ms = 0.0
            self._last_summary_time = now

        rate = received / elapsed if elapsed > 0 else 0.0
        if batches:
            self._log.info(
                "Throughput (%.1fs): %s msgs/sec | batches=%d | "
                "avg_poll=%.0fms avg_process=%.0fms avg_commit=%.0fms",
                elapsed,
                f"{rate:,.0f}",
                batches,
                poll_ms / batches,
                process_ms / batches,
                commit_ms / batches,
            )
        self._log.info(
            "Cumulative: received=%s stored=%s duplicates=%s rejected=%s "
            "dead_lettered=%s sessions_refreshed=%s failed=%s",
            f"{totals.received:,}",
            f"{totals.stored:,}",
            f"{totals.duplicates:,}",
            f"{totals.rejected:,}",
            f"{totals.dead_lettered:,}",
            f"{totals.sessions_refreshed:,}",
            f"{totals.failed:,}",
        )

        if self._on_summary:
            try:
                self._on_summary()
            except Exception as e:
                self._log.debug("on_summary callback error: %s", e)
        return True

    def log_final_summary(self) -> None:
        """
        Log final summary on shutdown.

        Should be called from the consumer's finally block.
        """
        totals = self.snapshot()
        elapsed = time.monotonic() - self._start_time
        if totals.received == 0:
            self._log.info("Final: no messages processed (%.1fs elapsed)", elapsed)
            return

        rate = totals.received / elapsed if elapsed > 0 else 0.0
        self._log.info(
            "Final: received=%s stored=%s duplicates=%s rejected=%s dead_lettered=%s "
            "sessions_refreshed=%s failed=%s in %d batches over %.1fs (%s msgs/sec) | "
            "rebalances=%d",
            f"{totals.received:,}",
            f"{totals.stored:,}",
            f"{totals.duplicates:,}",
            f"{totals.rejected:,}",
            f"{totals.dead_lettered:,}",
            f"{totals.sessions_refreshed:,}",
            f"{totals.failed:,}",
            totals.batches,
            elapsed,
            f"{rate:,.0f}",
            totals.rebalances,
        )
