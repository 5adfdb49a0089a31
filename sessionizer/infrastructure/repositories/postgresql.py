# ==============================================================================
# PostgreSQL Repository Implementations
# ==============================================================================
"""
PostgreSQL implementations of the repository interfaces.

Provides:
- PostgreSQLConnectionPool: Bounded, blocking pool shared by all partition lanes
- PostgreSQLEventRepository: Idempotent event inserts (ON CONFLICT DO NOTHING)
- PostgreSQLSessionRepository: Full-recompute session upserts

The pool is owned by whoever opens it (the consumer). Repositories borrow
connections per operation and never close the pool themselves.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from sessionizer.base.repositories import EventRepository, SessionRepository
from sessionizer.core.models import ClickEvent, EventType, SessionRollup
from sessionizer.core.session_aggregator import EmptySessionError
from sessionizer.utils.config import PostgresSettings, get_settings
from sessionizer.utils.paths import resolve_path
from sessionizer.utils.retry import POSTGRES_RETRY_EXCEPTIONS, retry_light, retry_standard

logger = logging.getLogger(__name__)

EVENTS_TABLE = "clickstream_events"
SESSIONS_TABLE = "clickstream_sessions"

APPLICATION_NAME = "sessionizer"


def build_connect_kwargs(settings: PostgresSettings) -> dict:
    """
    Build psycopg2.connect() keyword arguments from settings.

    libpq merges these with the DSN; keyword values win on conflict.
    """
    kwargs: dict = {
        "dsn": settings.dsn,
        "connect_timeout": settings.connect_timeout,
        "application_name": APPLICATION_NAME,
    }
    if settings.statement_timeout_ms > 0:
        kwargs["options"] = f"-c statement_timeout={settings.statement_timeout_ms}"

    if settings.ssl_insecure:
        # Encrypted, certificate not verified
        kwargs["sslmode"] = "require"
    elif settings.ca_cert_path:
        kwargs["sslmode"] = "verify-full"
        kwargs["sslrootcert"] = str(resolve_path(settings.ca_cert_path))

    return kwargs


class PostgreSQLConnectionPool:
    """
    Bounded connection pool shared across partition lanes.

    psycopg2's ThreadedConnectionPool raises PoolError when exhausted; this
    wrapper blocks instead, so pool size caps concurrent database work and
    acts as backpressure when the store is slower than the broker.
    """

    def __init__(self, settings: PostgresSettings | None = None):
        self._settings = settings or get_settings().postgres
        self._size = self._settings.pool_size
        self._slots = threading.BoundedSemaphore(self._size)
        self._pool: ThreadedConnectionPool | None = None

    @property
    def size(self) -> int:
        """Maximum number of pooled connections."""
        return self._size

    @property
    def schema(self) -> str:
        """Schema holding the events and sessions tables."""
        return self._settings.schema_name

    @property
    def is_open(self) -> bool:
        return self._pool is not None and not self._pool.closed

    def open(self) -> None:
        """Create the pool and its first connection."""
        if self.is_open:
            return
        self._pool = ThreadedConnectionPool(1, self._size, **build_connect_kwargs(self._settings))
        logger.info(
            "PostgreSQL pool opened (size=%d, schema=%s, statement_timeout=%dms)",
            self._size,
            self.schema,
            self._settings.statement_timeout_ms,
        )

    @contextmanager
    def connection(self) -> Iterator["psycopg2.extensions.connection"]:
        """
        Borrow a connection for one transaction.

        Commits when the block exits normally and rolls back otherwise.
        Connections that failed at the transport level are discarded.
        """
        if self._pool is None:
            raise RuntimeError("PostgreSQL pool not open. Call open() first.")

        self._slots.acquire()
        try:
            conn = self._pool.getconn()
            discard = False
            try:
                yield conn
                conn.commit()
            except BaseException as e:
                discard = bool(conn.closed) or isinstance(e, POSTGRES_RETRY_EXCEPTIONS)
                if not conn.closed:
                    try:
                        conn.rollback()
                    except psycopg2.Error:
                        discard = True
                raise
            finally:
                self._pool.putconn(conn, close=discard)
        finally:
            self._slots.release()

    def close(self) -> None:
        """Close every pooled connection."""
        if self._pool is not None and not self._pool.closed:
            self._pool.closeall()
            logger.info("PostgreSQL pool closed")
        self._pool = None

    def __enter__(self) -> "PostgreSQLConnectionPool":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class PostgreSQLEventRepository(EventRepository):
    """
    PostgreSQL implementation of EventRepository.

    Uses INSERT ... ON CONFLICT (event_id) DO NOTHING so a redelivered event
    never produces a second row. The events table carries a unique
    constraint on event_id; rows without one (plain-append mode) are not
    deduplicated.
    """

    def __init__(self, pool: PostgreSQLConnectionPool):
        """
        Initialize the event repository.

        Args:
            pool: Open connection pool, owned by the caller
        """
        self._pool = pool
        schema = pool.schema
        columns = (
            "event_id, ts, user_id, session_id, event_name, "
            "url, referrer, user_agent, revenue, raw_payload"
        )
        values = (
            "%(event_id)s, %(ts)s, %(user_id)s, %(session_id)s, %(event_name)s, "
            "%(url)s, %(referrer)s, %(user_agent)s, %(revenue)s, %(raw_payload)s"
        )
        self._insert_idempotent = (
            f"INSERT INTO {schema}.{EVENTS_TABLE} ({columns}) VALUES ({values}) "
            "ON CONFLICT (event_id) DO NOTHING RETURNING 1"
        )
        self._insert_append = (
            f"INSERT INTO {schema}.{EVENTS_TABLE} ({columns}) VALUES ({values}) RETURNING 1"
        )

    @retry_standard(POSTGRES_RETRY_EXCEPTIONS, logger)
    def save(self, event: ClickEvent) -> bool:
        """
        Persist one event.

        Args:
            event: Validated event

        Returns:
            True if a row was inserted, False if event_id already existed
        """
        record = event.to_db_record()
        if record["raw_payload"] is not None:
            record["raw_payload"] = Json(record["raw_payload"])

        query = self._insert_idempotent if event.event_id else self._insert_append
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, record)
                inserted = cur.fetchone() is not None

        if inserted:
            logger.debug("Stored event %s (session=%s)", event.event_id, event.session_id)
        else:
            logger.debug("Duplicate event %s ignored", event.event_id)
        return inserted


class PostgreSQLSessionRepository(SessionRepository):
    """
    PostgreSQL implementation of SessionRepository.

    Each refresh runs one transaction that:
    1. Takes a transaction-scoped advisory lock keyed on session_id
    2. Aggregates every stored event of the session and upserts the result

    Under READ COMMITTED each statement gets a fresh snapshot, so the
    aggregate statement (run after the lock is granted) sees every event
    committed before any earlier refresh of the same session finished.
    Concurrent refreshes of one session therefore cannot overwrite a newer
    rollup with stale totals.
    """

    def __init__(self, pool: PostgreSQLConnectionPool):
        """
        Initialize the session repository.

        Args:
            pool: Open connection pool, owned by the caller
        """
        self._pool = pool
        schema = pool.schema
        self._lock_query = "SELECT pg_advisory_xact_lock(hashtext(%(session_id)s))"
        self._upsert_query = f"""
            WITH s AS (
                SELECT
                    min(ts) AS session_start,
                    max(ts) AS session_end,
                    count(*)::int AS event_count,
                    count(*) FILTER (WHERE event_name = %(page_view)s)::int AS pageviews,
                    count(*) FILTER (WHERE event_name = %(checkout)s)::int AS conversions,
                    coalesce(sum(revenue), 0)::numeric(18, 2) AS revenue_total
                FROM {schema}.{EVENTS_TABLE}
                WHERE session_id = %(session_id)s
            )
            INSERT INTO {schema}.{SESSIONS_TABLE} (
                session_id, user_id, session_start, session_end,
                event_count, pageviews, conversions, revenue_total, last_updated_at
            )
            SELECT
                %(session_id)s, %(user_id)s, session_start, session_end,
                event_count, pageviews, conversions, revenue_total, now()
            FROM s
            WHERE event_count > 0
            ON CONFLICT (session_id) DO UPDATE SET
                session_start = EXCLUDED.session_start,
                session_end = EXCLUDED.session_end,
                event_count = EXCLUDED.event_count,
                pageviews = EXCLUDED.pageviews,
                conversions = EXCLUDED.conversions,
                revenue_total = EXCLUDED.revenue_total,
                last_updated_at = EXCLUDED.last_updated_at
            RETURNING
                session_id, user_id, session_start, session_end,
                event_count, pageviews, conversions, revenue_total, last_updated_at
        """

    @retry_standard(POSTGRES_RETRY_EXCEPTIONS, logger)
    def refresh(self, session_id: str, user_id: str) -> SessionRollup:
        """
        Recompute and upsert one session rollup.

        Args:
            session_id: Session to refresh
            user_id: Owner recorded when the row is first created

        Returns:
            The rollup as written

        Raises:
            EmptySessionError: If the session has no stored events
        """
        params = {
            "session_id": session_id,
            "user_id": user_id,
            "page_view": EventType.PAGE_VIEW.value,
            "checkout": EventType.CHECKOUT.value,
        }
        with self._pool.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(self._lock_query, params)
                cur.execute(self._upsert_query, params)
                row = cur.fetchone()

        if row is None:
            raise EmptySessionError(f"no events stored for session {session_id!r}")

        rollup = SessionRollup.from_db_row(dict(row))
        logger.debug(
            "Refreshed session %s: events=%d pageviews=%d conversions=%d revenue=%s duration=%ds",
            session_id,
            rollup.event_count,
            rollup.pageviews,
            rollup.conversions,
            rollup.revenue_total,
            rollup.duration_seconds,
        )
        return rollup


def check_postgresql_connection(settings: PostgresSettings | None = None) -> bool:
    """
    Check if PostgreSQL is reachable.

    Args:
        settings: PostgreSQL settings. If None, uses get_settings().

    Returns:
        True if connection successful, False otherwise
    """
    settings = settings or get_settings().postgres
    try:
        conn = psycopg2.connect(**build_connect_kwargs(settings))
        conn.close()
        return True
    except psycopg2.Error as e:
        logger.debug("PostgreSQL connection check failed: %s", e)
        return False


@retry_light(POSTGRES_RETRY_EXCEPTIONS, logger)
def open_pool(settings: PostgresSettings | None = None) -> PostgreSQLConnectionPool:
    """
    Open a connection pool, retrying briefly on connection errors.

    Raises:
        psycopg2.OperationalError: If the database stays unreachable
    """
    pool = PostgreSQLConnectionPool(settings)
    pool.open()
    return pool
