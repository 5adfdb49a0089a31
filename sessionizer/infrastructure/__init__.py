# ==============================================================================
# Infrastructure Adapters
# ==============================================================================
"""
Adapters for external services (ports-and-adapters architecture).

- kafka.py - Kafka client configuration, connectivity checks, dead letters
- repositories/ - Database adapters (PostgreSQL)
"""

from sessionizer.infrastructure.kafka import (
    DeadLetterPublisher,
    build_kafka_config,
    check_kafka_connection,
    create_consumer,
    parse_brokers,
)
from sessionizer.infrastructure.repositories import (
    PostgreSQLConnectionPool,
    PostgreSQLEventRepository,
    PostgreSQLSessionRepository,
    check_postgresql_connection,
    open_pool,
)

__all__ = [
    # Kafka
    "DeadLetterPublisher",
    "build_kafka_config",
    "check_kafka_connection",
    "create_consumer",
    "parse_brokers",
    # Repositories
    "PostgreSQLConnectionPool",
    "PostgreSQLEventRepository",
    "PostgreSQLSessionRepository",
    "check_postgresql_connection",
    "open_pool",
]
