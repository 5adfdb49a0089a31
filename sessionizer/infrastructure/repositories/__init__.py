# ==============================================================================
# Database Repository Adapters
# ==============================================================================
"""
Database adapters implementing the repository interfaces from base/repositories.py.

Currently supported:
- PostgreSQL (postgresql.py)
"""

from sessionizer.infrastructure.repositories.postgresql import (
    PostgreSQLConnectionPool,
    PostgreSQLEventRepository,
    PostgreSQLSessionRepository,
    check_postgresql_connection,
    open_pool,
)

__all__ = [
    "PostgreSQLConnectionPool",
    "PostgreSQLEventRepository",
    "PostgreSQLSessionRepository",
    "check_postgresql_connection",
    "open_pool",
]
