# ==============================================================================
# Sessionizer Utilities
# ==============================================================================
"""
Shared utilities: configuration, retry policies, shutdown coordination.
"""

from sessionizer.utils.config import (
    ConfigurationError,
    ConsumerSettings,
    KafkaSettings,
    PostgresSettings,
    Settings,
    get_settings,
)
from sessionizer.utils.shutdown import ShutdownSignal

__all__ = [
    "ConfigurationError",
    "ConsumerSettings",
    "KafkaSettings",
    "PostgresSettings",
    "Settings",
    "ShutdownSignal",
    "get_settings",
]
