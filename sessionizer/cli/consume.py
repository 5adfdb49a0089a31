# ==============================================================================
# Consume Command
# ==============================================================================
"""
Foreground entry point for the session consumer.

Exit codes:
    0  clean shutdown (SIGINT/SIGTERM, in-flight batch drained)
    1  connectivity failure at startup or a fatal runtime error
    2  missing or invalid configuration
"""

import logging
from typing import Annotated, Optional

import psycopg2
import typer
from kafka.errors import KafkaError

from sessionizer.cli.shared import (
    EXIT_CONFIG_ERROR,
    EXIT_RUNTIME_ERROR,
    C,
    I,
    configure_logging,
)
from sessionizer.consumers import SessionConsumer
from sessionizer.utils.config import ConfigurationError, get_settings
from sessionizer.utils.shutdown import (
    ShutdownSignal,
    install_signal_handlers,
    restore_signal_handlers,
)

logger = logging.getLogger("sessionizer.consume")


def consume(
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", "-l", help="Override LOG_LEVEL (DEBUG, INFO, ...)"),
    ] = None,
) -> None:
    """Consume click events, store them and maintain session rollups."""
    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"{C.BRIGHT_RED}{I.CROSS} {e}{C.RESET}")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    configure_logging(log_level or settings.log_level)

    shutdown = ShutdownSignal()
    previous_handlers = install_signal_handlers(shutdown)
    consumer = SessionConsumer(settings, shutdown)
    try:
        try:
            consumer.setup()
        except (psycopg2.Error, KafkaError) as e:
            logger.error("Startup failed: %s", e)
            consumer.close()
            raise typer.Exit(EXIT_RUNTIME_ERROR)

        try:
            consumer.run()
        except KeyboardInterrupt:
            logger.error("Forced shutdown before the in-flight batch was drained")
            raise typer.Exit(EXIT_RUNTIME_ERROR)
        except Exception as e:
            logger.error("Consumer terminated: %s", e)
            raise typer.Exit(EXIT_RUNTIME_ERROR)
    finally:
        restore_signal_handlers(previous_handlers)
