# ==============================================================================
# Check Command
# ==============================================================================
"""
Connectivity check for the configured Kafka cluster and PostgreSQL database.
"""

import typer
from rich.console import Console
from rich.table import Table

from sessionizer.cli.shared import EXIT_CONFIG_ERROR, EXIT_RUNTIME_ERROR, C, I, mask_dsn
from sessionizer.infrastructure.kafka import check_kafka_connection
from sessionizer.infrastructure.repositories.postgresql import check_postgresql_connection
from sessionizer.utils.config import ConfigurationError, get_settings


def check() -> None:
    """Check that Kafka and PostgreSQL are reachable."""
    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"{C.BRIGHT_RED}{I.CROSS} {e}{C.RESET}")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    results = [
        (
            "Kafka",
            ", ".join(settings.kafka.broker_list),
            check_kafka_connection(settings.kafka),
        ),
        (
            "PostgreSQL",
            mask_dsn(settings.postgres.dsn),
            check_postgresql_connection(settings.postgres),
        ),
    ]

    console = Console()
    table = Table(title="Connectivity", show_header=True, header_style="bold")
    table.add_column("Service")
    table.add_column("Target")
    table.add_column("Status")

    for name, target, ok in results:
        if ok:
            status = f"[green]{I.CHECK} reachable[/green]"
        else:
            status = f"[red]{I.CROSS} unreachable[/red]"
        table.add_row(name, target, status)

    print()
    console.print(table)
    print()

    if not all(ok for _, _, ok in results):
        raise typer.Exit(EXIT_RUNTIME_ERROR)
