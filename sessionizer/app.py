# ==============================================================================
# Sessionizer CLI
# ==============================================================================
"""
Command-line interface for the clickstream session ingestion service.

Usage:
    sessionizer --help
    sessionizer consume
    sessionizer check
    sessionizer config show [--json]
"""

import os
from typing import Annotated

import typer

from sessionizer.utils.versions import get_sessionizer_version

if "COLUMNS" not in os.environ:
    os.environ["COLUMNS"] = "115"

app = typer.Typer(
    name="sessionizer",
    help="Clickstream session ingestion CLI",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        print(f"sessionizer {get_sessionizer_version()}")
        raise typer.Exit()


@app.callback()
def _root(
    version: Annotated[
        bool,
        typer.Option(
            "--version", "-V", help="Show version and exit", is_eager=True,
            callback=_version_callback,
        ),
    ] = False,
) -> None:
    """Clickstream session ingestion CLI"""


from sessionizer.cli.check import check
from sessionizer.cli.consume import consume

app.command("consume")(consume)
app.command("check")(check)

config_app = typer.Typer(
    help="Configuration management",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")

from sessionizer.cli.config import config_show

config_app.command("show")(config_show)


# ==============================================================================
# Entry Point
# ==============================================================================


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
