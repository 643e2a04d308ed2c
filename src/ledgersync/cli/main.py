"""Main CLI application for LedgerSync.

This module provides the unified entry point for all LedgerSync CLI operations,
organizing commands into sync, mappings and auth groups.
"""

import logging
from typing import Annotated

import typer

from ..config import set_current_profile
from ..logging import setup_logging
from .commands import auth, mappings, sync

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="ledgersync",
    help="LedgerSync: Sync reconciled budget transactions into your accounting system",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    profile: Annotated[
        str,
        typer.Option(
            "--profile",
            "-p",
            help="Configuration profile to use (loads .env.{profile}). Default: default",
            envvar="LEDGERSYNC_PROFILE",
        ),
    ] = "default",
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable verbose debug logging",
        ),
    ] = False,
) -> None:
    """Global options for LedgerSync CLI.

    Each profile loads its credentials from a .env.{profile} file, falling
    back to .env. Use profiles to keep separate budgets or organisations apart.

    Examples:
      ledgersync sync run --dry-run            # Preview a sync
      ledgersync --profile=prod sync run --live
      ledgersync sync reprocess --limit 100

    Can also be set via LEDGERSYNC_PROFILE environment variable.
    """
    setup_logging(cli_mode=True, verbose=verbose)

    try:
        set_current_profile(profile)
    except ValueError as e:
        logger.error(f"❌ {e}")
        raise typer.BadParameter(
            f"Invalid profile name: {profile}. "
            "Use only alphanumeric characters, dashes, and underscores"
        ) from e

    logger.debug(f"👤 Using profile: {profile}")


app.add_typer(sync.app, name="sync", help="Sync, reprocess and report on transactions")
app.add_typer(auth.app, name="auth", help="Authorize access to the accounting system")
app.add_typer(mappings.app, name="mappings", help="Maintain category and payee mappings")


def main() -> None:
    """Entry point for the LedgerSync CLI application."""
    app()


if __name__ == "__main__":
    main()
