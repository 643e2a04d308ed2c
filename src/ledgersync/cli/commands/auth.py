"""Accounting system authorization commands for LedgerSync CLI.

The accounting API uses the OAuth2 authorization code flow. Consent is given
once in a browser; afterwards the stored refresh token is rotated
automatically on every sync.
"""

import logging

import typer

from ledgersync.config import get_settings
from ledgersync.sync.manager import build_token_manager, save_token

app = typer.Typer(help="Authorize access to the accounting system")
logger = logging.getLogger(__name__)


@app.command("url")
def auth_url(
    state: str | None = typer.Option(
        None, "--state", help="State value to embed (default: random)"
    ),
) -> None:
    """Print the consent URL to open in a browser."""
    settings = get_settings()
    if not settings.accounting.client_id:
        logger.error("❌ LEDGERSYNC_ACCOUNTING__CLIENT_ID is not configured")
        raise typer.Exit(1)

    manager = build_token_manager(settings)
    try:
        url, state = manager.authorization_url(state)
    finally:
        manager.close()

    print(url)
    logger.info(f"Verify the callback carries state={state}")
    logger.info("Then run: ledgersync auth exchange <code>")


@app.command("exchange")
def auth_exchange(
    code: str = typer.Argument(..., help="Authorization code from the callback URL"),
    save: bool = typer.Option(
        False, "--save", help="Write the tokens to the profile's env file"
    ),
) -> None:
    """Exchange an authorization code for access and refresh tokens."""
    settings = get_settings()
    if not (settings.accounting.client_id and settings.accounting.client_secret):
        logger.error("❌ Accounting client ID and secret must be configured")
        raise typer.Exit(1)

    manager = build_token_manager(settings)
    # Persisted below only when asked
    manager.on_refresh = None
    try:
        token = manager.exchange_code(code)
    except Exception as e:
        logger.error(f"❌ Code exchange failed: {e}")
        raise typer.Exit(1) from e
    finally:
        manager.close()

    print(f"LEDGERSYNC_ACCOUNTING__REFRESH_TOKEN={token.refresh_token}")
    if token.expires_at:
        print(f"# Access token expires at {token.expires_at.isoformat()}")

    if save:
        env_file = settings.env_file_path()
        try:
            save_token(env_file, token)
        except OSError as e:
            logger.error(f"❌ Could not write {env_file}: {e}")
            raise typer.Exit(1) from e
    else:
        logger.info("Store the refresh token in your env file, or rerun with --save")
