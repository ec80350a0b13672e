"""Shared helpers for the engine CLI commands.

Verbose logging setup and authenticated client construction from the
environment plus the ``polymarket`` configuration section.
"""

import logging
import os

import typer

from updown_engine.clients.polymarket import PolymarketClient
from updown_engine.core.config import ConfigLoader, get_config


def configure_verbose_logging() -> None:
    """Enable INFO-level logging for cycle-by-cycle engine output."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(message)s",
        datefmt="%H:%M:%S",
    )


def audit_db_url(loader: ConfigLoader | None = None) -> str:
    """Return the audit database URL from configuration."""
    loader = loader or get_config()
    return str(loader.get("audit.db_url", "sqlite+aiosqlite:///updown_audit.db"))


def build_authenticated_client(loader: ConfigLoader | None = None) -> PolymarketClient:
    """Build an authenticated PolymarketClient from environment variables.

    Read the private key and optional API credentials from the environment
    and endpoints from the ``polymarket`` config section.  Abort with an
    error if the private key is not set.

    Args:
        loader: Configuration to read endpoints from; the global one by default.

    Returns:
        Authenticated PolymarketClient ready for trading and redemption.

    """
    private_key = os.environ.get("POLYMARKET_PRIVATE_KEY", "")
    if not private_key:
        typer.echo("Error: POLYMARKET_PRIVATE_KEY environment variable is required.", err=True)
        raise typer.Exit(code=1)

    section = (loader or get_config()).get_section("polymarket")
    rpc_urls = tuple(str(u) for u in section.get("rpc_urls") or ())

    return PolymarketClient(
        host=str(section.get("clob_host") or PolymarketClient.CLOB_HOST),
        data_api_url=str(section.get("data_api_url") or PolymarketClient.DATA_API_URL),
        private_key=private_key,
        api_key=os.environ.get("POLYMARKET_API_KEY") or None,
        api_secret=os.environ.get("POLYMARKET_API_SECRET") or None,
        api_passphrase=os.environ.get("POLYMARKET_API_PASSPHRASE") or None,
        funder_address=os.environ.get("POLYMARKET_FUNDER_ADDRESS") or None,
        rpc_urls=rpc_urls or PolymarketClient.RPC_URLS,
    )
