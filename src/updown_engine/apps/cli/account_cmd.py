"""CLI commands for account inspection through the execution client.

``balance`` prints the cached USDC collateral balance and ``cancel`` cancels
a resting order.  Both go through ``OrderExecutionClient`` so they obey the
same throttle and Cloudflare cooldown as the trading engine.
"""

import asyncio
from typing import Annotated

import typer

from updown_engine.apps.cli._helpers import build_authenticated_client
from updown_engine.apps.trader.config import execution_config_from
from updown_engine.apps.trader.execution import OrderExecutionClient
from updown_engine.core.config import get_config


def balance() -> None:
    """Display the USDC collateral balance for the authenticated wallet."""
    asyncio.run(_balance())


async def _balance() -> None:
    loader = get_config()
    client = build_authenticated_client(loader)
    async with client:
        executor = OrderExecutionClient(client, execution_config_from(loader))
        value = await executor.get_balance()

    if value is None:
        typer.echo("Error: balance unavailable", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"\nUSDC Balance: {value}")


def cancel(
    order_id: Annotated[str, typer.Option(help="ID of the order to cancel")],
) -> None:
    """Cancel an open order by its ID.

    Args:
        order_id: Identifier of the order to cancel.

    """
    asyncio.run(_cancel(order_id=order_id))


async def _cancel(*, order_id: str) -> None:
    loader = get_config()
    client = build_authenticated_client(loader)
    async with client:
        executor = OrderExecutionClient(client, execution_config_from(loader))
        cancelled = await executor.cancel_order(order_id)

    if not cancelled:
        typer.echo(f"Error: order {order_id} was not cancelled", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"\nOrder cancelled: {order_id}")
