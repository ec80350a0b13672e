"""CLI subpackage for the up/down trading engine.

Create the Typer application and register all command modules.
"""

import typer

from updown_engine.apps.cli.account_cmd import balance, cancel
from updown_engine.apps.cli.claim_cmd import claim, claim_stats

app = typer.Typer(help="Polymarket up/down trading engine tools")

app.command()(balance)
app.command()(cancel)
app.command()(claim)
app.command(name="claim-stats")(claim_stats)

__all__ = ["app"]
