"""CLI commands for on-chain redemption of settled positions.

``claim`` runs one redemption cycle, or keeps cycling with ``--loop`` until
SIGINT/SIGTERM.  Every attempt is written to the audit database, and
claims confirmed in earlier runs are loaded from it first so nothing is
redeemed twice.  ``claim-stats`` summarises confirmed claims from the same
database.
"""

import asyncio
import signal
from typing import Annotated

import typer

from updown_engine.apps.audit.emitter import AuditEmitter
from updown_engine.apps.audit.repository import AuditRepository
from updown_engine.apps.cli._helpers import (
    audit_db_url,
    build_authenticated_client,
    configure_verbose_logging,
)
from updown_engine.apps.redeemer.engine import ClaimRedemptionEngine
from updown_engine.apps.redeemer.models import CycleResult, redeemer_config_from
from updown_engine.core.config import get_config
from updown_engine.core.models import ZERO


def claim(
    loop: Annotated[  # noqa: FBT002
        bool, typer.Option("--loop", help="Keep claiming on the configured interval")
    ] = False,
    db_url: Annotated[
        str | None, typer.Option("--db-url", help="Audit database URL override")
    ] = None,
    verbose: Annotated[  # noqa: FBT002
        bool, typer.Option("--verbose", "-v", help="Log each attempt")
    ] = False,
) -> None:
    """Redeem every settled, redeemable position above the value floor.

    Args:
        loop: Run until interrupted instead of a single cycle.
        db_url: Audit database URL; defaults to ``audit.db_url``.
        verbose: Enable INFO-level logging.

    """
    if verbose or loop:
        configure_verbose_logging()
    asyncio.run(_claim(loop=loop, db_url=db_url or audit_db_url()))


async def _claim(*, loop: bool, db_url: str) -> None:
    loader = get_config()
    client = build_authenticated_client(loader)
    repo = AuditRepository(db_url)
    emitter = AuditEmitter(repo)
    await emitter.start()
    engine = ClaimRedemptionEngine(
        client, redeemer_config_from(loader), audit=emitter, store=repo
    )
    try:
        async with client:
            if loop:
                await _run_until_signal(engine)
            else:
                await engine.load_confirmed()
                _echo_cycle(await engine.run_cycle())
    finally:
        await emitter.stop()
        await repo.close()


async def _run_until_signal(engine: ClaimRedemptionEngine) -> None:
    stop = asyncio.Event()
    event_loop = asyncio.get_running_loop()
    event_loop.add_signal_handler(signal.SIGINT, stop.set)
    event_loop.add_signal_handler(signal.SIGTERM, stop.set)
    await engine.start()
    try:
        await stop.wait()
    finally:
        await engine.stop()
    stats = engine.get_claim_stats()
    typer.echo(
        f"\nConfirmed: {stats.confirmed}  Pending: {stats.pending_retries}  "
        f"Abandoned: {stats.abandoned}  Claimed: ${stats.total_claimed_usd}"
    )


def _echo_cycle(result: CycleResult) -> None:
    if result.skipped:
        typer.echo("\nAnother redemption cycle is already running.")
        return
    if not result.attempted:
        typer.echo(f"\nNo claimable positions ({result.candidates} candidates).")
        return
    typer.echo(f"\nAttempted {result.attempted} redemption(s):")
    for outcome in result.outcomes:
        if outcome.success:
            typer.echo(f"  OK   {outcome.condition_id[:20]}... ${outcome.payout_usd}")
        else:
            kind = outcome.error_kind.value if outcome.error_kind else "unknown"
            typer.echo(f"  FAIL {outcome.condition_id[:20]}... [{kind}] {outcome.error}")
    typer.echo(
        f"\nConfirmed {result.confirmed}/{result.attempted}, "
        f"claimed ${result.total_payout_usd}"
    )


def claim_stats(
    db_url: Annotated[
        str | None, typer.Option("--db-url", help="Audit database URL override")
    ] = None,
) -> None:
    """Summarise confirmed claims recorded in the audit database.

    Args:
        db_url: Audit database URL; defaults to ``audit.db_url``.

    """
    asyncio.run(_claim_stats(db_url or audit_db_url()))


async def _claim_stats(db_url: str) -> None:
    repo = AuditRepository(db_url)
    try:
        await repo.init_db()
        records = await repo.get_confirmed_claims()
    finally:
        await repo.close()

    total = sum((r.payout_usd for r in records), ZERO)
    typer.echo(f"\nConfirmed claims: {len(records)}")
    typer.echo(f"Total claimed:    ${total}")
    for record in records[-10:]:
        typer.echo(f"  {record.condition_id[:20]}... ${record.payout_usd} tx={record.tx_hash}")
