import asyncio
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import click
from ape.cli import ape_cli_context
from ape.exceptions import Abort
from ape.logging import logger
from pydantic import ValidationError

from ._click_ext import env_file_callback, session_file_callback
from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from blocklatency.engine import LatencyEngine
    from blocklatency.types import ConfirmationMetrics

LOCAL_DATETIME = "%Y-%m-%d %H:%M:%S %Z"


@click.group()
@click.version_option(message="%(version)s", package_name="blocklatency")
def cli():
    """
    blocklatency: Measure how fast transactions sent in reaction to new blocks confirm
    """


def _render_timestamp(timestamp: int | None) -> str:
    if timestamp is None:
        return "<unknown>"

    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime(LOCAL_DATETIME)


def _echo_summary(metrics: list["ConfirmationMetrics"], sent: int | None = None):
    from blocklatency.types import LatencySummary

    summary = LatencySummary.from_metrics(metrics, sent=sent)

    click.echo("\nFINAL TRANSACTION CONFIRMATION SUMMARY")
    click.echo("======================================")
    click.echo(f"Total transactions sent: {summary.transactions_sent}")
    click.echo(f"Total transactions confirmed: {summary.transactions_confirmed}")

    if not metrics:
        return

    click.echo(f"Average blocks to confirm: {summary.average_blocks_to_confirm:.2f}")
    click.echo(f"Average confirmation time: {summary.average_confirmation_time_ms:.2f}ms")
    click.echo(
        f"Fastest/slowest confirmation: {summary.min_confirmation_time_ms:.0f}ms"
        f"/{summary.max_confirmation_time_ms:.0f}ms"
    )
    click.echo(f"Total gas used: {summary.total_gas_used}")

    click.echo("\nDetailed results:")
    for idx, m in enumerate(metrics, start=1):
        click.echo(f"\n{idx}. {m.transaction_hash}")
        click.echo(f"   Sent in block: #{m.sent_block_number}")
        click.echo(f"   Confirmed in block: #{m.confirmed_block_number}")
        click.echo(f"   Blocks to confirm: {m.blocks_to_confirm}")
        click.echo(f"   Confirmation time: {m.confirmation_time_ms:.0f}ms")
        click.echo(f"   Sent block timestamp: {_render_timestamp(m.sent_block_timestamp)}")
        click.echo(f"   Sent timestamp: {m.sent_at.strftime(LOCAL_DATETIME)}")
        click.echo(
            f"   Confirmed block timestamp: {_render_timestamp(m.confirmed_block_timestamp)}"
        )


async def _run_until_done(engine: "LatencyEngine"):
    def exit_handler(signum: int):
        logger.info(f"{signal.Signals(signum).name} signal received")

        if engine.feed.is_running:
            logger.info("Waiting for pending transactions to confirm (signal again to force exit)")
            engine.stop()

        else:
            logger.warning("Force exit...")
            engine.stop(force=True)

    # Make sure we handle various ways that OS might kill process
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, exit_handler, signum)

    await engine.run()


@cli.command()
@ape_cli_context()
@click.option(
    "--env-file",
    "env_files",
    multiple=True,
    type=click.Path(dir_okay=False, path_type=Path),
    callback=env_file_callback,
    is_eager=True,
    help="Env file(s) to load settings from (later files win)",
)
@click.option(
    "--feed",
    type=click.Choice(["auto", "websocket", "polling"]),
    default=None,
    help="How to observe new blocks (defaults to `BLOCKLATENCY_FEED`)",
)
@click.option("--debug", is_flag=True, default=False)
def run(cli_ctx, env_files, feed, debug):
    """Send a transaction on every new block, and measure its confirmation latency"""
    from blocklatency.engine import LatencyEngine
    from blocklatency.settings import load_settings

    try:
        settings = load_settings()
        client = settings.get_chain_client()
        block_feed = settings.get_block_feed(client, feed=feed)

    except ConfigurationError as err:
        raise Abort(str(err)) from err

    engine = LatencyEngine(
        client,
        block_feed,
        settings.get_engine_config(),
        recorder=settings.get_recorder(),
    )
    asyncio.run(_run_until_done(engine), debug=debug)

    _echo_summary(engine.metrics, sent=engine.transactions_sent)

    if not engine.is_completed():
        status = engine.get_status()
        raise Abort(f"Stopped before completion ({status.confirmed}/{status.total} confirmed)")


@cli.command()
@click.argument(
    "session",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    callback=session_file_callback,
)
def report(session):
    """Summarize a recorded session file"""
    from blocklatency.recorder import get_metrics

    try:
        metrics = list(get_metrics(session))

    except ValidationError as err:
        raise Abort(f"Corrupted session file '{session.name}': {err}") from err

    if not metrics:
        raise Abort(f"No results recorded in '{session.name}'")

    _echo_summary(metrics)
