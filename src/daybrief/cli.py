"""CLI for daybrief: run the scheduler and drive per-user actions by hand."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click

from daybrief.app import DaybriefApp
from daybrief.channels import ChannelConfigurationError
from daybrief.config import ConfigError, DaybriefConfig, load_config
from daybrief.core.logging import configure_logging
from daybrief.models import TriggerResult
from daybrief.scheduler import AutomationScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to daybrief.toml (default: ./daybrief.toml when present)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Daybrief: daily calendar summaries and change alerts over WhatsApp."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(config.logging)
    ctx.obj = config


@cli.command()
@click.pass_obj
def run(config: DaybriefConfig) -> None:
    """Start every enabled user's automation and run until SIGINT/SIGTERM."""
    click.echo("Starting daybrief scheduler")
    _run_or_fail(_serve(config))


@cli.command("init-db")
@click.pass_obj
def init_db(config: DaybriefConfig) -> None:
    """Create the snapshot table if it does not exist."""

    async def _init() -> None:
        app = DaybriefApp(config)
        try:
            await app.init_db()
        finally:
            await app.db.close()

    _run_or_fail(_init())
    click.echo("Snapshot table ready")


@cli.command()
@click.argument("user_id")
@click.pass_obj
def status(config: DaybriefConfig, user_id: str) -> None:
    """Show a user's automation settings."""
    result = _run_or_fail(_with_scheduler(config, lambda s: s.status(user_id)))
    if result is None:
        click.echo(f"User not found: {user_id}")
        sys.exit(1)
    for key, value in result.model_dump().items():
        click.echo(f"{key:<24} {value}")


@cli.command()
@click.argument("user_id")
@click.pass_obj
def preview(config: DaybriefConfig, user_id: str) -> None:
    """Print today's summary for a user without sending it."""
    result = _run_or_fail(_with_scheduler(config, lambda s: s.preview_summary(user_id)))
    if result.success:
        click.echo(result.detail.get("text", ""))
    _report(result, quiet_success=True)


@cli.command("trigger-summary")
@click.argument("user_id")
@click.pass_obj
def trigger_summary(config: DaybriefConfig, user_id: str) -> None:
    """Send today's summary to a user's recipients now."""
    _report(_run_or_fail(_with_scheduler(config, lambda s: s.trigger_summary_now(user_id))))


@cli.command("trigger-changes")
@click.argument("user_id")
@click.pass_obj
def trigger_changes(config: DaybriefConfig, user_id: str) -> None:
    """Run a change check for a user now."""
    _report(_run_or_fail(_with_scheduler(config, lambda s: s.trigger_change_check_now(user_id))))


@cli.command()
@click.argument("user_id")
@click.pass_obj
def sync(config: DaybriefConfig, user_id: str) -> None:
    """Store a user's upcoming events as the baseline without notifying."""
    _report(_run_or_fail(_with_scheduler(config, lambda s: s.trigger_sync_now(user_id))))


@cli.command("test-message")
@click.argument("recipient")
@click.pass_obj
def test_message(config: DaybriefConfig, recipient: str) -> None:
    """Send a WhatsApp connectivity test message to RECIPIENT."""
    from daybrief.channels import TwilioWhatsAppChannel, format_phone_number, validate_phone_number

    if not validate_phone_number(recipient):
        raise click.ClickException(f"Invalid phone number: {recipient}")

    async def _send() -> TriggerResult:
        channel = TwilioWhatsAppChannel(
            config.twilio.account_sid, config.twilio.auth_token, config.twilio.from_number
        )
        try:
            return await channel.send_test_message(format_phone_number(recipient))
        finally:
            await channel.aclose()

    _report(_run_or_fail(_send()))


def _report(result: TriggerResult, *, quiet_success: bool = False) -> None:
    if result.success:
        if not quiet_success:
            click.echo(result.message)
        return
    click.echo(f"Failed: {result.error}", err=True)
    sys.exit(1)


def _run_or_fail(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except (ConfigError, ChannelConfigurationError) as exc:
        raise click.ClickException(str(exc)) from exc


async def _with_scheduler(
    config: DaybriefConfig, action: Callable[[AutomationScheduler], Awaitable[Any]]
) -> Any:
    app = DaybriefApp(config)
    try:
        scheduler = await app.start()
        return await action(scheduler)
    finally:
        await app.shutdown()


async def _serve(config: DaybriefConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    app = DaybriefApp(config)
    try:
        scheduler = await app.start()
        started = await scheduler.start_all()
        click.echo(f"Daybrief running: {started} user(s) scheduled")
        await shutdown_event.wait()
    finally:
        await app.shutdown()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
