"""Command-line interface for the mail scheduler.

This module provides a CLI for managing scheduled messages directly on the
local database, without going through the HTTP API, and for running the
service.

Usage:
    mail-scheduler messages list --status scheduled
    mail-scheduler messages add --subject "Follow up" --body "Hi" \\
        --to ann@example.com --to-name Ann --user u1 \\
        --from rep@example.com --from-name Rep
    mail-scheduler messages schedule <id> 2030-01-01T09:00:00
    mail-scheduler messages cancel <id>
    mail-scheduler messages send-now <id>
    mail-scheduler stats
    mail-scheduler cleanup --days 90
    mail-scheduler serve

The database, transport and defaults come from the same INI file and
``GMS_*`` environment variables used by the server (see
:mod:`async_mail_scheduler.config_loader`).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from async_mail_scheduler.config_loader import SchedulerConfig, build_transport, load_scheduler_config
from async_mail_scheduler.core import MailSchedulerCore
from async_mail_scheduler.errors import SchedulerError
from async_mail_scheduler.models import ALL_STATUSES

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "draft": "dim",
    "scheduled": "blue",
    "sending": "yellow",
    "sent": "green",
    "failed": "red",
    "cancelled": "magenta",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ts(ts: Optional[int]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _get_core(ctx: click.Context, *, with_transport: bool = False) -> MailSchedulerCore:
    """Build a core bound to the configured database.

    The transport is only built for commands that deliver messages, so
    message management works without transport settings.
    """
    config: SchedulerConfig = ctx.obj["config"]
    transport = None
    if with_transport:
        try:
            transport = build_transport(config)
        except ValueError as exc:
            print_error(str(exc))
            sys.exit(1)
    return MailSchedulerCore(
        db_path=config.db_path,
        transport=transport,
        retention_days=config.retention_days,
        default_max_retries=config.max_retries,
        log_delivery_activity=config.delivery_activity,
    )


def _run_core(core: MailSchedulerCore, operation):
    """Initialize the database, run ``operation(core)`` and report scheduler errors."""

    async def _run():
        await core.init()
        return await operation(core)

    try:
        return run_async(_run())
    except SchedulerError as exc:
        print_error(str(exc))
        sys.exit(1)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.ini (default: $GMS_CONFIG or ./config.ini).")
@click.option("--db", "db_path", default=None, help="Override the database path.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """Deferred CRM message delivery scheduler."""
    ctx.ensure_object(dict)
    try:
        config = load_scheduler_config(config_path)
    except ValueError as exc:
        print_error(f"Invalid configuration: {exc}")
        sys.exit(1)
    if db_path:
        config.db_path = db_path
    ctx.obj["config"] = config


# ============================================================================
# MESSAGES commands
# ============================================================================

@main.group("messages", invoke_without_command=True)
@click.pass_context
def messages(ctx):
    """Manage scheduled messages."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@messages.command("list")
@click.option("--status", "-s", type=click.Choice(list(ALL_STATUSES) + ["all"]), default="all",
              help="Filter by status.")
@click.option("--user", "-u", "user_id", help="Filter by sender user ID.")
@click.option("--limit", "-l", type=int, default=50, help="Max messages to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def messages_list(ctx, status: str, user_id: Optional[str], limit: int, as_json: bool) -> None:
    """List active messages, newest first."""
    core = _get_core(ctx)
    msg_list = _run_core(
        core,
        lambda c: c.list_messages(status=None if status == "all" else status, user_id=user_id, limit=limit),
    )

    if as_json:
        print_json(msg_list)
        return

    if not msg_list:
        console.print("[dim]No messages found.[/dim]")
        return

    table = Table(title=f"Messages (showing up to {limit})")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Recipient")
    table.add_column("Subject", max_width=30)
    table.add_column("Scheduled")
    table.add_column("Retries", justify="right")

    for msg in msg_list:
        style = STATUS_STYLES.get(msg["status"], "white")
        table.add_row(
            msg["id"],
            f"[{style}]{msg['status']}[/{style}]",
            msg["recipient_email"],
            msg["subject"][:30],
            _format_ts(msg.get("scheduled_ts")),
            f"{msg.get('retry_count', 0)}/{msg.get('max_retries', 0)}",
        )

    console.print(table)


@messages.command("show")
@click.argument("message_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def messages_show(ctx, message_id: str, as_json: bool) -> None:
    """Show details for a specific message."""
    msg = _run_core(_get_core(ctx), lambda c: c.get_message(message_id))

    if as_json:
        print_json(msg)
        return

    last_error = msg.get("last_error") or {}
    console.print(f"\n[bold cyan]Message: {message_id}[/bold cyan]\n")
    console.print(f"  Status:      {msg['status']}")
    console.print(f"  Type:        {msg.get('email_type') or '-'}")
    console.print(f"  From:        {msg['sender_name']} <{msg['sender_email']}> ({msg['sender_user_id']})")
    console.print(f"  To:          {msg['recipient_name']} <{msg['recipient_email']}>")
    console.print(f"  Subject:     {msg['subject']}")
    console.print(f"  Scheduled:   {_format_ts(msg.get('scheduled_ts'))}")
    console.print(f"  Sent:        {_format_ts(msg.get('sent_ts'))}")
    console.print(f"  Retries:     {msg.get('retry_count', 0)}/{msg.get('max_retries', 0)}")
    console.print(f"  Provider ID: {msg.get('provider_message_id') or '-'}")
    if last_error:
        kind = "permanent" if last_error.get("permanent") else "temporary"
        console.print(f"  Last error:  {last_error.get('message')} ({kind}, {_format_ts(last_error.get('timestamp'))})")
    console.print()


@messages.command("add")
@click.option("--id", "id", default=None, help="Message ID (generated when omitted).")
@click.option("--subject", required=True, help="Message subject.")
@click.option("--body", required=True, help="Message body.")
@click.option("--to", "recipient_email", required=True, help="Recipient email address.")
@click.option("--to-name", "recipient_name", required=True, help="Recipient display name.")
@click.option("--contact", "recipient_contact_id", help="CRM contact ID of the recipient.")
@click.option("--user", "sender_user_id", required=True, help="Sender user ID.")
@click.option("--from", "sender_email", required=True, help="Sender email address.")
@click.option("--from-name", "sender_name", required=True, help="Sender display name.")
@click.option("--type", "email_type", default="custom", help="Email type (follow_up, proposal, ...).")
@click.option("--max-retries", type=int, default=None, help="Failed attempts allowed.")
@click.option("--at", "scheduled_at", default=None, help="Schedule at this ISO-8601 time (UTC if naive).")
@click.pass_context
def messages_add(ctx, scheduled_at: Optional[str], **fields: Any) -> None:
    """Create a draft message, optionally scheduling it."""
    payload = {k: v for k, v in fields.items() if v is not None}

    async def _add(core: MailSchedulerCore):
        msg = await core.create_message(payload)
        if scheduled_at:
            msg = await core.schedule_email(msg["id"], scheduled_at)
        return msg

    msg = _run_core(_get_core(ctx), _add)
    print_success(f"Message '{msg['id']}' created ({msg['status']}).")


@messages.command("schedule")
@click.argument("message_id")
@click.argument("when")
@click.pass_context
def messages_schedule(ctx, message_id: str, when: str) -> None:
    """Schedule a message for WHEN (ISO-8601, UTC if naive, or epoch seconds)."""
    value: Any = int(when) if when.isdigit() else when
    msg = _run_core(_get_core(ctx), lambda c: c.schedule_email(message_id, value))
    print_success(f"Message '{message_id}' scheduled for {_format_ts(msg['scheduled_ts'])}.")


@messages.command("cancel")
@click.argument("message_id")
@click.pass_context
def messages_cancel(ctx, message_id: str) -> None:
    """Cancel a scheduled message."""
    _run_core(_get_core(ctx), lambda c: c.cancel_scheduled_email(message_id))
    print_success(f"Message '{message_id}' cancelled.")


@messages.command("send-now")
@click.argument("message_id")
@click.pass_context
def messages_send_now(ctx, message_id: str) -> None:
    """Deliver a message immediately through the configured transport."""
    result = _run_core(_get_core(ctx, with_transport=True), lambda c: c.send_now(message_id))
    outcome = result.outcome.value
    if outcome == "sent":
        print_success(f"Message '{message_id}' sent.")
    elif outcome == "retrying":
        console.print(f"[yellow]Delivery failed, retry at {_format_ts(result.next_attempt_ts)}:[/yellow] {result.error}")
    elif outcome == "failed":
        print_error(f"Delivery failed: {result.error}")
        sys.exit(1)
    else:
        console.print(f"[dim]Skipped: {result.error}[/dim]")


@messages.command("delete")
@click.argument("message_ids", nargs=-1, required=True)
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def messages_delete(ctx, message_ids: tuple, force: bool) -> None:
    """Delete one or more messages."""
    if not force:
        if not click.confirm(f"Delete {len(message_ids)} message(s)?"):
            console.print("Aborted.")
            return

    async def _delete(core: MailSchedulerCore):
        deleted = 0
        for mid in message_ids:
            try:
                await core.delete_message(mid)
                deleted += 1
            except SchedulerError as exc:
                print_error(str(exc))
        return deleted

    deleted = _run_core(_get_core(ctx), _delete)
    print_success(f"Deleted {deleted} message(s).")


# ============================================================================
# STATS / CLEANUP commands
# ============================================================================

@main.command("stats")
@click.option("--user", "-u", "user_id", help="Restrict to one sender user ID.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx, user_id: Optional[str], as_json: bool) -> None:
    """Show message counts per status."""
    data = _run_core(_get_core(ctx), lambda c: c.get_email_stats(user_id))

    if as_json:
        print_json(data)
        return

    table = Table(title="Messages by status")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status_name, count in data["by_status"].items():
        style = STATUS_STYLES.get(status_name, "white")
        table.add_row(f"[{style}]{status_name}[/{style}]", str(count))
    console.print(table)
    console.print(f"  Total scheduled: {data['total_scheduled']}")


@main.command("cleanup")
@click.option("--days", "days_old", type=int, default=None,
              help="Deactivate terminal messages older than this (default: configured retention).")
@click.pass_context
def cleanup(ctx, days_old: Optional[int]) -> None:
    """Deactivate old sent, failed and cancelled messages."""
    removed = _run_core(_get_core(ctx), lambda c: c.cleanup_old_emails(days_old))
    print_success(f"Cleaned up {removed} message(s).")


# ============================================================================
# SERVE command
# ============================================================================

@main.command("serve")
@click.option("--host", default=None, help="Bind address (default from config).")
@click.option("--port", type=int, default=None, help="Port (default from config).")
@click.pass_context
def serve(ctx, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP service with the scheduler loop."""
    import uvicorn

    from async_mail_scheduler.server import build_app

    config: SchedulerConfig = ctx.obj["config"]
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        app = build_app(config)
    except ValueError as exc:
        print_error(str(exc))
        sys.exit(1)
    console.print(f"[bold]Starting mail scheduler on {host or config.host}:{port or config.port}[/bold]")
    uvicorn.run(app, host=host or config.host, port=port or config.port)


if __name__ == "__main__":
    main()
