"""Sync commands: setup, sync, status, passphrase, reset, watch, reindex."""

from __future__ import annotations

import json
import sys
import time
from typing import Optional

import click
from rich.panel import Panel

from ._common import SESSIONSYNC_HOME, console, format_timestamp, open_engine, status_icon
from ..models import SyncStatus, SyncStatusInfo
from ..sync.engine import MAX_PASSPHRASE_ATTEMPTS, MIN_PASSPHRASE_LENGTH


def _prompt_passphrase(is_new: bool, attempt: int) -> Optional[str]:
    """Ask for a passphrase on the terminal. Empty input cancels."""
    if is_new:
        console.print(
            "\n  [bold]Choose a sync passphrase.[/] It encrypts every session "
            "and must be entered on each device.\n"
            "  [yellow]If you lose it, your synced data cannot be recovered.[/]"
        )
        value = click.prompt(
            f"  Passphrase (min {MIN_PASSPHRASE_LENGTH} characters)",
            hide_input=True,
            confirmation_prompt=True,
            default="",
            show_default=False,
        )
    else:
        suffix = f" (attempt {attempt}/{MAX_PASSPHRASE_ATTEMPTS})" if attempt > 1 else ""
        value = click.prompt(
            f"  Passphrase used on your other devices{suffix}",
            hide_input=True,
            default="",
            show_default=False,
        )
    return value or None


def register_sync_commands(main: click.Group) -> None:
    """Register the sync commands."""

    @main.command("setup")
    @click.option("--home", default=SESSIONSYNC_HOME, type=click.Path())
    def setup(home):
        """Connect to the remote and set the sync passphrase."""
        engine = open_engine(home)
        console.print(f"\n  Connecting to [cyan]{engine.store.name}[/] remote...")
        if not engine.initialize(_prompt_passphrase):
            error = engine.status.error_message
            console.print(f"  [bold red]Setup failed.[/] {error or 'Passphrase not set.'}\n")
            sys.exit(1)
        remote = engine.state.remote_location
        if remote:
            console.print(f"  Remote: [cyan]{remote.owner}/{remote.repo}[/]")
        console.print(f"  Device: [cyan]{engine.state.device_id}[/]")
        console.print("  [green]Ready.[/] Run [cyan]sessionsync sync[/] to sync now.\n")

    @main.command("sync")
    @click.option("--home", default=SESSIONSYNC_HOME, type=click.Path())
    @click.option("--json-out", is_flag=True, help="Print the report as JSON.")
    def sync(home, json_out):
        """Pull newer sessions, then push local changes."""
        engine = open_engine(home)
        if not engine.state.passphrase:
            console.print("[bold red]No passphrase set.[/] Run [cyan]sessionsync setup[/] first.")
            sys.exit(1)

        if not json_out:
            console.print("\n  Syncing...", end=" ")
        report = engine.sync()
        if report is None:
            info = engine.status
            if json_out:
                click.echo(json.dumps(info.model_dump(mode="json"), indent=2))
            else:
                console.print(f"{status_icon(info.status)} {info.error_message or ''}\n")
            sys.exit(1)

        if json_out:
            click.echo(report.model_dump_json(indent=2))
            return

        console.print("[green]done[/]")
        console.print(
            f"  Pulled: [bold]{report.pulled}[/]  Pushed: [bold]{report.pushed}[/]  "
            f"Unchanged: {report.skipped}  Failed: {report.failed}"
        )
        if report.backups:
            console.print(f"  [dim]{report.backups} previous version(s) backed up[/]")
        if report.oversized:
            console.print(f"  [yellow]{report.oversized} session(s) over the size limit were not pushed[/]")
        if report.used_fallback:
            console.print("  [yellow]Batch commit failed; files were written one by one[/]")
        console.print()

    @main.command("status")
    @click.option("--home", default=SESSIONSYNC_HOME, type=click.Path())
    @click.option("--json-out", is_flag=True, help="Print status as JSON.")
    def status(home, json_out):
        """Show sync configuration and local state."""
        engine = open_engine(home)
        snapshot = engine.state.snapshot()
        config = engine.config
        info = engine.status
        if not config.enabled:
            info.status = SyncStatus.DISABLED
        elif snapshot["passphrase_set"]:
            info.status = SyncStatus.IDLE

        if json_out:
            data = {**snapshot, "status": info.status.value, "backend": config.backend.value}
            click.echo(json.dumps(data, indent=2))
            return

        console.print()
        console.print(
            Panel(
                f"Status: {status_icon(info.status)}\n"
                f"Backend: [cyan]{config.backend.value}[/]\n"
                f"Remote: {snapshot['remote'] or '[yellow]not connected[/]'}\n"
                f"Device: {snapshot['device_id'] or '[dim]not assigned[/]'}\n"
                f"Passphrase: {'[green]set[/]' if snapshot['passphrase_set'] else '[yellow]not set[/]'}\n"
                f"Last Sync: {format_timestamp(snapshot['last_sync_timestamp'])}\n"
                f"Cached Hashes: {snapshot['cached_hashes']}",
                title="Session Sync",
                border_style="cyan",
            )
        )
        console.print()

    @main.command("passphrase")
    @click.option("--home", default=SESSIONSYNC_HOME, type=click.Path())
    @click.option("--no-verify", is_flag=True, help="Store without checking the remote token.")
    def passphrase(home, no_verify):
        """Enter the sync passphrase on this device."""
        engine = open_engine(home)
        value = click.prompt("  Passphrase", hide_input=True)
        if len(value) < MIN_PASSPHRASE_LENGTH:
            console.print(f"[bold red]Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters.[/]")
            sys.exit(1)
        if not engine.set_passphrase(value, verify=not no_verify):
            console.print("[bold red]Incorrect passphrase.[/] It does not match the remote verification token.")
            sys.exit(1)
        console.print("  [green]Passphrase saved.[/]")

    @main.command("reset")
    @click.option("--home", default=SESSIONSYNC_HOME, type=click.Path())
    @click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
    def reset(home, yes):
        """Forget the passphrase, device id, and hash cache on this device."""
        if not yes:
            click.confirm("  Reset local sync state? Remote data is kept.", abort=True)
        engine = open_engine(home)
        engine.reset()
        console.print("  [green]Local sync state cleared.[/] Run [cyan]sessionsync setup[/] to start over.")

    @main.command("watch")
    @click.option("--home", default=SESSIONSYNC_HOME, type=click.Path())
    @click.option("--interval", type=float, default=None, help="Minutes between syncs.")
    def watch(home, interval):
        """Sync now, then keep syncing on a timer until Ctrl+C."""
        engine = open_engine(home)
        if not engine.state.passphrase:
            console.print("[bold red]No passphrase set.[/] Run [cyan]sessionsync setup[/] first.")
            sys.exit(1)

        def _on_status(info: SyncStatusInfo) -> None:
            line = f"  {status_icon(info.status)}"
            if info.error_message:
                line += f" {info.error_message}"
            console.print(line)

        unsubscribe = engine.subscribe(_on_status)
        minutes = interval or engine.config.sync_interval_minutes
        console.print(f"\n  Watching: sync every [cyan]{minutes}[/] minute(s). Ctrl+C to stop.\n")
        engine.sync()
        engine.start_periodic_sync(minutes)
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            console.print("\n  Stopping...")
        finally:
            engine.stop_periodic_sync()
            unsubscribe()

    @main.command("reindex")
    @click.option("--home", default=SESSIONSYNC_HOME, type=click.Path())
    def reindex(home):
        """Re-register every local session with the editor's chat index."""
        engine = open_engine(home)
        count = engine.reindex()
        console.print(f"  Reindexed [bold]{count}[/] session(s).")
