"""Config commands: show, set."""

from __future__ import annotations

import sys
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from ._common import SESSIONSYNC_HOME, console
from ..config import SyncConfig, load_config, save_config


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group()
    def config():
        """Inspect and edit ``config.yaml``."""

    @config.command("show")
    @click.option("--home", default=SESSIONSYNC_HOME, type=click.Path())
    def config_show(home):
        """Print the effective configuration."""
        cfg = load_config(Path(home).expanduser())
        click.echo(yaml.dump(cfg.model_dump(mode="json"), default_flow_style=False), nl=False)

    @config.command("set")
    @click.argument("key")
    @click.argument("value")
    @click.option("--home", default=SESSIONSYNC_HOME, type=click.Path())
    def config_set(key, value, home):
        """Set KEY to VALUE. VALUE is parsed as YAML (numbers, lists, true/false)."""
        home_path = Path(home).expanduser()
        if key not in SyncConfig.model_fields:
            console.print(f"[bold red]Unknown setting:[/] {key}")
            sys.exit(1)

        current = load_config(home_path).model_dump(mode="json")
        try:
            current[key] = yaml.safe_load(value)
            updated = SyncConfig(**current)
        except (yaml.YAMLError, ValidationError) as exc:
            console.print(f"[bold red]Invalid value for {key}:[/] {exc}")
            sys.exit(1)

        path = save_config(home_path, updated)
        console.print(f"  [green]{key}[/] = {getattr(updated, key)}  [dim]({path})[/]")
