"""
SessionSync CLI -- encrypted chat session sync from the command line.

The main Click group is defined here and the subcommands are
registered via register functions from their own modules.

Entry point: sessionsync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="sessionsync")
@click.option("--verbose", "-v", is_flag=True, help="Also log to stderr, at debug level.")
def main(verbose):
    """SessionSync -- your chat sessions on every machine.

    Encrypted under your passphrase before they leave the device.
    """


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .sync_cmd import register_sync_commands
from .config_cmd import register_config_commands

register_sync_commands(main)
register_config_commands(main)
