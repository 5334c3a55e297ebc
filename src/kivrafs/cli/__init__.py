"""
kivrafs CLI: log in, browse and mount the mailbox.

Each command group lives in its own module and is attached to the
main Click group through a ``register_*`` function.

Entry point: kivrafs.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="kivrafs")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log debug output to stderr.")
def main(verbose: bool):
    """kivrafs: your Kivra mailbox as a read-only filesystem."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .auth import register_auth_commands
from .inbox import register_inbox_commands
from .mount import register_mount_commands

register_auth_commands(main)
register_inbox_commands(main)
register_mount_commands(main)
