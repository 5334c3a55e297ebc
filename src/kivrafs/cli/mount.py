"""FUSE mount commands: start, stop, status."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.panel import Panel
from rich.table import Table

from ..errors import KivraFSError
from ._common import console, fail, home_option

DEFAULT_MOUNT_POINT = "~/Kivra"


def register_mount_commands(main: click.Group) -> None:
    """Register the mount command group."""

    @main.group()
    def mount():
        """Mailbox filesystem: browse letters and attachments as files.

        \b
        Mount:    kivrafs mount start
        Debug:    kivrafs mount start --foreground
        Unmount:  kivrafs mount stop
        Status:   kivrafs mount status
        """

    @mount.command("start")
    @click.option(
        "--mount-point",
        default=DEFAULT_MOUNT_POINT,
        type=click.Path(),
        help="Existing empty directory to mount the mailbox at.",
        show_default=True,
    )
    @home_option
    @click.option(
        "--foreground",
        "foreground",
        is_flag=True,
        default=False,
        help="Run in foreground (blocks; useful for debugging).",
    )
    def mount_start(mount_point: str, home: str, foreground: bool):
        """Mount the mailbox as a read-only filesystem.

        \b
        Examples:

            kivrafs mount start

            kivrafs mount start --mount-point /mnt/kivra

            kivrafs mount start --foreground
        """
        from ..fuse_mount import daemon_for

        mount_path = Path(mount_point).expanduser()
        daemon = daemon_for(Path(home).expanduser(), mount_path)

        if foreground:
            console.print(
                f"[bold cyan]Mounting mailbox at [white]{mount_path}[/] "
                f"[dim](foreground; unmount to stop)[/]"
            )
        else:
            console.print(f"[bold cyan]Mounting mailbox at [white]{mount_path}[/] ...")

        try:
            pid = daemon.start(foreground=foreground)
        except KivraFSError as exc:
            fail(exc)

        if not foreground:
            if pid is None:
                console.print("[yellow]Already mounted.[/]")
            else:
                console.print(
                    f"[green]Mounted[/] [dim](pid {pid}). Unmount with: kivrafs mount stop[/]"
                )

    @mount.command("stop")
    @click.option(
        "--mount-point",
        default=DEFAULT_MOUNT_POINT,
        type=click.Path(),
        help="Mount point to unmount.",
        show_default=True,
    )
    @home_option
    def mount_stop(mount_point: str, home: str):
        """Unmount the mailbox filesystem."""
        from ..fuse_mount import daemon_for

        mount_path = Path(mount_point).expanduser()
        daemon = daemon_for(Path(home).expanduser(), mount_path)
        console.print(f"[bold cyan]Unmounting {mount_path} ...[/]")

        if daemon.stop():
            console.print("[green]Unmounted.[/]")
        else:
            console.print(
                "[bold red]Unmount failed.[/] "
                f"[dim]Try manually: fusermount -u {mount_path}[/]"
            )
            sys.exit(1)

    @mount.command("status")
    @click.option(
        "--mount-point",
        default=DEFAULT_MOUNT_POINT,
        type=click.Path(),
        help="Mount point to check.",
        show_default=True,
    )
    @home_option
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    def mount_status(mount_point: str, home: str, as_json: bool):
        """Show whether the mailbox is mounted."""
        from ..fuse_mount import daemon_for

        daemon = daemon_for(Path(home).expanduser(), Path(mount_point).expanduser())
        status = daemon.status()

        if as_json:
            click.echo(json.dumps(status, indent=2))
            return

        mounted = status.get("mounted", False)
        icon = "[bold green]MOUNTED[/]" if mounted else "[bold red]NOT MOUNTED[/]"
        pid = status.get("pid")
        updated = status.get("updated_at")

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="dim")
        table.add_column("Value")

        table.add_row("Status", icon)
        table.add_row("Mount point", str(status.get("mount_point", "")))
        table.add_row("Home", str(status.get("home", "")))
        table.add_row("PID", str(pid) if pid else "[dim]-[/]")
        table.add_row("Last updated", updated or "[dim]-[/]")

        console.print()
        console.print(Panel(table, title="[bold]Mailbox Filesystem Status[/]", border_style="cyan"))
        console.print()
