"""Inbox commands: list, refresh, show, mark-read."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.table import Table

from ..errors import KivraFSError
from ..naming import assign_unique_names, attachment_file_name, item_dir_name
from ._common import components_for, console, fail, home_option


def register_inbox_commands(main: click.Group) -> None:
    """Register the inbox commands."""

    @main.command("list")
    @home_option
    @click.option("--unread", is_flag=True, default=False, help="Only show unread items.")
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    def list_items(home: str, unread: bool, as_json: bool):
        """List inbox items, newest first.

        \b
        Examples:

            kivrafs list

            kivrafs list --unread --json
        """
        components = components_for(home)
        try:
            entries = components.cache.list()
        except KivraFSError as exc:
            fail(exc)
        finally:
            components.close()

        if unread:
            entries = [e for e in entries if not e.item.is_read]

        if as_json:
            rows = [
                {
                    "id": e.item_id,
                    "directory": item_dir_name(e.item),
                    "sender": e.item.sender_name,
                    "subject": e.item.subject,
                    "created_at": e.item.created_at.isoformat(),
                    "read": e.item.is_read,
                }
                for e in entries
            ]
            click.echo(json.dumps(rows, indent=2))
            return

        if not entries:
            console.print("[dim]Inbox is empty.[/]")
            return

        table = Table(title=f"Inbox ({len(entries)})", title_style="bold cyan")
        table.add_column("Date", style="dim")
        table.add_column("Sender")
        table.add_column("Subject")
        table.add_column("Status")
        table.add_column("ID", style="dim")
        for e in entries:
            status = "[dim]read[/]" if e.item.is_read else "[bold yellow]unread[/]"
            table.add_row(
                e.item.created_at.strftime("%Y-%m-%d"),
                e.item.sender_name,
                e.item.subject,
                status,
                e.item_id,
            )
        console.print(table)

    @main.command("refresh")
    @home_option
    def refresh(home: str):
        """Reload the inbox listing, here and in a running mount."""
        from ..fuse_mount import request_refresh

        components = components_for(home)
        try:
            count = components.cache.refresh()
        except KivraFSError as exc:
            fail(exc)
        finally:
            components.close()
        console.print(f"[green]Inbox refreshed:[/] {count} item(s)")
        if request_refresh(Path(home).expanduser()):
            console.print("[dim]The running mount will reload its listing shortly.[/]")

    @main.command("show")
    @home_option
    @click.argument("item_id")
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    def show(home: str, item_id: str, as_json: bool):
        """Show one inbox item and its attachments.

        \b
        File names are the ones the item has in the mounted mailbox.
        """
        components = components_for(home)
        try:
            entry = components.cache.details(item_id)
        except KivraFSError as exc:
            fail(exc)
        finally:
            components.close()

        item = entry.item
        attachments = item.attachments or []
        names = assign_unique_names(
            ((a.index, attachment_file_name(item, a)) for a in attachments), keep_extension=True
        )

        if as_json:
            click.echo(json.dumps({
                "id": entry.item_id,
                "directory": item_dir_name(item),
                "sender": item.sender_name,
                "subject": item.subject,
                "created_at": item.created_at.isoformat(),
                "read": item.is_read,
                "attachments": [
                    {
                        "index": a.index,
                        "file": names[a.index],
                        "content_type": a.content_type,
                        "size": a.advertised_size,
                    }
                    for a in attachments
                ],
            }, indent=2))
            return

        console.print(f"[bold]Sender:[/]   {item.sender_name}")
        console.print(f"[bold]Subject:[/]  {item.subject}")
        console.print(f"[bold]Created:[/]  {item.created_at.strftime('%Y-%m-%d %H:%M:%S %Z')}")
        console.print(f"[bold]Status:[/]   {'read' if item.is_read else 'unread'}")

        if not attachments:
            console.print("[dim]No attachments.[/]")
            return
        table = Table(title="Attachments", title_style="bold cyan")
        table.add_column("#", style="dim")
        table.add_column("File")
        table.add_column("Type", style="dim")
        table.add_column("Size", justify="right")
        for a in attachments:
            size = a.advertised_size
            table.add_row(
                str(a.index), names[a.index], a.content_type, "-" if size is None else str(size)
            )
        console.print(table)

    @main.command("mark-read")
    @home_option
    @click.argument("item_id")
    def mark_read(home: str, item_id: str):
        """Mark one inbox item as read."""
        components = components_for(home)
        try:
            components.cache.mark_read(item_id)
        except KivraFSError as exc:
            fail(exc)
        finally:
            components.close()
        console.print(f"[green]Marked as read:[/] {item_id}")
