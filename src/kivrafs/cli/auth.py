"""Session commands: login, logout."""

from __future__ import annotations

import click

from ..errors import KivraFSError
from ._common import components_for, console, fail, home_option, render_qr


def register_auth_commands(main: click.Group) -> None:
    """Register the login and logout commands."""

    @main.command("login")
    @home_option
    def login(home: str):
        """Log in by approving a QR code with the BankID app.

        \b
        Scan the code with BankID on your phone. The code rotates while
        waiting; Ctrl-C cancels.
        """
        components = components_for(home)

        def show(payload: str) -> None:
            console.print()
            console.print(render_qr(payload), highlight=False)
            console.print("[bold cyan]Scan with the BankID app to log in[/] [dim](Ctrl-C to cancel)[/]")

        try:
            session = components.sessions.login(show)
        except KivraFSError as exc:
            fail(exc)
        finally:
            components.close()

        who = session.user_info.name or session.user_id
        console.print(f"[green]Logged in as[/] [bold]{who}[/]")

    @main.command("logout")
    @home_option
    def logout(home: str):
        """Revoke the session and remove it from disk."""
        components = components_for(home)
        try:
            components.sessions.logout()
        finally:
            components.close()
        console.print("[green]Logged out.[/]")
