"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the ``--home`` option, component
construction and the terminal QR renderer.
"""

from __future__ import annotations

import sys
from io import StringIO
from pathlib import Path
from typing import NoReturn

import click
import qrcode
from rich.console import Console

from .. import KIVRAFS_HOME
from ..errors import KivraFSError, Unauthenticated
from ..runtime import Components, build_components

console = Console()

home_option = click.option(
    "--home",
    default=KIVRAFS_HOME,
    type=click.Path(),
    help="kivrafs home directory (config, session, cache).",
    show_default=True,
)


def components_for(home: str) -> Components:
    """Build the component graph for a ``--home`` value."""
    return build_components(home=Path(home).expanduser())


def render_qr(payload: str) -> str:
    """Render a QR payload as terminal-printable ASCII.

    Args:
        payload: Text to encode.

    Returns:
        str: Multi-line ASCII QR code.
    """
    qr = qrcode.QRCode(box_size=1, border=1)
    qr.add_data(payload)
    qr.make(fit=True)

    buf = StringIO()
    qr.print_ascii(out=buf)
    return buf.getvalue()


def fail(exc: KivraFSError) -> NoReturn:
    """Print a kivrafs error and exit non-zero."""
    console.print(f"[bold red]Error:[/] {exc}")
    if isinstance(exc, Unauthenticated):
        console.print("[dim]Log in with: kivrafs login[/]")
    sys.exit(1)
