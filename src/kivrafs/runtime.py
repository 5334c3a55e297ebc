"""
Component wiring.

One place builds the object graph (transport → auth → session →
client → cache → store) from an AppConfig, so the CLI and the mount
daemon share exactly the same setup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .attachments import AttachmentStore
from .auth import AuthClient
from .client import RemoteClient
from .config import AppConfig, load_config
from .inbox_cache import InboxCache
from .session import SessionManager, SessionStore
from .transport import HttpTransport

logger = logging.getLogger("kivrafs.runtime")


@dataclass
class Components:
    """Everything a kivrafs process talks to."""

    config: AppConfig
    transport: HttpTransport
    auth: AuthClient
    sessions: SessionManager
    client: RemoteClient
    cache: InboxCache
    store: AttachmentStore

    def close(self) -> None:
        self.cache.close()
        self.transport.close()


def build_components(config: Optional[AppConfig] = None, home: Optional[Path] = None) -> Components:
    """Build the component graph.

    Args:
        config: Loaded configuration. Read from ``home`` when omitted.
        home: Home directory used only if ``config`` is None.

    Returns:
        Wired Components.
    """
    config = config or load_config(home)
    transport = HttpTransport(timeout=config.request_timeout, retry=config.retry)
    auth = AuthClient(transport, config.api_url, config.accounts_url)
    sessions = SessionManager(
        SessionStore(config.session_path),
        auth,
        poll_interval=config.login_poll_interval,
        poll_max_interval=config.login_poll_max_interval,
        login_timeout=config.login_timeout,
    )
    client = RemoteClient(transport, sessions, config.api_url)
    cache = InboxCache(client, staleness_seconds=config.staleness_seconds)
    store = AttachmentStore(client, config.attachment_dir, retry=config.retry)
    logger.debug("Components built for home %s", config.home)
    return Components(
        config=config,
        transport=transport,
        auth=auth,
        sessions=sessions,
        client=client,
        cache=cache,
        store=store,
    )
