"""Shared test fixtures for kivrafs."""

from __future__ import annotations

import base64
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import pytest

from kivrafs.config import AppConfig
from kivrafs.errors import NotFound, TransientTransport
from kivrafs.models import Attachment, InboxItem, ItemPage


def make_id_token(uid: str = "user-1", name: str = "Test User") -> str:
    """Build an unsigned JWT carrying the account claims."""

    def enc(obj: dict) -> str:
        raw = json.dumps(obj).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    return ".".join([enc({"alg": "none"}), enc({"kivra_user_id": uid, "name": name}), "sig"])


def make_item(
    key: str,
    subject: str = "Letter",
    created_at: Optional[datetime] = None,
    sender_name: str = "Acme",
    status: str = "unread",
    attachments: Optional[List[Attachment]] = None,
) -> InboxItem:
    return InboxItem(
        key=key,
        subject=subject,
        sender_name=sender_name,
        created_at=created_at or datetime(2024, 1, 15, 8, 30, tzinfo=timezone.utc),
        status=status,
        attachments=attachments,
    )


class FakeClient:
    """In-memory stand-in for RemoteClient.

    ``remote`` holds full items (with attachments); listings strip the
    attachments the way the real listing endpoint does.
    """

    def __init__(self, page_size: int = 50) -> None:
        self.page_size = page_size
        self.remote: Dict[str, InboxItem] = {}
        self.contents: Dict[Tuple[str, int], bytes] = {}
        self.list_calls = 0
        self.detail_calls: List[str] = []
        self.download_calls: List[Tuple[str, int]] = []
        self.marked_read: List[str] = []
        self.fail_listing: Optional[Exception] = None
        self.fail_download: Optional[Exception] = None
        self.download_failures = 0
        self.download_gate: Optional[threading.Event] = None
        self.listing_gate: Optional[threading.Event] = None
        self.listing_started = threading.Event()
        self.download_started = threading.Event()
        self._lock = threading.Lock()

    def add(self, item: InboxItem, contents: Optional[List[bytes]] = None) -> None:
        contents = contents or []
        if item.attachments is None:
            item = item.model_copy(
                update={
                    "attachments": [
                        Attachment(index=i, name=f"part{i}.pdf", content_type="application/pdf",
                                   size=len(data), key=f"att-{i}")
                        for i, data in enumerate(contents)
                    ]
                }
            )
        self.remote[item.key] = item
        for i, data in enumerate(contents):
            self.contents[(item.key, i)] = data

    def remove(self, key: str) -> None:
        del self.remote[key]

    def list_items(self, cursor: Optional[str] = None) -> ItemPage:
        with self._lock:
            self.list_calls += 1
        self.listing_started.set()
        if self.listing_gate is not None:
            self.listing_gate.wait(5)
        if self.fail_listing is not None:
            raise self.fail_listing
        summaries = [i.model_copy(update={"attachments": None}) for i in self.remote.values()]
        start = int(cursor or 0)
        end = start + self.page_size
        next_cursor = str(end) if end < len(summaries) else None
        return ItemPage(items=summaries[start:end], next_cursor=next_cursor)

    def get_item_detail(self, item_id: str, summary: Optional[InboxItem] = None) -> InboxItem:
        self.detail_calls.append(item_id)
        if item_id not in self.remote:
            raise NotFound(f"no item {item_id}")
        return self.remote[item_id]

    def mark_read(self, item_id: str) -> None:
        self.marked_read.append(item_id)

    def iter_attachment(
        self, item_id: str, index: int, attachment: Optional[Attachment] = None, byte_range=None
    ) -> Iterator[bytes]:
        with self._lock:
            self.download_calls.append((item_id, index))
            breaks_off = self.download_failures > 0
            if breaks_off:
                self.download_failures -= 1
        self.download_started.set()
        if self.download_gate is not None:
            self.download_gate.wait(5)
        if (item_id, index) not in self.contents:
            raise NotFound(f"no attachment {item_id}/{index}")
        data = self.contents[(item_id, index)]
        for pos in range(0, len(data), 4):
            if pos > 0 and self.fail_download is not None:
                raise self.fail_download
            if pos > 0 and breaks_off:
                raise TransientTransport("connection reset by peer")
            yield data[pos:pos + 4]


@pytest.fixture
def kivra_home(tmp_path: Path) -> Path:
    """Provide a temporary kivrafs home directory."""
    home = tmp_path / ".kivrafs"
    home.mkdir()
    return home


@pytest.fixture
def app_config(kivra_home: Path) -> AppConfig:
    """Default configuration rooted at the temporary home."""
    return AppConfig(home=kivra_home)


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()
