"""Tests for the inode-level filesystem adapter."""

from __future__ import annotations

import os
import stat
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from kivrafs.adapter import (
    ROOT_INO,
    FilesystemAdapter,
    attachment_ino,
    item_ino,
    split_ino,
)
from kivrafs.attachments import AttachmentStore
from kivrafs.errors import IsADirectory, NoSuchEntry, NotADirectory, ReadOnly
from kivrafs.inbox_cache import InboxCache
from kivrafs.models import Attachment

from conftest import FakeClient, make_item

JAN_15 = datetime(2024, 1, 15, 8, 30, tzinfo=timezone.utc)
JAN_10 = datetime(2024, 1, 10, 7, 0, tzinfo=timezone.utc)

INVOICE_DIR = "2024-01-15_Acme_Invoice"
STATEMENT_DIR = "2024-01-10_Acme_Statement"


@pytest.fixture
def cache(fake_client: FakeClient) -> InboxCache:
    cache = InboxCache(fake_client)
    yield cache
    cache.close()


@pytest.fixture
def adapter(fake_client: FakeClient, cache: InboxCache, kivra_home: Path) -> FilesystemAdapter:
    fake_client.add(make_item("7", subject="Invoice", created_at=JAN_15), [b"invoice-pdf"])
    fake_client.add(make_item("3", subject="Statement", created_at=JAN_10), [b"statement-pdf"])
    store = AttachmentStore(fake_client, kivra_home / "cache" / "attachments")
    return FilesystemAdapter(cache, store, unknown_size=0)


def _names(listing) -> list:
    return [name for name, _, _ in listing]


class TestInodeScheme:
    """Tests for inode arithmetic."""

    def test_item_and_attachment_inodes(self) -> None:
        assert item_ino(1) == 1 << 32
        assert attachment_ino(1, 0) == (1 << 32) + 1
        assert split_ino(attachment_ino(5, 3)) == (5, 3)
        assert split_ino(item_ino(5)) == (5, None)

    def test_inodes_follow_ordinals(self, adapter) -> None:
        """The oldest item owns ordinal 1."""
        listing = adapter.readdir(ROOT_INO)
        assert [ino for _, ino, _ in listing] == [item_ino(2), item_ino(1)]

    def test_inodes_stable_across_refresh(self, adapter, cache) -> None:
        before = adapter.readdir(ROOT_INO)
        cache.refresh()
        assert adapter.readdir(ROOT_INO) == before

    def test_fresh_mount_same_inodes(self, adapter, fake_client, kivra_home) -> None:
        """A second adapter over the same inbox yields the same tree."""
        other = FilesystemAdapter(
            InboxCache(fake_client), AttachmentStore(fake_client, kivra_home / "other")
        )
        assert other.readdir(ROOT_INO) == adapter.readdir(ROOT_INO)


class TestDirectories:
    """Tests for readdir/lookup."""

    def test_root_newest_first(self, adapter) -> None:
        listing = adapter.readdir(ROOT_INO)
        assert _names(listing) == [INVOICE_DIR, STATEMENT_DIR]
        assert all(kind == stat.S_IFDIR for _, _, kind in listing)

    def test_item_dir_lists_attachments(self, adapter) -> None:
        listing = adapter.readdir(item_ino(2))
        assert listing == [
            ("2024-01-15_083000_Acme_0_part0.pdf", attachment_ino(2, 0), stat.S_IFREG)
        ]

    def test_lookup(self, adapter) -> None:
        ino, attrs = adapter.lookup(ROOT_INO, INVOICE_DIR)
        assert ino == item_ino(2)
        assert stat.S_ISDIR(attrs["st_mode"])

    def test_lookup_missing(self, adapter) -> None:
        with pytest.raises(NoSuchEntry):
            adapter.lookup(ROOT_INO, "nope")

    def test_file_is_not_a_directory(self, adapter) -> None:
        with pytest.raises(NotADirectory):
            adapter.readdir(attachment_ino(2, 0))
        with pytest.raises(NotADirectory):
            adapter.lookup(attachment_ino(2, 0), "x")

    def test_resolve_path_does_not_count(self, adapter) -> None:
        """Path walks used by the path-based shim take no references."""
        ino = adapter.resolve_path(f"/{INVOICE_DIR}/2024-01-15_083000_Acme_0_part0.pdf")
        assert ino == attachment_ino(2, 0)
        assert adapter._refs == {}

    def test_colliding_names_disambiguated(self, fake_client, cache, kivra_home) -> None:
        """Same date, sender and subject: the newer ordinal gets a suffix."""
        early = datetime(2024, 2, 1, 8, 0, tzinfo=timezone.utc)
        late = datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc)
        fake_client.add(make_item("a", subject="Reminder", created_at=early))
        fake_client.add(make_item("b", subject="Reminder", created_at=late))
        adapter = FilesystemAdapter(cache, AttachmentStore(fake_client, kivra_home / "c"))
        assert _names(adapter.readdir(ROOT_INO)) == [
            "2024-02-01_Acme_Reminder_2",
            "2024-02-01_Acme_Reminder",
        ]

    def test_discarded_name_stays_reserved(self, fake_client, cache, kivra_home) -> None:
        """Dropping the older of two colliding items renames neither survivor nor newcomer."""
        early = datetime(2024, 2, 1, 8, 0, tzinfo=timezone.utc)
        late = datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc)
        fake_client.add(make_item("a", subject="Reminder", created_at=early))
        fake_client.add(make_item("b", subject="Reminder", created_at=late))
        adapter = FilesystemAdapter(cache, AttachmentStore(fake_client, kivra_home / "c"))
        adapter.readdir(ROOT_INO)

        fake_client.remove("a")
        cache.refresh()
        assert _names(adapter.readdir(ROOT_INO)) == ["2024-02-01_Acme_Reminder_2"]
        assert cache.retired_ids() == frozenset()

        fake_client.add(
            make_item("c", subject="Reminder", created_at=datetime(2024, 2, 1, 10, 0, tzinfo=timezone.utc))
        )
        cache.refresh()
        assert _names(adapter.readdir(ROOT_INO)) == [
            "2024-02-01_Acme_Reminder_3",
            "2024-02-01_Acme_Reminder_2",
        ]

    def test_root_listing_from_one_snapshot(self, adapter, fake_client, cache) -> None:
        """A refresh landing mid-readdir does not mix two listings."""
        before = adapter.readdir(ROOT_INO)
        fake_client.remove("3")
        fake_client.add(make_item("9", subject="Notice", created_at=datetime(2024, 2, 1, tzinfo=timezone.utc)))
        take_snapshot = cache.snapshot

        def snapshot_then_refresh():
            current = take_snapshot()
            cache.refresh()
            return current

        with patch.object(cache, "snapshot", side_effect=snapshot_then_refresh):
            assert adapter.readdir(ROOT_INO) == before

        assert _names(adapter.readdir(ROOT_INO)) == ["2024-02-01_Acme_Notice", INVOICE_DIR]


class TestRetirement:
    """Tests for items that vanish while referenced."""

    def test_vanished_item(self, adapter, fake_client, cache) -> None:
        """A retired item drops out of readdir but its held inode still resolves."""
        assert _names(adapter.readdir(ROOT_INO)) == [INVOICE_DIR, STATEMENT_DIR]
        statement_ino, _ = adapter.lookup(ROOT_INO, STATEMENT_DIR)

        fake_client.remove("3")
        cache.refresh()

        assert _names(adapter.readdir(ROOT_INO)) == [INVOICE_DIR]
        assert stat.S_ISDIR(adapter.getattr(statement_ino)["st_mode"])
        with pytest.raises(NoSuchEntry):
            adapter.lookup(ROOT_INO, STATEMENT_DIR)

    def test_discarded_once_forgotten(self, adapter, fake_client, cache) -> None:
        statement_ino, _ = adapter.lookup(ROOT_INO, STATEMENT_DIR)
        fake_client.remove("3")
        cache.refresh()
        adapter.readdir(ROOT_INO)
        assert "3" in cache.retired_ids()

        adapter.forget(statement_ino, 1)
        adapter.readdir(ROOT_INO)
        assert cache.retired_ids() == frozenset()
        with pytest.raises(NoSuchEntry):
            adapter.getattr(statement_ino)

    def test_open_handle_survives(self, adapter, fake_client, cache) -> None:
        """An open file keeps reading after its item is gone remotely."""
        ino = attachment_ino(1, 0)
        fh = adapter.open(ino, os.O_RDONLY)
        assert adapter.read_handle(fh, 0, 100) == b"statement-pdf"

        fake_client.remove("3")
        cache.refresh()
        adapter.readdir(ROOT_INO)

        assert adapter.read_handle(fh, 0, 9) == b"statement"
        assert adapter.getattr(ino)["st_size"] == len(b"statement-pdf")
        adapter.release(fh)
        assert adapter.open_handles() == 0

    def test_open_file_path_resolves_after_retirement(self, adapter, fake_client, cache) -> None:
        """Path walks reach a held retired directory; name lookups do not."""
        path = f"/{STATEMENT_DIR}/2024-01-10_070000_Acme_0_part0.pdf"
        fh = adapter.open(adapter.resolve_path(path), os.O_RDONLY)

        fake_client.remove("3")
        cache.refresh()
        adapter.readdir(ROOT_INO)

        assert adapter.resolve_path(path) == attachment_ino(1, 0)
        assert adapter.resolve_path(f"/{STATEMENT_DIR}") == item_ino(1)
        with pytest.raises(NoSuchEntry):
            adapter.lookup(ROOT_INO, STATEMENT_DIR)

        adapter.release(fh)
        adapter.readdir(ROOT_INO)
        assert cache.retired_ids() == frozenset()
        with pytest.raises(NoSuchEntry):
            adapter.resolve_path(path)

    def test_open_directory_survives(self, adapter, fake_client, cache) -> None:
        """A directory handle keeps a retired item listable."""
        dh = adapter.opendir(adapter.resolve_path(f"/{STATEMENT_DIR}"))
        assert adapter.handle_ino(dh) == item_ino(1)

        fake_client.remove("3")
        cache.refresh()
        assert _names(adapter.readdir(ROOT_INO)) == [INVOICE_DIR]

        assert "3" in cache.retired_ids()
        assert _names(adapter.readdir(adapter.handle_ino(dh))) == [
            "2024-01-10_070000_Acme_0_part0.pdf"
        ]
        assert stat.S_ISDIR(adapter.getattr(adapter.handle_ino(dh))["st_mode"])

        adapter.release(dh)
        adapter.readdir(ROOT_INO)
        assert cache.retired_ids() == frozenset()
        assert adapter.open_handles() == 0


class TestFiles:
    """Tests for getattr/open/read on attachments."""

    def test_root_attrs(self, adapter) -> None:
        attrs = adapter.getattr(ROOT_INO)
        assert attrs["st_mode"] == stat.S_IFDIR | 0o555
        assert attrs["st_size"] == 4096

    def test_file_attrs(self, adapter) -> None:
        """Files are read-only, sized as advertised and dated by the item."""
        attrs = adapter.getattr(attachment_ino(2, 0))
        assert attrs["st_mode"] == stat.S_IFREG | 0o444
        assert attrs["st_size"] == len(b"invoice-pdf")
        assert attrs["st_mtime"] == JAN_15.timestamp()
        assert attrs["st_ino"] == attachment_ino(2, 0)

    def test_unknown_size_resolved_on_open(self, adapter, fake_client, cache) -> None:
        """Size is the sentinel until open() downloads the content."""
        item = make_item(
            "u",
            subject="Letter",
            created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
            attachments=[Attachment(index=0, name="letter.pdf", key="att-0")],
        )
        fake_client.add(item, [b"twelve bytes"])
        cache.refresh()
        ino = attachment_ino(cache.ordinal_of("u"), 0)

        assert adapter.getattr(ino)["st_size"] == 0
        fh = adapter.open(ino, os.O_RDONLY)
        assert adapter.getattr(ino)["st_size"] == len(b"twelve bytes")
        adapter.release(fh)

    def test_read_by_inode(self, adapter) -> None:
        assert adapter.read(attachment_ino(2, 0), 2, 5) == b"voice"

    def test_read_past_eof(self, adapter) -> None:
        assert adapter.read(attachment_ino(2, 0), 1000, 10) == b""

    @pytest.mark.parametrize("flags", [os.O_WRONLY, os.O_RDWR, os.O_RDONLY | os.O_TRUNC])
    def test_write_open_refused(self, adapter, flags: int) -> None:
        with pytest.raises(ReadOnly):
            adapter.open(attachment_ino(2, 0), flags)

    def test_open_directory(self, adapter) -> None:
        with pytest.raises(IsADirectory):
            adapter.open(item_ino(2), os.O_RDONLY)
        with pytest.raises(IsADirectory):
            adapter.open(ROOT_INO, os.O_RDONLY)

    def test_opendir(self, adapter) -> None:
        root = adapter.opendir(ROOT_INO)
        item = adapter.opendir(item_ino(2))
        assert root != item
        assert adapter.handle_ino(root) == ROOT_INO
        with pytest.raises(IsADirectory):
            adapter.read_handle(item, 0, 10)
        adapter.release(root)
        adapter.release(item)
        assert adapter.open_handles() == 0
        assert adapter._refs == {}

    def test_opendir_on_file(self, adapter) -> None:
        with pytest.raises(NotADirectory):
            adapter.opendir(attachment_ino(2, 0))
        with pytest.raises(NoSuchEntry):
            adapter.opendir(item_ino(99))

    def test_missing_attachment_index(self, adapter) -> None:
        with pytest.raises(NoSuchEntry):
            adapter.getattr(attachment_ino(2, 5))

    def test_unknown_ordinal(self, adapter) -> None:
        with pytest.raises(NoSuchEntry):
            adapter.getattr(item_ino(99))

    def test_unknown_handle(self, adapter) -> None:
        with pytest.raises(NoSuchEntry):
            adapter.read_handle(12345, 0, 10)
