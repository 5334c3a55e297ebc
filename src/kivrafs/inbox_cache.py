"""
Inbox Cache: in-memory mirror of the remote item collection.

Readers always see one immutable snapshot. ``refresh()`` pages through
the listing, merges the result into a *new* snapshot and swaps a single
reference under the writer lock, so a reader never sees a half-merged
inbox.

Every item id gets a positive ordinal the first time it is seen. The
ordinal is the numeric identity the filesystem builds inode numbers
from; it is never handed to another id and comes back if a retired id
reappears.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from .client import RemoteClient
from .errors import KivraFSError, NotFound, RefreshFailed, SchemaError, Unauthenticated
from .models import InboxItem

logger = logging.getLogger("kivrafs.inbox_cache")

MAX_PAGES = 10_000


@dataclass(frozen=True)
class CacheEntry:
    """One cached item.

    Attributes:
        item: The item as last seen remotely (read flag merged in).
        fetched_at: Monotonic time of the refresh that produced it.
        ordinal: Stable numeric identity of the item id.
        retired: The item vanished from the remote listing.
    """

    item: InboxItem
    fetched_at: float
    ordinal: int
    retired: bool = False

    @property
    def item_id(self) -> str:
        return self.item.key


@dataclass(frozen=True)
class Snapshot:
    """One immutable view of the inbox.

    ``order`` lists the live ids of ``entries`` newest first; the two
    always belong to the same refresh.
    """

    entries: Dict[str, CacheEntry]
    order: Tuple[str, ...]
    fetched_at: Optional[float]
    version: int


def _listing_order(entries: Dict[str, CacheEntry]) -> Tuple[str, ...]:
    """Newest first; ties broken by id. Retired entries are left out."""
    live = [e for e in entries.values() if not e.retired]
    live.sort(key=lambda e: (-e.item.created_at.timestamp(), e.item_id))
    return tuple(e.item_id for e in live)


class InboxCache:
    """Periodically refreshed view of the inbox.

    Args:
        client: Remote client used for listing and item detail.
        staleness_seconds: Age after which an access triggers a
            background refresh.
        clock: Monotonic clock (tests inject a fake one).
    """

    def __init__(
        self,
        client: RemoteClient,
        staleness_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._staleness = staleness_seconds
        self._clock = clock
        self._snapshot = Snapshot(entries={}, order=(), fetched_at=None, version=0)

        self._write_lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._background_lock = threading.Lock()
        self._background: Optional[threading.Thread] = None
        self._closed = False
        self._last_attempt: Optional[float] = None

        self._ordinals: Dict[str, int] = {}
        self._ids_by_ordinal: Dict[int, str] = {}
        self._locally_read: set = set()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self) -> int:
        """Reload the full listing and swap in a new snapshot.

        Returns:
            Number of live (non-retired) items after the refresh.

        Raises:
            RefreshFailed: The listing could not be loaded; the previous
                snapshot is still being served.
            Unauthenticated: There is no usable session.
        """
        with self._refresh_lock:
            return self._refresh_locked()

    def _refresh_locked(self) -> int:
        self._last_attempt = self._clock()
        try:
            items = self._fetch_listing()
        except Unauthenticated as exc:
            logger.warning("Inbox refresh needs a login: %s", exc)
            raise
        except KivraFSError as exc:
            logger.warning("Inbox refresh failed, keeping previous listing: %s", exc)
            raise RefreshFailed(f"Inbox refresh failed: {exc}") from exc

        now = self._clock()
        with self._write_lock:
            snapshot = self._merge(self._snapshot, items, now)
            self._snapshot = snapshot
        logger.info(
            "Inbox refreshed: %d items, %d retired",
            len(snapshot.order),
            len(snapshot.entries) - len(snapshot.order),
        )
        return len(snapshot.order)

    def _fetch_listing(self) -> List[InboxItem]:
        items: Dict[str, InboxItem] = {}
        cursor: Optional[str] = None
        seen_cursors = set()
        for _ in range(MAX_PAGES):
            page = self._client.list_items(cursor)
            for item in page.items:
                items.setdefault(item.key, item)
            cursor = page.next_cursor
            if not cursor:
                return list(items.values())
            if cursor in seen_cursors:
                raise SchemaError(f"Listing cursor {cursor!r} repeats")
            seen_cursors.add(cursor)
        raise SchemaError(f"Listing did not end after {MAX_PAGES} pages")

    def _merge(self, previous: Snapshot, items: List[InboxItem], now: float) -> Snapshot:
        # Called with the write lock held.
        fresh = [item for item in items if item.key not in self._ordinals]
        for item in sorted(fresh, key=lambda i: (i.created_at, i.key)):
            self._assign_ordinal(item.key)

        entries: Dict[str, CacheEntry] = {}
        for item in items:
            old = previous.entries.get(item.key)
            if old is not None and item.attachments is None:
                item = item.model_copy(update={"attachments": old.item.attachments})
            if item.key in self._locally_read and not item.is_read:
                item = item.model_copy(update={"status": "read"})
            entries[item.key] = CacheEntry(item=item, fetched_at=now, ordinal=self._ordinals[item.key])

        for key, old in previous.entries.items():
            if key not in entries:
                if not old.retired:
                    logger.debug("Item %s vanished from the listing, retiring", key)
                entries[key] = old if old.retired else dataclasses.replace(old, retired=True)

        return Snapshot(
            entries=entries,
            order=_listing_order(entries),
            fetched_at=now,
            version=previous.version + 1,
        )

    def _assign_ordinal(self, item_id: str) -> int:
        ordinal = len(self._ordinals) + 1
        self._ordinals[item_id] = ordinal
        self._ids_by_ordinal[ordinal] = item_id
        return ordinal

    def _replace_entries(self, entries: Dict[str, CacheEntry]) -> None:
        # Called with the write lock held.
        previous = self._snapshot
        self._snapshot = Snapshot(
            entries=entries,
            order=_listing_order(entries),
            fetched_at=previous.fetched_at,
            version=previous.version + 1,
        )

    def ensure_fresh(self) -> None:
        """Load the inbox on first use, or start a background refresh once stale.

        Raises:
            RefreshFailed: Only when nothing has ever been loaded.
        """
        if self._snapshot.fetched_at is None:
            with self._refresh_lock:
                if self._snapshot.fetched_at is None:
                    self._refresh_locked()
            return

        last = max(self._snapshot.fetched_at, self._last_attempt or 0.0)
        if self._clock() - last > self._staleness:
            self._refresh_in_background()

    def _refresh_in_background(self) -> None:
        with self._background_lock:
            if self._closed:
                return
            if self._background is not None and self._background.is_alive():
                return
            self._background = threading.Thread(
                target=self._background_refresh, name="kivrafs-refresh", daemon=True
            )
            self._background.start()

    def _background_refresh(self) -> None:
        try:
            self.refresh()
        except KivraFSError as exc:
            logger.debug("Background refresh did not complete: %s", exc)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        """Changes every time a new snapshot is swapped in."""
        return self._snapshot.version

    def get(self, item_id: str) -> CacheEntry:
        """Return the entry for an id, retired entries included.

        Raises:
            NotFound: The id is unknown (or was discarded).
        """
        self.ensure_fresh()
        entry = self._snapshot.entries.get(item_id)
        if entry is None:
            raise NotFound(f"No inbox item {item_id}")
        return entry

    def snapshot(self) -> Snapshot:
        """The current snapshot, loading the inbox on first use."""
        self.ensure_fresh()
        return self._snapshot

    def list(self) -> List[CacheEntry]:
        """Live entries in listing order (newest first)."""
        snapshot = self.snapshot()
        return [snapshot.entries[key] for key in snapshot.order]

    def item_id_for(self, ordinal: int) -> Optional[str]:
        return self._ids_by_ordinal.get(ordinal)

    def ordinal_of(self, item_id: str) -> Optional[int]:
        return self._ordinals.get(item_id)

    def retired_ids(self) -> FrozenSet[str]:
        return frozenset(key for key, e in self._snapshot.entries.items() if e.retired)

    def details(self, item_id: str) -> CacheEntry:
        """Return the entry with its attachment descriptors loaded.

        Descriptors are fetched once per item and kept across refreshes.

        Raises:
            NotFound: The item is unknown or no longer exists remotely
                (in which case it is retired).
        """
        entry = self.get(item_id)
        if entry.item.attachments is not None:
            return entry

        try:
            detail = self._client.get_item_detail(item_id, summary=entry.item)
        except NotFound:
            self._retire(item_id)
            raise

        with self._write_lock:
            current = self._snapshot.entries.get(item_id)
            if current is None:
                raise NotFound(f"Inbox item {item_id} was discarded")
            if current.item.attachments is not None:
                return current
            updated = dataclasses.replace(
                current,
                item=current.item.model_copy(update={"attachments": detail.attachments or []}),
            )
            entries = dict(self._snapshot.entries)
            entries[item_id] = updated
            self._replace_entries(entries)
        return updated

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def mark_read(self, item_id: str) -> None:
        """Mark an item read remotely, then locally."""
        self.get(item_id)
        self._client.mark_read(item_id)
        self.mark_read_locally(item_id)

    def mark_read_locally(self, item_id: str) -> None:
        """Flag an item read in the cache; survives later refreshes."""
        with self._write_lock:
            self._locally_read.add(item_id)
            current = self._snapshot.entries.get(item_id)
            if current is None or current.item.is_read:
                return
            entries = dict(self._snapshot.entries)
            entries[item_id] = dataclasses.replace(
                current, item=current.item.model_copy(update={"status": "read"})
            )
            self._replace_entries(entries)

    def discard(self, item_id: str) -> bool:
        """Drop a retired entry. Its ordinal stays reserved.

        Returns:
            True if an entry was removed.
        """
        with self._write_lock:
            current = self._snapshot.entries.get(item_id)
            if current is None or not current.retired:
                return False
            entries = dict(self._snapshot.entries)
            del entries[item_id]
            self._replace_entries(entries)
        logger.debug("Discarded retired item %s", item_id)
        return True

    def _retire(self, item_id: str) -> None:
        with self._write_lock:
            current = self._snapshot.entries.get(item_id)
            if current is None or current.retired:
                return
            entries = dict(self._snapshot.entries)
            entries[item_id] = dataclasses.replace(current, retired=True)
            self._replace_entries(entries)
        logger.info("Item %s no longer exists remotely, retiring", item_id)

    def close(self, timeout: float = 5.0) -> None:
        """Stop scheduling refreshes and wait for a running one."""
        with self._background_lock:
            self._closed = True
            worker = self._background
        if worker is not None and worker.is_alive():
            worker.join(timeout)
