"""
Filesystem Adapter: inode-level view of the inbox.

Inode numbers are derived from item ordinals::

    1                              root
    ordinal << 32                  item directory
    (ordinal << 32) + index + 1    attachment file

so they are stable for as long as the process lives and identical on a
fresh mount of the same inbox. The adapter keeps a kernel-style lookup
count and an open-handle count per inode; a retired item stays
reachable by inode while either is non-zero and is discarded from the
cache once nothing references it.
"""

from __future__ import annotations

import logging
import os
import stat
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from .attachments import AttachmentStore
from .errors import IsADirectory, NoSuchEntry, NotADirectory, NotFound, ReadOnly
from .inbox_cache import CacheEntry, InboxCache, Snapshot
from .models import Attachment
from .naming import assign_unique_names, attachment_file_name, item_dir_name

logger = logging.getLogger("kivrafs.adapter")

ROOT_INO = 1
INO_SHIFT = 32
INDEX_MASK = (1 << INO_SHIFT) - 1
DIR_SIZE = 4096

_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC


def item_ino(ordinal: int) -> int:
    return ordinal << INO_SHIFT


def attachment_ino(ordinal: int, index: int) -> int:
    return (ordinal << INO_SHIFT) + index + 1


def split_ino(ino: int) -> Tuple[int, Optional[int]]:
    """Return ``(ordinal, attachment index or None)`` for a non-root inode."""
    ordinal, low = ino >> INO_SHIFT, ino & INDEX_MASK
    return ordinal, (low - 1 if low else None)


def _stat(mode: int, ino: int, nlink: int, size: int, ts: float) -> Dict[str, Any]:
    return {
        "st_ino": ino,
        "st_mode": mode,
        "st_nlink": nlink,
        "st_uid": os.getuid(),
        "st_gid": os.getgid(),
        "st_size": size,
        "st_atime": ts,
        "st_mtime": ts,
        "st_ctime": ts,
    }


@dataclass
class _Refs:
    lookups: int = 0
    handles: int = 0

    @property
    def live(self) -> bool:
        return self.lookups > 0 or self.handles > 0


@dataclass(frozen=True)
class _Handle:
    ino: int
    item_id: Optional[str]
    attachment: Optional[Attachment] = None


class FilesystemAdapter:
    """Inode operations over an InboxCache and an AttachmentStore.

    Args:
        cache: Inbox mirror.
        store: Attachment content cache.
        unknown_size: ``st_size`` reported for attachments whose size is
            not known until downloaded.
    """

    def __init__(self, cache: InboxCache, store: AttachmentStore, unknown_size: int = 0) -> None:
        self.cache = cache
        self.store = store
        self.unknown_size = unknown_size
        self.mounted_at = time.time()

        self._lock = threading.Lock()
        self._refs: Dict[int, _Refs] = {}
        self._handles: Dict[int, _Handle] = {}
        self._next_fh = 1
        self._names_lock = threading.Lock()
        # Every directory name handed out during this mount, by ordinal.
        self._dir_names: Dict[int, str] = {}
        self._root_names: Tuple[int, Dict[int, str], Dict[str, int]] = (-1, {}, {})

    # ------------------------------------------------------------------
    # Name resolution
    # ------------------------------------------------------------------

    def _root_index(self) -> Tuple[Snapshot, Dict[int, str], Dict[str, int]]:
        """One snapshot, ``ordinal -> name`` for its held items and ``name -> ordinal`` for live ones.

        A directory keeps its name for the whole mount, and a name is
        not handed to another item even after its owner is discarded.
        """
        self._discard_unreferenced()
        snapshot = self.cache.snapshot()
        with self._names_lock:
            version, names, live = self._root_names
            if version == snapshot.version:
                return snapshot, names, live

            held = sorted(snapshot.entries.values(), key=lambda e: e.ordinal)
            fresh = [(e.ordinal, item_dir_name(e.item)) for e in held if e.ordinal not in self._dir_names]
            if fresh:
                self._dir_names.update(
                    assign_unique_names(fresh, reserved=self._dir_names.values())
                )
            names = {e.ordinal: self._dir_names[e.ordinal] for e in held}
            live = {names[e.ordinal]: e.ordinal for e in held if not e.retired}
            self._root_names = (snapshot.version, names, live)
        return snapshot, names, live

    def _attachment_names(self, entry: CacheEntry) -> Dict[int, str]:
        attachments = entry.item.attachments or []
        return assign_unique_names(
            ((a.index, attachment_file_name(entry.item, a)) for a in attachments),
            keep_extension=True,
        )

    def _entry(self, ordinal: int) -> CacheEntry:
        item_id = self.cache.item_id_for(ordinal)
        if item_id is None:
            raise NoSuchEntry(f"No item with ordinal {ordinal}")
        try:
            return self.cache.get(item_id)
        except NotFound as exc:
            raise NoSuchEntry(str(exc)) from exc

    def _details(self, ordinal: int) -> CacheEntry:
        entry = self._entry(ordinal)
        try:
            return self.cache.details(entry.item_id)
        except NotFound as exc:
            raise NoSuchEntry(str(exc)) from exc

    def _attachment(self, ino: int) -> Tuple[CacheEntry, Attachment]:
        ordinal, index = split_ino(ino)
        if index is None:
            raise IsADirectory(f"Inode {ino} is a directory")
        entry = self._details(ordinal)
        attachments = entry.item.attachments or []
        if index >= len(attachments):
            raise NoSuchEntry(f"Item {entry.item_id} has no attachment {index}")
        return entry, attachments[index]

    def _child(self, parent_ino: int, name: str, include_held: bool = False) -> int:
        if parent_ino == ROOT_INO:
            _, names, live = self._root_index()
            if name in live:
                return item_ino(live[name])
            if include_held:
                referenced = self._referenced_ordinals()
                for ordinal, held_name in names.items():
                    if held_name == name and ordinal in referenced:
                        return item_ino(ordinal)
            raise NoSuchEntry(f"No item named {name!r}")

        ordinal, index = split_ino(parent_ino)
        if index is not None:
            raise NotADirectory(f"Inode {parent_ino} is not a directory")
        entry = self._details(ordinal)
        for att_index, att_name in self._attachment_names(entry).items():
            if att_name == name:
                return attachment_ino(ordinal, att_index)
        raise NoSuchEntry(f"No attachment named {name!r} in {entry.item_id}")

    def resolve_path(self, path: str) -> int:
        """Walk a mount-relative path to an inode without touching lookup counts.

        Unlike :meth:`lookup`, a retired item's directory still resolves
        while something references it, so an open file or directory
        stays usable through its path.
        """
        ino = ROOT_INO
        for part in (p for p in path.split("/") if p):
            ino = self._child(ino, part, include_held=True)
        return ino

    # ------------------------------------------------------------------
    # Reference counting
    # ------------------------------------------------------------------

    def _referenced_ordinals(self) -> Set[int]:
        with self._lock:
            return {ino >> INO_SHIFT for ino, refs in self._refs.items() if refs.live}

    def _discard_unreferenced(self) -> None:
        retired = self.cache.retired_ids()
        if not retired:
            return
        referenced = self._referenced_ordinals()
        for item_id in retired:
            ordinal = self.cache.ordinal_of(item_id)
            if ordinal is not None and ordinal not in referenced:
                self.cache.discard(item_id)

    def forget(self, ino: int, nlookup: int) -> None:
        """Drop ``nlookup`` kernel references to an inode."""
        with self._lock:
            refs = self._refs.get(ino)
            if refs is None:
                return
            refs.lookups = max(refs.lookups - nlookup, 0)
            if not refs.live:
                del self._refs[ino]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def lookup(self, parent_ino: int, name: str) -> Tuple[int, Dict[str, Any]]:
        """Resolve a name in a directory and take one lookup reference.

        Raises:
            NoSuchEntry: Unknown name, or the item is retired.
            NotADirectory: ``parent_ino`` is a file.
        """
        ino = self._child(parent_ino, name)
        attrs = self.getattr(ino)
        with self._lock:
            self._refs.setdefault(ino, _Refs()).lookups += 1
        return ino, attrs

    def readdir(self, ino: int) -> List[Tuple[str, int, int]]:
        """List a directory as ``(name, ino, file type)`` triples.

        The root lists live items newest first; an item directory lists
        its attachments by index.
        """
        if ino == ROOT_INO:
            snapshot, names, _ = self._root_index()
            listing = (snapshot.entries[key] for key in snapshot.order)
            return [(names[e.ordinal], item_ino(e.ordinal), stat.S_IFDIR) for e in listing]

        ordinal, index = split_ino(ino)
        if index is not None:
            raise NotADirectory(f"Inode {ino} is not a directory")
        entry = self._details(ordinal)
        names = self._attachment_names(entry)
        return [
            (names[index], attachment_ino(ordinal, index), stat.S_IFREG)
            for index in sorted(names)
        ]

    def getattr(self, ino: int) -> Dict[str, Any]:
        if ino == ROOT_INO:
            return _stat(stat.S_IFDIR | 0o555, ROOT_INO, 2, DIR_SIZE, self.mounted_at)

        ordinal, index = split_ino(ino)
        if index is None:
            entry = self._entry(ordinal)
            ts = entry.item.created_at.timestamp()
            return _stat(stat.S_IFDIR | 0o555, ino, 2, DIR_SIZE, ts)

        entry, attachment = self._attachment(ino)
        ts = entry.item.created_at.timestamp()
        return _stat(stat.S_IFREG | 0o444, ino, 1, self._size(entry.item_id, attachment), ts)

    def _size(self, item_id: str, attachment: Attachment) -> int:
        resident = self.store.cached_size(item_id, attachment.index)
        if resident is not None:
            return resident
        advertised = attachment.advertised_size
        return advertised if advertised is not None else self.unknown_size

    def open(self, ino: int, flags: int) -> int:
        """Open an attachment for reading and return a handle.

        An attachment of unknown size is downloaded here so that the
        following ``getattr`` reports its real size.

        Raises:
            ReadOnly: Any write-ish flag.
            IsADirectory: ``ino`` is a directory.
        """
        if flags & _WRITE_FLAGS:
            raise ReadOnly("The mailbox is mounted read-only")
        if ino == ROOT_INO:
            raise IsADirectory("The root is a directory")
        entry, attachment = self._attachment(ino)
        if attachment.advertised_size is None:
            self.store.fetch(entry.item_id, attachment.index, attachment)

        return self._new_handle(_Handle(ino=ino, item_id=entry.item_id, attachment=attachment))

    def opendir(self, ino: int) -> int:
        """Open a directory and return a handle.

        Like an open file, the handle keeps a retired item's directory
        resolvable and listable until it is released.

        Raises:
            NotADirectory: ``ino`` is a file.
        """
        if ino == ROOT_INO:
            return self._new_handle(_Handle(ino=ino, item_id=None))
        ordinal, index = split_ino(ino)
        if index is not None:
            raise NotADirectory(f"Inode {ino} is not a directory")
        entry = self._entry(ordinal)
        return self._new_handle(_Handle(ino=ino, item_id=entry.item_id))

    def _new_handle(self, handle: _Handle) -> int:
        with self._lock:
            fh = self._next_fh
            self._next_fh += 1
            self._handles[fh] = handle
            self._refs.setdefault(handle.ino, _Refs()).handles += 1
        return fh

    def _handle(self, fh: int) -> _Handle:
        with self._lock:
            handle = self._handles.get(fh)
        if handle is None:
            raise NoSuchEntry(f"Unknown file handle {fh}")
        return handle

    def handle_ino(self, fh: int) -> int:
        """Inode an open file or directory handle refers to."""
        return self._handle(fh).ino

    def read(self, ino: int, offset: int, length: int) -> bytes:
        entry, attachment = self._attachment(ino)
        return self.store.read(entry.item_id, attachment.index, offset, length, attachment)

    def read_handle(self, fh: int, offset: int, length: int) -> bytes:
        """Read through an open handle; works even if the item was retired."""
        handle = self._handle(fh)
        if handle.attachment is None:
            raise IsADirectory(f"Handle {fh} is a directory")
        return self.store.read(
            handle.item_id, handle.attachment.index, offset, length, handle.attachment
        )

    def release(self, fh: int) -> None:
        with self._lock:
            handle = self._handles.pop(fh, None)
            if handle is None:
                return
            refs = self._refs.get(handle.ino)
            if refs is not None:
                refs.handles = max(refs.handles - 1, 0)
                if not refs.live:
                    del self._refs[handle.ino]

    def open_handles(self) -> int:
        with self._lock:
            return len(self._handles)

    def shutdown(self) -> None:
        """Stop background refresh and abort downloads."""
        self.cache.close()
        self.store.shutdown()
        logger.info("Filesystem adapter shut down")
