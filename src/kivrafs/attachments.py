"""
Attachment Store: lazy, single-flight download into a local cache.

A cached attachment is one file, ``<cache_dir>/<quoted item id>.<index>``.
Downloads stream into ``<cache_dir>/.partial/`` and are renamed into
place only once complete and flushed, so the presence of the final file
is the only validity marker. A stream that breaks off is restarted from
the beginning with backoff. A crash leaves at most a stray partial
file, which ``purge_partials()`` removes on the next start.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import quote

from .client import RemoteClient
from .config import RetryConfig
from .errors import FetchFailed, KivraFSError, TransientTransport
from .models import Attachment

logger = logging.getLogger("kivrafs.attachments")

PARTIAL_DIR = ".partial"


class AttachmentStore:
    """Download-on-first-read cache of attachment content.

    Args:
        client: Remote client that streams attachment bytes.
        cache_dir: Directory holding the cached files.
        retry: Backoff policy for downloads that break off mid-stream.
    """

    def __init__(
        self, client: RemoteClient, cache_dir: Path, retry: Optional[RetryConfig] = None
    ) -> None:
        self._client = client
        self.cache_dir = Path(cache_dir)
        self.retry = retry or RetryConfig()
        self._partial_dir = self.cache_dir / PARTIAL_DIR
        self._locks: Dict[Tuple[str, int], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._stopping = threading.Event()

    def path_for(self, item_id: str, index: int) -> Path:
        return self.cache_dir / f"{quote(item_id, safe='')}.{index}"

    def _lock_for(self, item_id: str, index: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((item_id, index), threading.Lock())

    # ------------------------------------------------------------------
    # Fetch / read
    # ------------------------------------------------------------------

    def fetch(self, item_id: str, index: int, attachment: Optional[Attachment] = None) -> Path:
        """Make the attachment resident and return its local path.

        Concurrent callers for the same attachment share one download.

        Args:
            item_id: Parent item identity.
            index: Attachment index.
            attachment: Descriptor, saves a detail request when known.

        Returns:
            Path of the complete cached file.

        Raises:
            FetchFailed: The download failed or the store is shutting
                down. Nothing is left behind; the next call starts over.
        """
        final = self.path_for(item_id, index)
        if final.exists():
            return final

        with self._lock_for(item_id, index):
            if final.exists():
                return final
            if self._stopping.is_set():
                raise FetchFailed(f"Store is shutting down, not fetching {item_id}/{index}")
            self._download(item_id, index, attachment, final)
            # Later callers find the final file before they ever need the lock.
            with self._locks_guard:
                self._locks.pop((item_id, index), None)
        return final

    def _download(
        self, item_id: str, index: int, attachment: Optional[Attachment], final: Path
    ) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._partial_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f"{final.name}.", dir=self._partial_dir)
        os.close(fd)
        tmp_path = Path(tmp_name)
        attempts = self.retry.max_attempts
        try:
            for attempt in range(attempts):
                try:
                    written = self._stream_to(tmp_path, item_id, index, attachment)
                    break
                except TransientTransport as exc:
                    if attempt == attempts - 1:
                        raise
                    delay = self.retry.delay(attempt)
                    logger.info(
                        "Download of %s/%d broke off (%s), retry %d/%d in %.1fs",
                        item_id, index, exc, attempt + 1, attempts - 1, delay,
                    )
                    if self._stopping.wait(delay):
                        raise FetchFailed(f"Download of {item_id}/{index} aborted by shutdown")
            os.replace(tmp_path, final)
        except FetchFailed:
            tmp_path.unlink(missing_ok=True)
            raise
        except (KivraFSError, OSError) as exc:
            tmp_path.unlink(missing_ok=True)
            logger.warning("Download of %s/%d failed: %s", item_id, index, exc)
            raise FetchFailed(f"Download of {item_id}/{index} failed: {exc}") from exc

        expected = attachment.advertised_size if attachment is not None else None
        if expected is not None and expected != written:
            logger.warning(
                "Attachment %s/%d advertised %d bytes but delivered %d",
                item_id, index, expected, written,
            )
        logger.info("Cached %s/%d (%d bytes)", item_id, index, written)

    def _stream_to(
        self, tmp_path: Path, item_id: str, index: int, attachment: Optional[Attachment]
    ) -> int:
        """Write the whole attachment into ``tmp_path``, starting from empty."""
        chunks = self._client.iter_attachment(item_id, index, attachment=attachment)
        written = 0
        try:
            with tmp_path.open("wb") as fh:
                for chunk in chunks:
                    if self._stopping.is_set():
                        raise FetchFailed(f"Download of {item_id}/{index} aborted by shutdown")
                    fh.write(chunk)
                    written += len(chunk)
                fh.flush()
                os.fsync(fh.fileno())
        finally:
            chunks.close()
        return written

    def read(
        self,
        item_id: str,
        index: int,
        offset: int,
        length: int,
        attachment: Optional[Attachment] = None,
    ) -> bytes:
        """Read ``length`` bytes at ``offset``, fetching first if needed.

        Reading at or past the end of the file returns ``b""``.
        """
        path = self.fetch(item_id, index, attachment)
        with path.open("rb") as fh:
            fh.seek(max(offset, 0))
            return fh.read(max(length, 0))

    def cached_size(self, item_id: str, index: int) -> Optional[int]:
        """Size of the resident file, or None if not fetched yet."""
        try:
            return self.path_for(item_id, index).stat().st_size
        except FileNotFoundError:
            return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def purge_partials(self) -> int:
        """Remove leftovers of interrupted downloads. Returns the count."""
        if not self._partial_dir.is_dir():
            return 0
        removed = 0
        for leftover in self._partial_dir.iterdir():
            try:
                leftover.unlink()
                removed += 1
            except OSError as exc:
                logger.warning("Could not remove partial download %s: %s", leftover, exc)
        if removed:
            logger.info("Removed %d partial download(s)", removed)
        return removed

    def shutdown(self, timeout: float = 5.0) -> None:
        """Abort in-flight downloads and wait for them to let go."""
        self._stopping.set()
        with self._locks_guard:
            locks = list(self._locks.values())
        for lock in locks:
            if lock.acquire(timeout=timeout):
                lock.release()
