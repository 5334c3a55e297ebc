"""
FUSE Mount: the mailbox as a read-only filesystem.

Directory layout::

    /
    ├── 2024-01-15_Acme_Energy_Invoice/
    │   └── 2024-01-15_083000_Acme_Energy_0_invoice.pdf
    └── 2024-01-10_Bank_Statement/
        └── 2024-01-10_070000_Bank_0_Statement.pdf

:class:`KivraFS` is the path-based ``fusepy`` operations object; it
resolves paths to inodes and delegates to the
:class:`~kivrafs.adapter.FilesystemAdapter`. :class:`MountDaemon`
runs it as a detached background process and manages its lifecycle.

``fusepy`` needs libfuse at import time, so it is imported lazily.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import signal
import stat
import subprocess
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .adapter import FilesystemAdapter
from .config import AppConfig, load_config
from .errors import KivraFSError, MountError, ReadOnly
from .inbox_cache import InboxCache
from .runtime import build_components
from .session import pid_alive

logger = logging.getLogger("kivrafs.fuse")

FSNAME = "kivrafs"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_QUIET_ERRNOS = (errno.ENOENT, errno.ENODATA)
REFRESH_TRIGGER = "refresh"


# ---------------------------------------------------------------------------
# KivraFS: fusepy operations
# ---------------------------------------------------------------------------


class KivraFS:
    """fusepy ``Operations`` implementation over a FilesystemAdapter.

    .. code-block:: python

        import fuse
        fuse.FUSE(KivraFS(adapter), mount_point, foreground=True, ro=True, use_ino=True)

    Every kivrafs error becomes an ``OSError`` carrying the error's
    errno, so one failing call never affects the rest of the mount.

    Args:
        adapter: The inode-level filesystem.
    """

    def __init__(self, adapter: FilesystemAdapter) -> None:
        self.adapter = adapter

    def __call__(self, op: str, *args: Any) -> Any:
        handler = getattr(self, op, None)
        if handler is None:
            raise OSError(errno.EFAULT, f"Unsupported operation {op}")
        try:
            return handler(*args)
        except KivraFSError as exc:
            path = args[0] if args and isinstance(args[0], str) else None
            level = logging.DEBUG if exc.errno in _QUIET_ERRNOS else logging.WARNING
            logger.log(level, "%s %s failed: %s", op, path, exc)
            raise OSError(exc.errno, str(exc), path) from exc
        except OSError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error in %s", op)
            raise OSError(errno.EIO, str(exc)) from exc

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, path: str) -> None:
        logger.info("Filesystem initialised")

    def destroy(self, path: str) -> None:
        self.adapter.shutdown()

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def _ino(self, path: str, fh: Optional[int]) -> int:
        # An open handle outlives its path once the item is retired.
        if fh:
            return self.adapter.handle_ino(fh)
        return self.adapter.resolve_path(path)

    def getattr(self, path: str, fh: Optional[int] = None) -> Dict[str, Any]:
        return self.adapter.getattr(self._ino(path, fh))

    def access(self, path: str, amode: int) -> int:
        self.adapter.resolve_path(path)
        if amode & os.W_OK:
            raise ReadOnly(f"{path} is read-only")
        return 0

    def opendir(self, path: str) -> int:
        return self.adapter.opendir(self.adapter.resolve_path(path))

    def readdir(self, path: str, fh: int) -> List[Tuple[str, Dict[str, int], int]]:
        """List a directory, handing the kernel our inode numbers."""
        ino = self._ino(path, fh)
        entries: List[Tuple[str, Dict[str, int], int]] = [
            (".", {"st_ino": ino, "st_mode": stat.S_IFDIR}, 0),
            ("..", {"st_mode": stat.S_IFDIR}, 0),
        ]
        for name, child_ino, kind in self.adapter.readdir(ino):
            entries.append((name, {"st_ino": child_ino, "st_mode": kind}, 0))
        return entries

    def releasedir(self, path: str, fh: int) -> int:
        self.adapter.release(fh)
        return 0

    def open(self, path: str, flags: int) -> int:
        return self.adapter.open(self.adapter.resolve_path(path), flags)

    def read(self, path: str, size: int, offset: int, fh: int) -> bytes:
        return self.adapter.read_handle(fh, offset, size)

    def release(self, path: str, fh: int) -> int:
        self.adapter.release(fh)
        return 0

    def statfs(self, path: str) -> Dict[str, int]:
        return {
            "f_bsize": 4096,
            "f_frsize": 4096,
            "f_blocks": 0,
            "f_bfree": 0,
            "f_bavail": 0,
            "f_files": len(self.adapter.cache.list()) + 1,
            "f_ffree": 0,
            "f_namemax": 255,
        }

    def getxattr(self, path: str, name: str, position: int = 0) -> bytes:
        self.adapter.resolve_path(path)
        raise OSError(errno.ENODATA, "No such attribute", path)

    def listxattr(self, path: str) -> List[str]:
        self.adapter.resolve_path(path)
        return []

    # ------------------------------------------------------------------
    # Everything that would modify the mailbox
    # ------------------------------------------------------------------

    def _read_only(self, path: str, *args: Any) -> None:
        raise ReadOnly(f"{path}: the mailbox is mounted read-only")

    chmod = chown = create = mkdir = mknod = rmdir = unlink = _read_only
    rename = link = symlink = truncate = write = utimens = _read_only
    setxattr = removexattr = _read_only


# ---------------------------------------------------------------------------
# MountDaemon: lifecycle manager
# ---------------------------------------------------------------------------


class MountDaemon:
    """Mount, unmount and report on the kivrafs filesystem.

    State lives in ``<home>/fuse/``: ``mount_state.json``, ``mount.pid``
    and, while a reload is pending, the ``refresh`` trigger file.

    Args:
        config: Loaded configuration (home, timeouts, cache paths).
        mount_point: Existing, empty directory to mount on.
    """

    _PID_FILE = "mount.pid"
    _STATE_FILE = "mount_state.json"
    _POLL_INTERVAL = 0.2
    _TRIGGER_INTERVAL = 1.0

    def __init__(self, config: AppConfig, mount_point: Path) -> None:
        self.config = config
        self._home = config.home.expanduser()
        self._mount_point = Path(mount_point).expanduser().absolute()
        self._state_dir = self._home / "fuse"

    @property
    def mount_point(self) -> Path:
        return self._mount_point

    def _state_file(self) -> Path:
        return self._state_dir / self._STATE_FILE

    def _pid_file(self) -> Path:
        return self._state_dir / self._PID_FILE

    def _refresh_file(self) -> Path:
        return self._state_dir / REFRESH_TRIGGER

    def _write_state(self, mounted: bool, pid: Optional[int] = None) -> None:
        """Persist the mount state to disk.

        Args:
            mounted: Whether the filesystem is currently mounted.
            pid: Process ID of the mount process (if any).
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        state = {
            "mounted": mounted,
            "mount_point": str(self._mount_point),
            "home": str(self._home),
            "pid": pid,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        tmp = self._state_file().with_suffix(".tmp")
        tmp.write_text(json.dumps(state, indent=2), encoding="utf-8")
        tmp.replace(self._state_file())

    def _read_state(self) -> Optional[Dict[str, Any]]:
        path = self._state_file()
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return None

    def read_pid(self) -> Optional[int]:
        """PID of a live mount process, or None (stale files are removed)."""
        pid_path = self._pid_file()
        if not pid_path.exists():
            return None
        try:
            pid = int(pid_path.read_text(encoding="utf-8").strip())
        except (ValueError, OSError):
            pid_path.unlink(missing_ok=True)
            return None
        if not pid_alive(pid):
            pid_path.unlink(missing_ok=True)
            return None
        return pid

    def _is_mounted(self) -> bool:
        """Check whether the mount point is currently active.

        Uses ``/proc/mounts`` on Linux and the ``mount`` command elsewhere.
        """
        mount_str = str(self._mount_point)

        proc_mounts = Path("/proc/mounts")
        if proc_mounts.exists():
            try:
                for line in proc_mounts.read_text(encoding="utf-8").splitlines():
                    parts = line.split()
                    if len(parts) >= 2 and parts[1].replace("\\040", " ") == mount_str:
                        return True
            except OSError as exc:
                logger.debug("Cannot read /proc/mounts: %s", exc)
            return False

        try:
            result = subprocess.run(["mount"], capture_output=True, text=True, timeout=5)
            return f" on {mount_str} " in result.stdout
        except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
            return False

    def _validate_mount_point(self) -> None:
        if not self._mount_point.is_dir():
            raise MountError(f"Mount point {self._mount_point} is not an existing directory")
        if any(self._mount_point.iterdir()):
            raise MountError(f"Mount point {self._mount_point} is not empty")

    # ------------------------------------------------------------------
    # start / stop / status
    # ------------------------------------------------------------------

    def start(self, foreground: bool = False) -> Optional[int]:
        """Mount the filesystem.

        In the background case a detached child runs the mount and this
        call returns once the kernel lists the mount point.

        Args:
            foreground: Run the mount in this process (blocks until
                unmounted). Useful for debugging.

        Returns:
            PID of the mount process, or None if it was already mounted
            or ran in the foreground.

        Raises:
            MountError: Unusable mount point, or the mount process
                exited or did not become ready in time.
        """
        if self._is_mounted():
            logger.info("Already mounted at %s", self._mount_point)
            return None
        self._validate_mount_point()

        if foreground:
            self.run_foreground()
            return None

        logger.info("Mounting mailbox at %s (background)", self._mount_point)
        script = (
            "from pathlib import Path; "
            "from kivrafs.config import load_config; "
            "from kivrafs.fuse_mount import MountDaemon; "
            f"MountDaemon(load_config(Path({str(self._home)!r})), "
            f"Path({str(self._mount_point)!r})).run_foreground()"
        )
        try:
            proc = subprocess.Popen(
                [sys.executable, "-c", script],
                start_new_session=True,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise MountError(f"Failed to start mount process: {exc}") from exc

        deadline = time.monotonic() + self.config.mount_ready_timeout
        while time.monotonic() < deadline:
            if self._is_mounted():
                logger.info("Mount process %d is serving %s", proc.pid, self._mount_point)
                return proc.pid
            returncode = proc.poll()
            if returncode is not None:
                raise MountError(
                    f"Mount process exited with status {returncode}; "
                    f"see {self.config.log_dir / 'mount.log'}"
                )
            time.sleep(self._POLL_INTERVAL)

        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
        raise MountError(
            f"Mount at {self._mount_point} not ready after {self.config.mount_ready_timeout:.0f}s"
        )

    def run_foreground(self) -> None:
        """Serve the filesystem in this process until it is unmounted.

        Raises:
            MountError: fusepy/libfuse is unavailable.
            Unauthenticated: There is no usable session.
        """
        try:
            import fuse  # type: ignore[import]
        except (ImportError, OSError) as exc:
            raise MountError(f"fusepy/libfuse is not available: {exc}") from exc

        self._setup_logging()
        components = build_components(self.config)
        try:
            session = components.sessions.current_session()
            logger.info(
                "Mounting mailbox of %s at %s",
                session.user_info.name or session.user_id,
                self._mount_point,
            )
            adapter = FilesystemAdapter(
                components.cache, components.store, unknown_size=self.config.unknown_size
            )
            components.store.purge_partials()
            self._write_state(mounted=True, pid=os.getpid())
            self._pid_file().write_text(str(os.getpid()), encoding="utf-8")
            self._default_signals()
            self._refresh_file().unlink(missing_ok=True)
            stop_watch = threading.Event()
            watcher = threading.Thread(
                target=self._watch_refresh,
                args=(components.cache, stop_watch),
                name="kivrafs-refresh-trigger",
                daemon=True,
            )
            watcher.start()
            try:
                fuse.FUSE(
                    KivraFS(adapter),
                    str(self._mount_point),
                    foreground=True,
                    nothreads=False,
                    ro=True,
                    use_ino=True,
                    fsname=FSNAME,
                    direct_io=self.config.direct_io,
                )
            finally:
                stop_watch.set()
                watcher.join(5)
                adapter.shutdown()
                self._write_state(mounted=False)
                self._pid_file().unlink(missing_ok=True)
                logger.info("Unmounted %s", self._mount_point)
        finally:
            components.close()

    def _watch_refresh(self, cache: InboxCache, stop: threading.Event) -> None:
        """Reload the listing whenever ``kivrafs refresh`` drops the trigger file."""
        trigger = self._refresh_file()
        while not stop.wait(self._TRIGGER_INTERVAL):
            if not trigger.exists():
                continue
            trigger.unlink(missing_ok=True)
            logger.info("Refresh requested")
            try:
                cache.refresh()
            except KivraFSError as exc:
                logger.warning("Requested refresh failed: %s", exc)

    def _setup_logging(self) -> None:
        """Log to ``<home>/logs/mount.log``."""
        log_dir = self.config.log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / "mount.log")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(getattr(logging, self.config.log_level.upper(), logging.INFO))

    def _default_signals(self) -> None:
        """libfuse only installs its exit handlers over default dispositions."""
        for sig in (signal.SIGTERM, signal.SIGHUP, signal.SIGINT):
            signal.signal(sig, signal.SIG_DFL)

    def stop(self) -> bool:
        """Unmount the filesystem.

        Tries ``fusermount -u``, then ``umount``, then SIGTERM to the
        mount process.

        Returns:
            True if the filesystem is no longer mounted.
        """
        if not self._is_mounted():
            logger.info("Not mounted at %s", self._mount_point)
            self._write_state(mounted=False)
            self.read_pid()
            return True

        mount_str = str(self._mount_point)
        for cmd in (["fusermount", "-u", mount_str], ["umount", mount_str]):
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=10)
                if result.returncode == 0:
                    logger.info("Unmounted %s", mount_str)
                    self._write_state(mounted=False)
                    return True
                logger.debug(
                    "%s failed (rc=%d): %s",
                    " ".join(cmd), result.returncode, result.stderr.strip(),
                )
            except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as exc:
                logger.debug("Unmount command %s failed: %s", cmd, exc)

        pid = self.read_pid()
        if pid is not None:
            logger.info("Sending SIGTERM to mount process %d", pid)
            os.kill(pid, signal.SIGTERM)
            return True

        logger.error("Could not unmount %s; try: fusermount -u %s", mount_str, mount_str)
        return False

    def status(self) -> Dict[str, Any]:
        """Return the current mount status.

        Returns:
            Dictionary with keys ``mounted``, ``mount_point``, ``home``,
            ``pid`` and ``updated_at``.
        """
        state = self._read_state() or {}
        return {
            "mounted": self._is_mounted(),
            "mount_point": str(self._mount_point),
            "home": str(self._home),
            "pid": self.read_pid(),
            "updated_at": state.get("updated_at"),
        }


def daemon_for(home: Optional[Path], mount_point: Path) -> MountDaemon:
    return MountDaemon(load_config(home), mount_point)


def request_refresh(home: Optional[Path] = None) -> bool:
    """Ask the mount process serving ``home`` to reload the inbox listing.

    Returns:
        True if a live mount process was found and asked.
    """
    state_dir = load_config(home).home.expanduser() / "fuse"
    try:
        pid = int((state_dir / MountDaemon._PID_FILE).read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return False
    if not pid_alive(pid):
        return False
    (state_dir / REFRESH_TRIGGER).touch()
    return True
