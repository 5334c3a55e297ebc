"""
Session Manager: the single owner of the persisted credential.

Everything that needs a token goes through :class:`SessionManager`.
The session lives in one private JSON file; writes are atomic and
serialised so a refresh racing a login cannot corrupt it.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .auth import AuthClient, session_from_tokens
from .errors import (
    AlreadyInProgress,
    Corrupt,
    KivraFSError,
    LoginCancelled,
    LoginFailed,
    NotFound,
    RemoteError,
    Unauthenticated,
)
from .models import SESSION_FORMAT_VERSION, Session

logger = logging.getLogger("kivrafs.session")

EXPIRY_SKEW_SECONDS = 30.0


# ---------------------------------------------------------------------------
# SessionStore: file persistence
# ---------------------------------------------------------------------------


class SessionStore:
    """Private on-disk storage for one Session.

    Args:
        path: Session file location (created with mode 0600).
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def mtime_ns(self) -> Optional[int]:
        try:
            return self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def load(self) -> Optional[Session]:
        """Read the stored session.

        Returns:
            The Session, or None if no file exists.

        Raises:
            Corrupt: If the file exists but cannot be decoded.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise Corrupt(f"Cannot read session file {self.path}: {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise Corrupt(f"Session file {self.path} is not valid JSON") from exc
        if not isinstance(data, dict) or data.get("version") != SESSION_FORMAT_VERSION:
            raise Corrupt(f"Session file {self.path} has an unsupported format")
        try:
            return Session.model_validate(data.get("session"))
        except ValidationError as exc:
            raise Corrupt(f"Session file {self.path} is incomplete") from exc

    def save(self, session: Session) -> None:
        """Atomically replace the stored session."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {"version": SESSION_FORMAT_VERSION, "session": session.model_dump(mode="json")},
            indent=2,
        )
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def delete(self) -> bool:
        """Remove the stored session. Returns True if a file was removed."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False


# ---------------------------------------------------------------------------
# LoginLock: one login flow per installation
# ---------------------------------------------------------------------------


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class LoginLock:
    """Exclusive lock file held for the duration of a login flow.

    The file holds the owner's pid. A lock left behind by a dead
    process is reclaimed.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                owner = self._owner()
                if owner is not None and pid_alive(owner):
                    raise AlreadyInProgress(f"Login already in progress (pid {owner})")
                logger.info("Removing stale login lock %s", self.path)
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(str(os.getpid()))
            self._held = True
            return
        raise AlreadyInProgress("Login lock is contended")

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def _owner(self) -> Optional[int]:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None


# ---------------------------------------------------------------------------
# SessionManager
# ---------------------------------------------------------------------------


class SessionManager:
    """Login, transparent refresh and logout over a SessionStore.

    Args:
        store: Where the session is persisted.
        auth: Client for the authentication endpoints.
        poll_interval: Minimum seconds between login status polls.
        poll_max_interval: Upper bound for server-suggested poll delays.
        login_timeout: Give up on a login flow after this many seconds.
    """

    def __init__(
        self,
        store: SessionStore,
        auth: AuthClient,
        poll_interval: float = 1.0,
        poll_max_interval: float = 5.0,
        login_timeout: float = 300.0,
    ) -> None:
        self._store = store
        self._auth = auth
        self._poll_interval = poll_interval
        self._poll_max_interval = max(poll_max_interval, poll_interval)
        self._login_timeout = login_timeout
        self._lock = threading.RLock()
        self._login_lock = LoginLock(store.path.with_name(f"{store.path.name}.lock"))
        self._cached: Optional[Session] = None
        self._cached_mtime: Optional[int] = None

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        render: Callable[[str], None],
        cancel: Optional[threading.Event] = None,
    ) -> Session:
        """Run the device-approval flow and persist the new session.

        Args:
            render: Called with the QR payload whenever it changes.
            cancel: Set it to abort the flow.

        Returns:
            The newly created Session.

        Raises:
            AlreadyInProgress: If another login flow is running.
            LoginCancelled: If ``cancel`` was set or the user hit Ctrl-C.
            LoginFailed: If the flow was rejected or timed out.
        """
        cancel = cancel or threading.Event()
        self._login_lock.acquire()
        poll_url: Optional[str] = None
        try:
            verifier, challenge = self._auth.start()
            poll_url = challenge.next_poll_url
            qr_code = challenge.qr_code
            render(qr_code)

            interval = self._poll_interval
            deadline = time.monotonic() + self._login_timeout
            while True:
                if cancel.wait(interval):
                    self._abort_quietly(poll_url)
                    raise LoginCancelled("Login cancelled")
                if time.monotonic() >= deadline:
                    self._abort_quietly(poll_url)
                    raise LoginFailed("Login timed out waiting for approval")

                status = self._auth.poll(poll_url)
                if status.is_complete:
                    break
                if status.is_failed:
                    raise LoginFailed(f"Login {status.status}: {status.message_code or ''}".strip())

                poll_url = status.next_poll_url or poll_url
                if status.qr_code and status.qr_code != qr_code:
                    qr_code = status.qr_code
                    render(qr_code)
                if status.retry_after is not None:
                    interval = min(
                        max(status.retry_after, self._poll_interval), self._poll_max_interval
                    )

            tokens = self._auth.exchange_code(challenge.code, verifier)
            session = session_from_tokens(tokens)
            with self._lock:
                self._store.save(session)
                self._remember(session)
            logger.info("Logged in as %s", session.user_info.name or session.user_id)
            return session
        except KeyboardInterrupt:
            if poll_url:
                self._abort_quietly(poll_url)
            raise LoginCancelled("Login cancelled") from None
        finally:
            self._login_lock.release()

    def _abort_quietly(self, poll_url: str) -> None:
        try:
            self._auth.abort(poll_url)
        except KivraFSError as exc:
            logger.debug("Abort of login poll failed: %s", exc)

    # ------------------------------------------------------------------
    # Session access
    # ------------------------------------------------------------------

    def current_session(self, force_refresh: bool = False) -> Session:
        """Return a usable session, refreshing it if it has expired.

        Args:
            force_refresh: Refresh even if the expiry has not passed
                (used after the service answered 401).

        Raises:
            Unauthenticated: No session, or it cannot be refreshed.
        """
        with self._lock:
            session = self._load()
            if session is None:
                raise Unauthenticated("Not logged in")
            if force_refresh or session.is_expired(EXPIRY_SKEW_SECONDS):
                session = self._refresh(session)
            return session

    def load_session(self) -> Optional[Session]:
        """The stored session as-is, without refreshing. None if absent."""
        with self._lock:
            return self._load()

    def logout(self) -> None:
        """Revoke and forget the stored session. Safe to call repeatedly."""
        with self._lock:
            try:
                session = self._store.load()
            except Corrupt:
                session = None
            if session is not None:
                try:
                    self._auth.revoke(session.access_token)
                except KivraFSError as exc:
                    logger.warning("Token revoke failed, removing session anyway: %s", exc)
            if self._store.delete():
                logger.info("Session removed")
            self._cached = None
            self._cached_mtime = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self) -> Optional[Session]:
        mtime = self._store.mtime_ns()
        if mtime is None:
            self._cached = None
            self._cached_mtime = None
            return None
        if mtime == self._cached_mtime:
            return self._cached
        try:
            session = self._store.load()
        except Corrupt as exc:
            logger.warning("Ignoring unreadable session: %s", exc)
            session = None
        self._cached = session
        self._cached_mtime = mtime
        return session

    def _remember(self, session: Session) -> None:
        self._cached = session
        self._cached_mtime = self._store.mtime_ns()

    def _refresh(self, session: Session) -> Session:
        if not session.refresh_token:
            raise Unauthenticated("Session expired; log in again")
        try:
            tokens = self._auth.refresh(session.refresh_token)
            refreshed = session_from_tokens(tokens, previous=session)
        except (Unauthenticated, NotFound, RemoteError, Corrupt) as exc:
            logger.warning("Session refresh rejected: %s", exc)
            raise Unauthenticated("Session expired; log in again") from exc
        self._store.save(refreshed)
        self._remember(refreshed)
        logger.info("Session refreshed for %s", refreshed.user_id)
        return refreshed
