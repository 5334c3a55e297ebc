"""
Error taxonomy shared by every kivrafs layer.

Remote and session failures are raised as the narrowest class that
describes them; the filesystem shim turns them into errno values for
the single call that hit them.
"""

from __future__ import annotations

import errno


class KivraFSError(Exception):
    """Base class for all kivrafs errors."""

    errno = errno.EIO


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Unauthenticated(KivraFSError):
    """No usable session and no way to refresh one. Log in again."""

    errno = errno.EACCES


class AlreadyInProgress(KivraFSError):
    """Another login flow currently owns the session."""

    errno = errno.EBUSY


class LoginFailed(KivraFSError):
    """The device-approval flow was rejected, expired or timed out."""


class LoginCancelled(KivraFSError):
    """The user aborted the device-approval flow."""

    errno = errno.ECANCELED


class Corrupt(KivraFSError):
    """A persisted session or cache record could not be decoded."""


# ---------------------------------------------------------------------------
# Remote
# ---------------------------------------------------------------------------


class NotFound(KivraFSError):
    """The remote item or attachment no longer exists."""

    errno = errno.ENOENT


class TransientTransport(KivraFSError):
    """Network failure or 5xx that survived every retry."""


class RemoteError(KivraFSError):
    """The remote service refused the request (non-retryable 4xx)."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class SchemaError(Corrupt):
    """A remote response did not match the expected shape."""


class FetchFailed(KivraFSError):
    """An attachment download could not be completed."""


class RefreshFailed(KivraFSError):
    """The inbox listing could not be refreshed."""


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


class NoSuchEntry(KivraFSError):
    """No directory entry or inode by that name/number."""

    errno = errno.ENOENT


class IsADirectory(KivraFSError):
    """File operation on a directory inode."""

    errno = errno.EISDIR


class NotADirectory(KivraFSError):
    """Directory operation on a file inode."""

    errno = errno.ENOTDIR


class ReadOnly(KivraFSError):
    """Any attempt to modify the mounted mailbox."""

    errno = errno.EROFS


class MountError(KivraFSError):
    """The mount point is unusable or the daemon failed to come up."""
