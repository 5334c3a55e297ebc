"""
Synthetic, filesystem-safe names for inbox items and attachments.

Names are a pure function of remote metadata plus the ordinal, so the
same inbox always produces the same tree::

    /
    └── 2024-01-15_Acme_Energy_Invoice/
        ├── 2024-01-15_083000_Acme_Energy_0_invoice.pdf
        └── 2024-01-15_083000_Acme_Energy_1_Invoice.html

Timestamps are rendered in UTC.
"""

from __future__ import annotations

import mimetypes
import os
import re
from typing import Dict, Iterable, Optional, Tuple

from .models import Attachment, InboxItem

MAX_COMPONENT_LENGTH = 80
MAX_EXTENSION_LENGTH = 10
UNTITLED = "untitled"

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>|\x00-\x1f\x7f]')
_WHITESPACE = re.compile(r"\s+")
_EXTENSION = re.compile(r"^\.[A-Za-z0-9]+$")

_CONTENT_TYPE_EXTENSIONS: Dict[str, str] = {
    "application/pdf": ".pdf",
    "text/html": ".html",
    "text/plain": ".txt",
}


def sanitize(text: Optional[str], max_length: int = MAX_COMPONENT_LENGTH) -> str:
    """Turn arbitrary remote text into one safe path component.

    Args:
        text: Raw text (sender, subject, attachment name).
        max_length: Upper bound on the result length.

    Returns:
        A non-empty name without separators, control characters,
        shell-hostile characters, whitespace or a leading dot.
    """
    cleaned = _WHITESPACE.sub("_", (text or "").strip())
    cleaned = _UNSAFE_CHARS.sub("_", cleaned)
    cleaned = cleaned.lstrip(".")[:max_length]
    return cleaned or UNTITLED


def extension_for(attachment: Attachment) -> str:
    """Pick a file extension: the attachment's own, else by content type."""
    if attachment.name:
        ext = os.path.splitext(attachment.name)[1]
        if _EXTENSION.match(ext) and len(ext) <= MAX_EXTENSION_LENGTH:
            return ext
    content_type = attachment.content_type.split(";", 1)[0].strip().lower()
    if content_type in _CONTENT_TYPE_EXTENSIONS:
        return _CONTENT_TYPE_EXTENSIONS[content_type]
    return mimetypes.guess_extension(content_type) or ".bin"


def item_dir_name(item: InboxItem) -> str:
    """``<YYYY-MM-DD>_<sender>_<subject>``"""
    return "_".join(
        [item.created_at.strftime("%Y-%m-%d"), sanitize(item.sender_name), sanitize(item.subject)]
    )


def attachment_file_name(item: InboxItem, attachment: Attachment) -> str:
    """``<YYYY-MM-DD_HHMMSS>_<sender>_<index>_<name-or-subject><ext>``"""
    if attachment.name:
        stem = os.path.splitext(attachment.name)[0] or attachment.name
    else:
        stem = item.subject
    prefix = "_".join(
        [
            item.created_at.strftime("%Y-%m-%d_%H%M%S"),
            sanitize(item.sender_name),
            str(attachment.index),
            sanitize(stem),
        ]
    )
    return prefix + extension_for(attachment)


def _with_suffix(name: str, suffix: str, keep_extension: bool) -> str:
    if keep_extension:
        stem, ext = os.path.splitext(name)
        if ext and stem:
            return f"{stem}_{suffix}{ext}"
    return f"{name}_{suffix}"


def assign_unique_names(
    candidates: Iterable[Tuple[int, str]],
    keep_extension: bool = False,
    reserved: Iterable[str] = (),
) -> Dict[int, str]:
    """Resolve name collisions within one directory.

    Candidates are processed in ascending key order. The first holder
    of a name keeps it; any later key gets ``_<key>`` appended, so
    adding entries never renames an existing one.

    Args:
        candidates: ``(key, base_name)`` pairs; keys are unique.
        keep_extension: Insert the suffix before the file extension.
        reserved: Names already handed out elsewhere; never reused.

    Returns:
        Mapping of key to its final, unique name.
    """
    taken: set = set(reserved)
    names: Dict[int, str] = {}
    for key, base in sorted(candidates):
        name = base
        while name in taken:
            name = _with_suffix(name, str(key), keep_extension)
        taken.add(name)
        names[key] = name
    return names
