"""
kivrafs: your Kivra mailbox as a read-only filesystem.

Mount the inbox, browse letters as directories, open attachments
with the tools you already have. Nothing is written back.
"""

import os

__version__ = "0.1.0"

KIVRAFS_HOME = os.environ.get("KIVRAFS_HOME", "~/.kivrafs")
