"""Atomic file operations to prevent data corruption.

Writes go to a temporary file in the destination directory and are then
moved into place with ``os.replace``. A rename within one filesystem is
atomic, so readers see either the old file or the new one, never a
truncated mix. The loop metadata record is always written this way.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write content to file atomically using temp file + rename.

    Args:
        path: Target file path
        content: Text content to write
        encoding: File encoding (default: utf-8)

    Raises:
        OSError: If write or rename fails

    Example:
        >>> atomic_write_text(Path("work/agent-loop/x/.agl"), "ROUND=1\\n")
    """
    fd, tmp_name = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, str(path))
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
