"""
File write helpers. Private files are replaced atomically with mode 0600.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def write_file(path: Path, content: str, mode: int = 0o644) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    os.chmod(path, mode)


def write_private_file(path: Path, content: str) -> None:
    """
    Write `content` to a temp file next to `path`, restrict it to the owner,
    then rename it over `path`. Readers never observe a partial or
    world-readable file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
