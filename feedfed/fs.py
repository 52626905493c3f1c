# feedfed/fs.py
"""Filesystem helpers shared by the on-disk stores."""

import os
import tempfile
from pathlib import Path


def atomic_write(path: Path, text: str, mode: int = None):
    """Write text to path via a temp file in the same directory."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
