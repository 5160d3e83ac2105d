"""Flat-file JSON persistence helpers."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def write_json_atomic(path: Path, data: Any, *, mode: int = 0o600) -> None:
    """Write *data* to *path* via temp file, fsync and rename.

    The temporary file is created in the destination directory so the final
    ``os.replace`` never crosses filesystems.  Readers either see the old
    document or the new one, never a partial write.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_json(path: Path) -> Any:
    """Return the parsed JSON document stored at *path*."""

    return json.loads(path.read_text(encoding="utf-8"))


__all__ = ["read_json", "write_json_atomic"]
