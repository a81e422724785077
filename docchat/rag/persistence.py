"""Small filesystem helpers shared by the embedding cache and version log.

Writes go to a temporary file in the target directory and are moved into
place with ``os.replace`` after an fsync, so readers only ever see a complete
old file or a complete new file.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def read_json(path: Path) -> Any:
    """Load a JSON document."""
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def write_json_atomic(path: Path, data: Any, indent: int | None = None) -> None:
    """Durably replace ``path`` with the JSON encoding of ``data``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        # Also covers cancellation while the write is in flight
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
