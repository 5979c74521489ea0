"""Atomic file persistence — the only write path for shared state.

Every file another process may read concurrently (process-state files,
the project registry, port maps, receipts, edge metadata, occurrent
records) is written with the same discipline:

    1. write the new content to a temp file in the *same* directory;
    2. ``fsync`` it;
    3. ``os.replace`` it over the target.

A reader therefore sees either the old file or the new one, never a
half-written one.  A crash between steps leaves only a stray ``.tmp``
file, which nothing ever reads.

Records that must never be overwritten (receipts, occurrents) use the
create-only variant, which publishes the temp file with ``os.link`` and
fails if the target already exists.

Key concepts:
    - **Same-directory temp file** — rename is only atomic within one
      filesystem.
    - **Serialization** — JSON for structured records, with
      ``dump_json`` / ``load_json`` as the paired helpers.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def _write_temp(path: Path, data: bytes) -> Path:
    """Write *data* to a fsynced temp file beside *path* and return it."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return tmp_path


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace *path* with *data* atomically.

    Args:
        path: Destination file; its parent directory must exist.
        data: The full new content.

    """
    tmp_path = _write_temp(path, data)
    try:
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def atomic_create_bytes(path: Path, data: bytes) -> None:
    """Publish *data* at *path* only if nothing is there yet.

    The content is written to a temp file first and then hard-linked into
    place, so the file appears complete or not at all, and a second
    creator loses the race with ``FileExistsError``.

    Raises:
        FileExistsError: If *path* already exists.

    """
    tmp_path = _write_temp(path, data)
    try:
        os.link(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def atomic_write_text(path: Path, text: str) -> None:
    """Replace *path* with UTF-8 *text* atomically."""
    atomic_write_bytes(path, text.encode("utf-8"))


def atomic_create_text(path: Path, text: str) -> None:
    """Create *path* with UTF-8 *text*; see ``atomic_create_bytes``."""
    atomic_create_bytes(path, text.encode("utf-8"))


def dump_json(path: Path, data: Any) -> None:
    """Serialize *data* to *path* as indented JSON, atomically."""
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


def create_json(path: Path, data: Any) -> None:
    """Serialize *data* to a new file at *path*; see ``atomic_create_text``."""
    atomic_create_text(path, json.dumps(data, indent=2) + "\n")


def load_json(path: Path) -> Any:
    """Load JSON from *path*.

    Raises:
        FileNotFoundError: If the path does not exist.
        json.JSONDecodeError: If the content is not valid JSON.

    """
    return json.loads(path.read_text(encoding="utf-8"))
