"""Crash-safe file replacement."""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"


def tmp_path_for(path: Path) -> Path:
    return path.with_name(path.name + TMP_SUFFIX)


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``<path>.tmp`` then rename it over ``path``.

    The rename is the only externally visible mutation: readers see either the
    previous file or the complete new one. On failure the temp file is removed
    and the destination is left as it was.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tmp_path_for(path)
    try:
        with tmp.open("w", encoding="utf-8", newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError as e:
                logger.warning("Could not remove temp file %s: %s", tmp, e)
        raise
