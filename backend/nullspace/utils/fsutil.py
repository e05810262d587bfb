from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"


def tmp_sibling(path: Path) -> Path:
    # unique per call so concurrent writers never share a temp file
    return path.with_name(f".{path.name}.{uuid.uuid4().hex}{TMP_SUFFIX}")


def is_tmp_name(name: str) -> bool:
    return name.startswith(".") and name.endswith(TMP_SUFFIX)


def _fsync_dir(path: Path) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    except OSError as exc:
        logger.debug("Directory fsync not supported for %s: %s", path, exc)
    finally:
        os.close(fd)


@contextmanager
def atomic_open(path: Path) -> Iterator[BinaryIO]:
    """Open ``path`` for writing; it only appears once the block succeeds.

    Data goes to a temporary sibling which is fsynced and renamed over the
    target on success, and unlinked on any failure.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = tmp_sibling(path)
    try:
        with tmp_path.open("wb") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _fsync_dir(path.parent)
