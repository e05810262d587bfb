from __future__ import annotations

import logging
import os
import shutil
from contextlib import contextmanager
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import BinaryIO, Iterator

from nullspace.errors import IoFailure, NotFoundError, PathTraversalError, PermissionDeniedError
from nullspace.utils.fsutil import atomic_open, is_tmp_name

logger = logging.getLogger(__name__)


@contextmanager
def _os_errors(relative_path: str) -> Iterator[None]:
    try:
        yield
    except FileNotFoundError:
        raise NotFoundError(relative_path) from None
    except PermissionError as exc:
        raise PermissionDeniedError(relative_path, exc) from exc
    except OSError as exc:
        raise IoFailure(relative_path, exc) from exc


class FileStorage:
    """Byte-level file access confined to ``base_dir``."""

    def __init__(self, base_dir: Path | str):
        base = Path(base_dir).expanduser()
        with _os_errors(str(base)):
            base.mkdir(parents=True, exist_ok=True)
            self.base_dir = base.resolve(strict=True)

    def resolve(self, relative_path: str) -> Path:
        # reject absolute paths in both POSIX and Windows spelling before joining
        if PurePosixPath(relative_path).is_absolute() or PureWindowsPath(relative_path).anchor:
            raise PathTraversalError(relative_path)
        if "\x00" in relative_path:
            raise PathTraversalError(relative_path)
        full = (self.base_dir / relative_path).resolve()
        if full != self.base_dir and not full.is_relative_to(self.base_dir):
            raise PathTraversalError(relative_path)
        return full

    def _relative(self, full: Path) -> str:
        return full.relative_to(self.base_dir).as_posix()

    def write_file(self, relative_path: str, data: bytes) -> None:
        full = self.resolve(relative_path)
        if full == self.base_dir:
            raise PathTraversalError(relative_path)
        with _os_errors(relative_path):
            with atomic_open(full) as f:
                f.write(data)

    @contextmanager
    def open_atomic(self, relative_path: str) -> Iterator[BinaryIO]:
        full = self.resolve(relative_path)
        if full == self.base_dir:
            raise PathTraversalError(relative_path)
        with _os_errors(relative_path):
            with atomic_open(full) as f:
                yield f

    def read_file(self, relative_path: str) -> bytes:
        full = self.resolve(relative_path)
        with _os_errors(relative_path):
            return full.read_bytes()

    def delete_file(self, relative_path: str) -> None:
        full = self.resolve(relative_path)
        with _os_errors(relative_path):
            full.unlink()

    def delete_dir(self, relative_path: str) -> None:
        full = self.resolve(relative_path)
        if full == self.base_dir:
            raise PathTraversalError(relative_path)
        if not full.is_dir():
            raise NotFoundError(relative_path)
        with _os_errors(relative_path):
            shutil.rmtree(full)

    def exists(self, relative_path: str) -> bool:
        return self.resolve(relative_path).exists()

    def list_files(self, relative_path: str = "") -> list[str]:
        full = self.resolve(relative_path)
        if not full.exists():
            return []
        if full.is_file():
            return [self._relative(full)]
        out: list[str] = []
        with _os_errors(relative_path):
            for root, dirs, files in os.walk(full):
                dirs.sort()
                for name in sorted(files):
                    if is_tmp_name(name):
                        continue
                    out.append(self._relative(Path(root) / name))
        return out

    def create_dir(self, relative_path: str) -> None:
        full = self.resolve(relative_path)
        with _os_errors(relative_path):
            full.mkdir(parents=True, exist_ok=True)
        logger.debug("Created directory %s", relative_path or ".")
