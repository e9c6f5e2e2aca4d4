"""File handle that notices when its file was changed behind its back."""

from __future__ import annotations

import os
import time
from typing import BinaryIO


class GuardedFile:
    """An open file that remembers the last time it was known to be in sync."""

    def __init__(self, path: str | os.PathLike[str], writable: bool) -> None:
        self.path = os.fspath(path)
        self.writable = writable
        self._file: BinaryIO = open(self.path, "r+b" if writable else "rb")
        try:
            self._known_mtime = os.fstat(self._file.fileno()).st_mtime_ns
        except OSError:
            self._file.close()
            raise

    @property
    def file(self) -> BinaryIO:
        return self._file

    def read_all(self) -> bytes:
        """The whole content of the file."""
        self._file.seek(0)
        return self._file.read()

    def acquire(self) -> tuple[bool, BinaryIO]:
        """Return whether the file changed since last known, and the file itself."""
        now = time.time_ns()
        try:
            mtime = os.fstat(self._file.fileno()).st_mtime_ns
        except OSError:
            mtime = now
        changed = mtime > self._known_mtime
        self._known_mtime = now
        return changed, self._file

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> GuardedFile:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()