"""File system access used by the file output, replaceable in tests."""

from __future__ import annotations

import os
from typing import Any, Protocol

CREATE_FLAGS = os.O_CREAT | os.O_WRONLY
APPEND_FLAGS = os.O_APPEND | os.O_WRONLY


class FileSystem(Protocol):
    """Operations the file output needs from a file system."""

    def stat(self, path: str) -> Any: ...

    def makedirs(self, path: str, mode: int) -> None: ...

    def open_file(self, path: str, flags: int, mode: int) -> Any: ...


class _OSFile:
    """A file opened by descriptor, with raw writes and explicit sync."""

    def __init__(self, fd: int, path: str) -> None:
        self._fd = fd
        self.path = path

    def write(self, data: bytes) -> int:
        return os.write(self._fd, data)

    def sync(self) -> None:
        os.fsync(self._fd)

    def close(self) -> None:
        os.close(self._fd)


class OSFileSystem:
    """FileSystem backed by the local disk."""

    def stat(self, path: str) -> os.stat_result:
        return os.stat(path)

    def makedirs(self, path: str, mode: int) -> None:
        os.makedirs(path, mode, exist_ok=True)

    def open_file(self, path: str, flags: int, mode: int) -> _OSFile:
        return _OSFile(os.open(path, flags, mode), path)