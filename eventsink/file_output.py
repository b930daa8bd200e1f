"""Output that writes each event as a line to a file chosen per event."""

from __future__ import annotations

import dataclasses
import enum
import logging
import os
import queue
import re
import threading
import time
from typing import Any, Mapping

from eventsink.core import ConfigError, LogEvent, Output
from eventsink.filesystem import APPEND_FLAGS, CREATE_FLAGS, FileSystem, OSFileSystem

log = logging.getLogger(__name__)

_STOP = object()
_MODE_RE = re.compile(r"[+-]?\d+")


class WriteBehavior(str, enum.Enum):
    """How an existing file is opened."""

    APPEND = "append"
    OVERWRITE = "overwrite"


def _parse_mode(name: str, text: Any) -> int:
    if not isinstance(text, str) or not _MODE_RE.fullmatch(text) or int(text) < 0:
        raise ConfigError(f"invalid {name}: {text}")
    return int(text)


def _drain(messages: queue.Queue) -> None:
    while messages.get() is not _STOP:
        pass


def _close(file: Any) -> None:
    closer = getattr(file, "close", None)
    if callable(closer):
        try:
            closer()
        except OSError as exc:
            log.error("problems closing %r: %s", file, exc)


def _sync(file: Any) -> None:
    try:
        file.sync()
    except OSError as exc:
        log.error("problems syncing %r: %s", file, exc)


@dataclasses.dataclass
class FileOutput(Output):
    """Write each event, rendered through ``codec``, as one line to ``path``.

    ``path`` and ``codec`` may reference event fields as ``%{name}``. Each
    distinct path gets its own writer thread. ``file_mode`` and ``dir_mode``
    are taken as plain decimal numbers. A ``flush_interval`` of 0 syncs after
    every write; a positive value syncs changed files that often, in seconds.
    """

    module_name = "file"

    path: str = ""
    codec: str = "%{log}"
    write_behavior: str = WriteBehavior.APPEND.value
    create_if_deleted: bool = True
    dir_mode: str = "750"
    file_mode: str = "640"
    flush_interval: int = 2
    fs: FileSystem = dataclasses.field(
        default_factory=OSFileSystem, init=False, repr=False, compare=False
    )
    _file_mode: int = dataclasses.field(default=0, init=False, repr=False, compare=False)
    _dir_mode: int = dataclasses.field(default=0, init=False, repr=False, compare=False)
    _writers: dict = dataclasses.field(
        default_factory=dict, init=False, repr=False, compare=False
    )
    _lock: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("no path defined for output file")
        try:
            self.write_behavior = WriteBehavior(self.write_behavior)
        except ValueError:
            raise ConfigError(f"invalid write_behavior defined: {self.write_behavior}") from None
        self._file_mode = _parse_mode("file_mode", self.file_mode)
        self._dir_mode = _parse_mode("dir_mode", self.dir_mode)

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> FileOutput:
        """Build the output from a raw configuration mapping and validate it."""
        return super().from_config(raw)

    def output(self, event: LogEvent) -> None:
        path = event.format(self.path)
        line = event.format(self.codec)
        with self._lock:
            writer = self._writers.get(path)
            if writer is None:
                messages: queue.Queue = queue.Queue()
                thread = threading.Thread(
                    target=self._run, args=(path, messages), name=f"file-output:{path}", daemon=True
                )
                self._writers[path] = (messages, thread)
                thread.start()
            else:
                messages = writer[0]
            messages.put(line)

    def close(self) -> None:
        """Write out every queued line, then stop the writer threads."""
        with self._lock:
            writers = list(self._writers.values())
            self._writers.clear()
        for messages, _ in writers:
            messages.put(_STOP)
        for _, thread in writers:
            thread.join()

    def _exists(self, path: str) -> bool:
        try:
            self.fs.stat(path)
        except FileNotFoundError:
            return False
        except OSError:
            return True
        return True

    def _create_file(self, path: str) -> Any:
        exists = self._exists(path)
        if not exists:
            directory = os.path.dirname(path) or "."
            if directory != "." and not self._exists(directory):
                try:
                    self.fs.makedirs(directory, self._dir_mode)
                except OSError as exc:
                    raise OSError(f"error creating directory: {directory}") from exc
        if self.write_behavior is WriteBehavior.APPEND and exists:
            flags = APPEND_FLAGS
        else:
            flags = CREATE_FLAGS
        return self.fs.open_file(path, flags, self._file_mode)

    def _run(self, path: str, messages: queue.Queue) -> None:
        log.debug("starting writer for file %s", path)
        try:
            file = self._create_file(path)
        except OSError as exc:
            log.error("problems opening %s: %s", path, exc)
            _drain(messages)
            return

        interval = self.flush_interval
        next_tick = time.monotonic() + interval if interval > 0 else None
        changed = False
        while True:
            timeout = None if next_tick is None else max(0.0, next_tick - time.monotonic())
            try:
                message = messages.get(timeout=timeout)
            except queue.Empty:
                next_tick = time.monotonic() + interval
                if changed:
                    log.info("syncing %s", path)
                    _sync(file)
                    changed = False
                continue
            if message is _STOP:
                break

            data = f"{message}\n".encode("utf-8")
            try:
                written = file.write(data)
            except FileNotFoundError as exc:
                if not self.create_if_deleted:
                    log.error("problems writing to %s: %s", path, exc)
                    continue
                _close(file)
                try:
                    file = self._create_file(path)
                    written = file.write(data)
                except OSError as exc2:
                    log.error(
                        "problems re-creating %s; nothing more will be written to it: %s",
                        path,
                        exc2,
                    )
                    _drain(messages)
                    return
            except OSError as exc:
                log.error("problems writing to %s: %s", path, exc)
                continue

            if written > 0:
                changed = True
            log.debug("wrote %d bytes to %s", written, path)
            if interval == 0:
                _sync(file)
                changed = False
        _close(file)