"""Output that periodically prints how many events it has processed."""

from __future__ import annotations

import dataclasses
import datetime as dt
import threading

from eventsink.core import ConfigError, LogEvent, Output


@dataclasses.dataclass
class ReportOutput(Output):
    """Count events and report the count every ``interval`` seconds.

    ``time_format`` is a strftime format for the report's leading time stamp.
    """

    module_name = "report"

    interval: int = 5
    time_format: str = "[%d/%b/%Y:%H:%M:%S %z]"
    report_prefix: str = ""
    process_count: int = dataclasses.field(default=0, init=False)
    _lock: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )
    _stopped: threading.Event = dataclasses.field(
        default_factory=threading.Event, init=False, repr=False, compare=False
    )
    _thread: threading.Thread | None = dataclasses.field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ConfigError(f"interval must be positive: {self.interval}")

    @classmethod
    def from_config(cls, raw=None) -> "ReportOutput":
        """Build the output and start its report loop."""
        instance = super().from_config(raw)
        instance.start()
        return instance

    def output(self, event: LogEvent) -> None:
        with self._lock:
            self.process_count += 1

    def report(self) -> str | None:
        """Print and reset the count if any events arrived; return the line."""
        with self._lock:
            count, self.process_count = self.process_count, 0
        if count <= 0:
            return None
        now = dt.datetime.now().astimezone()
        line = f"{now.strftime(self.time_format)} {self.report_prefix}Process {count} events"
        print(line)
        return line

    def start(self) -> None:
        """Start the background report loop; it reports once right away."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="report-output", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the report loop and wait for it to finish."""
        self._stopped.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def close(self) -> None:
        self.stop()

    def _run(self) -> None:
        self.report()
        while not self._stopped.wait(self.interval):
            self.report()