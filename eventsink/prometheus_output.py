"""Output that counts events and exposes the count as a Prometheus metric."""

from __future__ import annotations

import dataclasses
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from eventsink.core import ConfigError, LogEvent, Output

log = logging.getLogger(__name__)


@dataclasses.dataclass
class Counter:
    """A monotonically increasing metric."""

    name: str
    help: str
    value: float = 0.0
    _lock: threading.Lock = dataclasses.field(default_factory=threading.Lock, repr=False)

    def inc(self, amount: float = 1.0) -> None:
        """Add ``amount``, which must not be negative."""
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self.value += amount


class _MetricsHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        if self.path.split("?", 1)[0] != "/metrics":
            self.send_error(404)
            return
        body = self.server.render().encode("utf-8")  # type: ignore[attr-defined]
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        log.debug(format, *args)


@dataclasses.dataclass
class PrometheusOutput(Output):
    """Count processed events and serve them at ``/metrics`` on ``address``."""

    module_name = "prometheus"

    address: str = ":8080"
    msg_count: Counter = dataclasses.field(
        default_factory=lambda: Counter("processed_messages_total", "Number of processed messages"),
        init=False,
    )
    _server: ThreadingHTTPServer | None = dataclasses.field(default=None, init=False, repr=False)

    @classmethod
    def from_config(cls, raw=None) -> "PrometheusOutput":
        """Build the output and start serving its metrics."""
        instance = super().from_config(raw)
        instance.start()
        return instance

    def output(self, event: LogEvent) -> None:
        self.msg_count.inc()

    def render_metrics(self) -> str:
        """Return the metrics in the Prometheus text exposition format."""
        c = self.msg_count
        value = str(int(c.value)) if c.value.is_integer() else repr(c.value)
        return f"# HELP {c.name} {c.help}\n# TYPE {c.name} counter\n{c.name} {value}\n"

    def start(self) -> None:
        """Bind ``address`` and serve metrics from a background thread."""
        if self._server is not None:
            return
        host, sep, port = self.address.rpartition(":")
        if not sep or not port.isdigit():
            raise ConfigError(f"address must have the form host:port: {self.address!r}")
        server = ThreadingHTTPServer((host.strip("[]"), int(port)), _MetricsHandler)
        server.daemon_threads = True
        server.render = self.render_metrics  # type: ignore[attr-defined]
        log.info("listen %s", self.address)
        self._server = server
        threading.Thread(target=server.serve_forever, daemon=True).start()

    def stop(self) -> None:
        """Stop serving metrics and release the listening socket."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None

    def close(self) -> None:
        self.stop()