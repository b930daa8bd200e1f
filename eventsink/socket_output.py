"""Output that writes events as JSON lines to a network or Unix socket."""

from __future__ import annotations

import dataclasses
import socket
from typing import Any, Mapping

from eventsink.core import ConfigError, LogEvent, Output

_KINDS = {
    "tcp": socket.SOCK_STREAM,
    "udp": socket.SOCK_DGRAM,
    "unix": socket.SOCK_STREAM,
    "unixgram": socket.SOCK_DGRAM,
    "unixpacket": getattr(socket, "SOCK_SEQPACKET", None),
}


def _dial(network: str, address: str) -> socket.socket:
    kind = _KINDS.get(network)
    if kind is None:
        raise ConfigError(f"unsupported socket type: {network!r}")
    if network.startswith("unix"):
        targets = [(socket.AF_UNIX, kind, 0, address)]
    else:
        host, sep, port = address.rpartition(":")
        if not sep or not port.isdigit():
            raise ConfigError(f"address must have the form host:port: {address!r}")
        infos = socket.getaddrinfo(host.strip("[]") or "localhost", int(port), 0, kind)
        targets = [(fam, typ, proto, addr) for fam, typ, proto, _, addr in infos]
    error: OSError = OSError(f"cannot resolve {address!r}")
    for family, typ, proto, target in targets:
        sock = socket.socket(family, typ, proto)
        try:
            sock.connect(target)
            return sock
        except OSError as exc:
            sock.close()
            error = exc
    raise error


@dataclasses.dataclass
class SocketOutput(Output):
    """Send every event as one JSON line over a connected socket."""

    module_name = "socket"

    network: str = dataclasses.field(default="", metadata={"key": "socket"})
    address: str = ""
    _conn: socket.socket | None = dataclasses.field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._conn = _dial(self.network, self.address)

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> SocketOutput:
        """Build the output from a raw configuration mapping and connect it."""
        return super().from_config(raw)

    def output(self, event: LogEvent) -> None:
        if self._conn is None:
            raise OSError("socket output is closed")
        self._conn.sendall((event.to_json() + "\n").encode("utf-8"))

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None