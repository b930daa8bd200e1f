"""Output that pushes events as JSON to a Redis list or publishes them on a channel."""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
from typing import Any, Mapping

import redis

from eventsink.core import ConfigError, LogEvent, Output

log = logging.getLogger(__name__)

_DEFAULT_PORT = 6379


class RedisDataType(str, enum.Enum):
    """Where events are delivered: appended to a list or published on a channel."""

    LIST = "list"
    CHANNEL = "channel"


def _split_host(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        return address or "localhost", _DEFAULT_PORT
    if not port.isdigit():
        raise ConfigError(f"invalid redis host: {address!r}")
    return host.strip("[]") or "localhost", int(port)


@dataclasses.dataclass
class RedisOutput(Output):
    """Deliver every event as JSON to the Redis key ``key``.

    ``key`` may reference event fields as ``%{name}``. Delivery is retried
    every ``reconnect_interval`` seconds until it succeeds or the output is
    closed.
    """

    module_name = "redis"

    host: list[str] = dataclasses.field(default_factory=lambda: ["localhost:6379"])
    key: str = "eventsink"
    data_type: str = RedisDataType.LIST.value
    timeout: int = 5
    reconnect_interval: int = 1
    connections: int = 10
    _client: redis.Redis | None = dataclasses.field(
        default=None, init=False, repr=False, compare=False
    )
    _closed: threading.Event = dataclasses.field(
        default_factory=threading.Event, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigError("no redis host defined")
        if len(self.host) > 1:
            log.warning("deprecated: host number should be only 1")
        host, port = _split_host(self.host[0])
        client = redis.Redis(
            host=host,
            port=port,
            max_connections=self.connections,
            socket_connect_timeout=self.timeout,
        )
        try:
            client.ping()
        except redis.RedisError as exc:
            client.close()
            raise ConnectionError("ping redis server failed") from exc
        self._client = client

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> RedisOutput:
        """Build the output from a raw configuration mapping and ping the server."""
        return super().from_config(raw)

    def output(self, event: LogEvent) -> None:
        payload = event.to_json()
        key = event.format(self.key)
        while not self._closed.is_set():
            try:
                data_type = RedisDataType(self.data_type)
            except ValueError:
                raise ConfigError(f"unsupported data type: {self.data_type!r}") from None
            try:
                if data_type is RedisDataType.LIST:
                    self._client.rpush(key, payload)
                else:
                    self._client.publish(key, payload)
                return
            except redis.RedisError as exc:
                log.warning("redis output to %s failed, retrying: %s", key, exc)
            self._closed.wait(self.reconnect_interval)

    def close(self) -> None:
        self._closed.set()
        if self._client is not None:
            self._client.close()