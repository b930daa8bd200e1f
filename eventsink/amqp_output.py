"""Output that publishes events as JSON to AMQP exchanges across several servers."""

from __future__ import annotations

import dataclasses
import logging
import ssl
import threading
import time
from typing import Any, Mapping, Sequence

import pika
import pika.exceptions
import pika.spec

from eventsink.core import ConfigError, LogEvent, Output

log = logging.getLogger(__name__)

_CONNECTION_ERRORS = (pika.exceptions.AMQPError, OSError)


class NoValidConnectionError(ConnectionError):
    """Raised when none of the configured AMQP servers can be reached."""

    def __init__(self) -> None:
        super().__init__("no valid amqp server connection found")


class HostPool:
    """Round-robin choice among hosts, skipping those marked as failed.

    A failed host is tried again once ``retry_delay`` seconds have passed or
    when it is marked as working. If every host has failed, all of them are
    treated as working again.
    """

    def __init__(self, hosts: Sequence[str], retry_delay: float = 30.0) -> None:
        if not hosts:
            raise ValueError("host pool needs at least one host")
        self._hosts = list(hosts)
        self._dead_since: dict[str, float] = {}
        self._next = 0
        self._retry_delay = retry_delay
        self._lock = threading.Lock()

    @property
    def hosts(self) -> list[str]:
        return list(self._hosts)

    def _usable(self, host: str, now: float) -> bool:
        since = self._dead_since.get(host)
        return since is None or now - since >= self._retry_delay

    def get(self) -> str:
        """Return the next host that is not currently marked as failed."""
        with self._lock:
            now = time.monotonic()
            count = len(self._hosts)
            for _ in range(count):
                host = self._hosts[self._next]
                self._next = (self._next + 1) % count
                if self._usable(host, now):
                    return host
            self._dead_since.clear()
            host = self._hosts[self._next]
            self._next = (self._next + 1) % count
            return host

    def mark(self, host: str, error: BaseException | None) -> None:
        """Record the outcome of using ``host``: failed if ``error`` is given."""
        with self._lock:
            if host not in self._hosts:
                return
            if error is None:
                self._dead_since.pop(host, None)
            else:
                self._dead_since[host] = time.monotonic()


def _close_quietly(connection: Any) -> None:
    try:
        connection.close()
    except _CONNECTION_ERRORS as exc:
        log.debug("closing amqp connection failed: %s", exc)


@dataclasses.dataclass
class AmqpOutput(Output):
    """Publish every event as JSON to ``exchange`` on one of ``urls``.

    ``exchange`` and ``routing_key`` may reference event fields as
    ``%{name}``. A failed publish is retried ``retries`` times on other
    servers while the failed server is reconnected in the background every
    ``reconnect_delay`` seconds.
    """

    module_name = "amqp"

    urls: list[str] = dataclasses.field(default_factory=list)
    tls_ca_certs: list[str] = dataclasses.field(default_factory=list)
    tls_certs: list[str] = dataclasses.field(default_factory=list)
    tls_cert_keys: list[str] = dataclasses.field(default_factory=list)
    tls_skip_verify: bool = dataclasses.field(
        default=False, metadata={"key": "tls_cert_skip_verify"}
    )
    routing_key: str = ""
    exchange: str = ""
    exchange_type: str = ""
    exchange_durable: bool = False
    exchange_auto_delete: bool = True
    persistent: bool = False
    retries: int = 3
    reconnect_delay: int = 30
    _pool: HostPool | None = dataclasses.field(
        default=None, init=False, repr=False, compare=False
    )
    _clients: dict = dataclasses.field(
        default_factory=dict, init=False, repr=False, compare=False
    )
    _reconnecting: set = dataclasses.field(
        default_factory=set, init=False, repr=False, compare=False
    )
    _lock: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )
    _closed: threading.Event = dataclasses.field(
        default_factory=threading.Event, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if len(self.tls_certs) > len(self.tls_cert_keys):
            raise ConfigError("every entry of tls_certs needs a matching tls_cert_keys entry")
        hosts: list[str] = []
        try:
            for url in self.urls:
                try:
                    connection = self._connect(url)
                except _CONNECTION_ERRORS as exc:
                    log.warning("cannot connect to %s: %s", url, exc)
                    continue
                try:
                    channel = connection.channel()
                except _CONNECTION_ERRORS as exc:
                    log.warning("cannot open a channel on %s: %s", url, exc)
                    _close_quietly(connection)
                    continue
                self._clients[url] = (connection, channel)
                self._declare(channel)
                hosts.append(url)
        except BaseException:
            self.close()
            raise
        if not hosts:
            raise NoValidConnectionError()
        self._pool = HostPool(hosts, retry_delay=float(self.reconnect_delay))

    @classmethod
    def from_config(cls, raw: Mapping[str, Any] | None = None) -> "AmqpOutput":
        """Build the output from a raw configuration mapping and connect it."""
        return super().from_config(raw)

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        if self.tls_skip_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        for ca in self.tls_ca_certs:
            try:
                context.load_verify_locations(cafile=ca)
            except (OSError, ssl.SSLError) as exc:
                log.warning("cannot load CA certificate %s: %s", ca, exc)
        for cert, key in zip(self.tls_certs, self.tls_cert_keys):
            try:
                context.load_cert_chain(cert, key)
            except (OSError, ssl.SSLError) as exc:
                log.warning("cannot load certificate %s: %s", cert, exc)
        return context

    def _connect(self, url: str) -> Any:
        params = pika.URLParameters(url)
        if url.startswith("amqps"):
            params.ssl_options = pika.SSLOptions(self._tls_context(), params.host)
        return pika.BlockingConnection(params)

    def _declare(self, channel: Any) -> None:
        channel.exchange_declare(
            exchange=self.exchange,
            exchange_type=self.exchange_type,
            durable=self.exchange_durable,
            auto_delete=self.exchange_auto_delete,
            internal=False,
        )

    def output(self, event: LogEvent) -> None:
        if self._pool is None:
            raise NoValidConnectionError()
        body = event.to_json().encode("utf-8")
        exchange = event.format(self.exchange)
        routing_key = event.format(self.routing_key)
        delivery_mode = (
            pika.spec.PERSISTENT_DELIVERY_MODE
            if self.persistent
            else pika.spec.TRANSIENT_DELIVERY_MODE
        )
        properties = pika.BasicProperties(
            content_type="application/json", delivery_mode=delivery_mode
        )
        for _ in range(self.retries + 1):
            host = self._pool.get()
            with self._lock:
                client = self._clients.get(host)
            if client is None:
                continue
            try:
                client[1].basic_publish(
                    exchange=exchange, routing_key=routing_key, body=body, properties=properties
                )
            except _CONNECTION_ERRORS as exc:
                log.warning("publish to %s failed: %s", host, exc)
                self._pool.mark(host, exc)
                self._schedule_reconnect(host)
            else:
                return
        log.error("event could not be published after %d attempts", self.retries + 1)

    def _schedule_reconnect(self, host: str) -> None:
        with self._lock:
            if self._closed.is_set() or host in self._reconnecting:
                return
            self._reconnecting.add(host)
        thread = threading.Thread(
            target=self._reconnect, args=(host,), name=f"amqp-reconnect:{host}", daemon=True
        )
        thread.start()

    def _reconnect(self, host: str) -> None:
        try:
            while not self._closed.wait(self.reconnect_delay):
                log.info("reconnecting to %s", host)
                try:
                    connection = self._connect(host)
                except _CONNECTION_ERRORS as exc:
                    log.info(
                        "failed to reconnect to %s (%s); waiting %d seconds",
                        host,
                        exc,
                        self.reconnect_delay,
                    )
                    continue
                try:
                    channel = connection.channel()
                    self._declare(channel)
                except _CONNECTION_ERRORS as exc:
                    _close_quietly(connection)
                    log.info(
                        "failed to reconnect to %s (%s); waiting %d seconds",
                        host,
                        exc,
                        self.reconnect_delay,
                    )
                    continue
                with self._lock:
                    if self._closed.is_set():
                        old = None
                        stale = connection
                    else:
                        old = self._clients.get(host)
                        self._clients[host] = (connection, channel)
                        stale = None
                if stale is not None:
                    _close_quietly(stale)
                    return
                if old is not None:
                    _close_quietly(old[0])
                log.info("reconnected to %s", host)
                if self._pool is not None:
                    self._pool.mark(host, None)
                return
        finally:
            with self._lock:
                self._reconnecting.discard(host)

    def close(self) -> None:
        self._closed.set()
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for connection, _ in clients:
            _close_quietly(connection)