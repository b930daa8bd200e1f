import ssl
import time
from unittest import mock

import pika
import pika.exceptions
import pika.spec
import pytest

from eventsink.amqp_output import AmqpOutput, HostPool, NoValidConnectionError
from eventsink.core import ConfigError, LogEvent

URL = "amqp://localhost:5672/%2F"
OTHER_URL = "amqp://127.0.0.1:5673/%2F"


def _config(**overrides):
    raw = {"type": "amqp", "urls": [URL], "exchange": "logs", "exchange_type": "fanout"}
    raw.update(overrides)
    return raw


def _wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def _bodies(connection):
    publish = connection.channel.return_value.basic_publish
    return [call.kwargs["body"] for call in publish.call_args_list]


def test_host_pool_round_robin():
    pool = HostPool(["a", "b", "c"])
    assert [pool.get() for _ in range(4)] == ["a", "b", "c", "a"]


def test_host_pool_skips_failed_host_until_revived():
    pool = HostPool(["a", "b"])
    pool.mark("b", RuntimeError("down"))
    assert [pool.get() for _ in range(3)] == ["a", "a", "a"]
    pool.mark("b", None)
    assert {pool.get() for _ in range(2)} == {"a", "b"}


def test_host_pool_all_failed_resets():
    pool = HostPool(["a", "b"])
    pool.mark("a", RuntimeError("down"))
    pool.mark("b", RuntimeError("down"))
    first = pool.get()
    assert first in {"a", "b"}
    assert {first, pool.get()} == {"a", "b"}


def test_host_pool_requires_hosts():
    with pytest.raises(ValueError):
        HostPool([])


def test_declares_exchange_with_defaults():
    with mock.patch("pika.BlockingConnection") as factory:
        out = AmqpOutput.from_config(_config())
        try:
            channel = factory.return_value.channel.return_value
            channel.exchange_declare.assert_called_once_with(
                exchange="logs",
                exchange_type="fanout",
                durable=False,
                auto_delete=True,
                internal=False,
            )
            assert out.retries == 3
        finally:
            out.close()


def test_output_publishes_json():
    event = LogEvent(message="hello", extra={"app": "web"})
    with mock.patch("pika.BlockingConnection") as factory:
        out = AmqpOutput.from_config(
            _config(exchange="logs-%{app}", routing_key="key-%{app}", persistent=True)
        )
        try:
            out.output(event)
        finally:
            out.close()
    publish = factory.return_value.channel.return_value.basic_publish
    publish.assert_called_once()
    kwargs = publish.call_args.kwargs
    assert kwargs["exchange"] == "logs-web"
    assert kwargs["routing_key"] == "key-web"
    assert kwargs["body"] == event.to_json().encode("utf-8")
    assert kwargs["properties"].content_type == "application/json"
    assert kwargs["properties"].delivery_mode == pika.spec.PERSISTENT_DELIVERY_MODE


def test_transient_delivery_by_default():
    event = LogEvent(message="x")
    with mock.patch("pika.BlockingConnection") as factory:
        out = AmqpOutput.from_config(_config())
        try:
            out.output(event)
        finally:
            out.close()
    props = factory.return_value.channel.return_value.basic_publish.call_args.kwargs["properties"]
    assert props.delivery_mode == pika.spec.TRANSIENT_DELIVERY_MODE
    assert _bodies(factory.return_value) == [event.to_json().encode("utf-8")]


def test_no_valid_connection():
    with mock.patch(
        "pika.BlockingConnection", side_effect=pika.exceptions.AMQPConnectionError("refused")
    ):
        with pytest.raises(NoValidConnectionError):
            AmqpOutput.from_config(_config(urls=[URL, OTHER_URL]))


def test_unreachable_server_is_skipped():
    good = mock.MagicMock()

    def connect(params):
        if params.port == 5673:
            raise pika.exceptions.AMQPConnectionError("refused")
        return good

    events = [LogEvent(message="a"), LogEvent(message="b")]
    with mock.patch("pika.BlockingConnection", side_effect=connect):
        out = AmqpOutput.from_config(_config(urls=[URL, OTHER_URL]))
        try:
            for event in events:
                out.output(event)
        finally:
            out.close()
    assert _bodies(good) == [event.to_json().encode("utf-8") for event in events]


def test_exchange_declare_failure_raises_and_closes():
    connection = mock.MagicMock()
    connection.channel.return_value.exchange_declare.side_effect = (
        pika.exceptions.ChannelClosedByBroker(406, "PRECONDITION_FAILED")
    )
    with mock.patch("pika.BlockingConnection", return_value=connection):
        with pytest.raises(pika.exceptions.ChannelClosedByBroker):
            AmqpOutput.from_config(_config())
    assert connection.close.called


def test_mismatched_tls_files():
    with pytest.raises(ConfigError):
        AmqpOutput.from_config(_config(tls_certs=["cert.pem"]))


def test_tls_skip_verify():
    event = LogEvent(message="secure")
    with mock.patch("pika.BlockingConnection") as factory:
        out = AmqpOutput.from_config(
            _config(urls=["amqps://localhost:5671/%2F"], tls_cert_skip_verify=True)
        )
        try:
            out.output(event)
        finally:
            out.close()
    params = factory.call_args.args[0]
    assert params.ssl_options.context.verify_mode == ssl.CERT_NONE
    assert _bodies(factory.return_value) == [event.to_json().encode("utf-8")]


def test_retries_on_publish_failure(caplog):
    connections = []

    def connect(params):
        connection = mock.MagicMock()
        connection.channel.return_value.basic_publish.side_effect = pika.exceptions.AMQPError(
            "gone"
        )
        connections.append(connection)
        return connection

    with mock.patch("pika.BlockingConnection", side_effect=connect):
        out = AmqpOutput.from_config(
            _config(urls=[URL, OTHER_URL], retries=2, reconnect_delay=3600)
        )
        try:
            with caplog.at_level("ERROR"):
                out.output(LogEvent(message="x"))
        finally:
            out.close()
    attempts = sum(c.channel.return_value.basic_publish.call_count for c in connections)
    assert attempts == 3
    assert "could not be published" in caplog.text


def test_reconnects_after_failure():
    first = mock.MagicMock()
    first.channel.return_value.basic_publish.side_effect = pika.exceptions.AMQPError("gone")
    second = mock.MagicMock()
    event = LogEvent(message="two")
    with mock.patch("pika.BlockingConnection", side_effect=[first, second]) as factory:
        out = AmqpOutput.from_config(_config(retries=0, reconnect_delay=0))
        try:
            out.output(LogEvent(message="one"))
            assert _wait_for(
                lambda: factory.call_count == 2 and URL not in out._reconnecting
            )
            out.output(event)
        finally:
            out.close()
    assert _bodies(second) == [event.to_json().encode("utf-8")]
    second.channel.return_value.exchange_declare.assert_called_once()
    assert first.close.called