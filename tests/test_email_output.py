from unittest import mock

import pytest

from eventsink.core import ConfigError, LogEvent
from eventsink.email_output import EmailOutput


def make_output(**overrides):
    raw = {
        "type": "email",
        "address": "smtp.example.com",
        "from": "sender@example.com",
        "to": "first@example.com;second@example.com",
        "cc": "copy@example.com",
        "use_tls": False,
        "port": 25,
        "username": "user",
        "password": "password",
        "subject": "outputemail test subject",
    }
    raw.update(overrides)
    return EmailOutput.from_config(raw)


def test_build_message_headers_and_body():
    output = make_output()
    message = output.build_message(LogEvent(message="outputemail test message"))
    assert message["From"] == "sender@example.com"
    assert message["To"] == "first@example.com, second@example.com"
    assert message["Cc"] == "copy@example.com"
    assert message["Subject"] == "outputemail test subject"
    assert message.get_content_type() == "text/html"
    assert message.get_content().strip() == "outputemail test message"


def test_no_cc_header_when_empty():
    output = make_output(cc="")
    message = output.build_message(LogEvent(message="m"))
    assert message["Cc"] is None


def test_defaults():
    output = EmailOutput.from_config({})
    assert (output.port, output.use_tls, output.cc, output.attachments) == (25, False, "", [])


def test_attachments(tmp_path):
    report = tmp_path / "report.txt"
    report.write_bytes(b"attached text")
    output = make_output(attachments=[str(report)])
    message = output.build_message(LogEvent(message="body"))
    parts = list(message.iter_attachments())
    assert [part.get_filename() for part in parts] == ["report.txt"]
    assert parts[0].get_content_type() == "text/plain"
    assert parts[0].get_payload(decode=True) == b"attached text"


def test_output_sends_via_smtp():
    output = make_output()
    event = LogEvent(message="outputemail test message")
    expected = output.build_message(event)
    with mock.patch("smtplib.SMTP") as factory:
        smtp = factory.return_value
        smtp.has_extn.return_value = True
        output.output(event)
    factory.assert_called_once_with("smtp.example.com", 25)
    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with("user", "password")
    sent = smtp.send_message.call_args.args[0]
    assert sent["Subject"] == "outputemail test subject"
    assert sent["To"] == expected["To"] == "first@example.com, second@example.com"
    assert sent.get_content().strip() == "outputemail test message"


def test_output_without_server_extensions_skips_tls_and_login():
    output = make_output()
    event = LogEvent(message="plain")
    expected = output.build_message(event)
    with mock.patch("smtplib.SMTP") as factory:
        smtp = factory.return_value
        smtp.has_extn.return_value = False
        output.output(event)
    assert smtp.starttls.call_count == 0
    assert smtp.login.call_count == 0
    assert smtp.send_message.call_count == 1
    sent = smtp.send_message.call_args.args[0]
    assert sent.get_content() == expected.get_content()


def test_implicit_tls_port_uses_smtp_ssl():
    output = make_output(port=465, use_tls=True)
    event = LogEvent(message="secure")
    expected = output.build_message(event)
    with mock.patch("smtplib.SMTP_SSL") as factory:
        smtp = factory.return_value
        smtp.has_extn.return_value = True
        output.output(event)
    args, kwargs = factory.call_args
    assert args == ("smtp.example.com", 465)
    assert kwargs["context"].check_hostname is False
    assert smtp.send_message.call_count == 1
    sent = smtp.send_message.call_args.args[0]
    assert sent["Subject"] == expected["Subject"]
    assert sent.get_content().strip() == "secure"


def test_invalid_port_type_rejected():
    with pytest.raises(ConfigError):
        make_output(port="twenty-five")