"""Output that sends each event's message as an HTML e-mail over SMTP."""

from __future__ import annotations

import dataclasses
import mimetypes
import smtplib
import ssl
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Mapping

from eventsink.core import LogEvent, Output

_IMPLICIT_TLS_PORT = 465


def _recipients(text: str) -> list[str]:
    return [part.strip() for part in text.split(";") if part.strip()]


@dataclasses.dataclass
class EmailOutput(Output):
    """Mail every event's message to the ``;``-separated ``to`` and ``cc`` lists.

    With ``use_tls`` the server certificate is not verified.
    """

    module_name = "email"

    address: str = ""
    sender: str = dataclasses.field(default="", metadata={"key": "from"})
    to: str = ""
    cc: str = ""
    subject: str = ""
    port: int = 25
    use_tls: bool = False
    username: str = ""
    password: str = ""
    attachments: list[str] = dataclasses.field(default_factory=list)

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> EmailOutput:
        """Build the output from a raw configuration mapping."""
        return super().from_config(raw)

    def build_message(self, event: LogEvent) -> EmailMessage:
        """Build the message that would be sent for ``event``."""
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(_recipients(self.to))
        if self.cc:
            message["Cc"] = ", ".join(_recipients(self.cc))
        message["Subject"] = self.subject
        message.set_content(event.get_string("message"), subtype="html")
        for name in self.attachments:
            path = Path(name)
            content_type, _ = mimetypes.guess_type(path.name)
            maintype, _, subtype = (content_type or "application/octet-stream").partition("/")
            message.add_attachment(
                path.read_bytes(), maintype=maintype, subtype=subtype, filename=path.name
            )
        return message

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if self.use_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def output(self, event: LogEvent) -> None:
        message = self.build_message(event)
        context = self._tls_context()
        implicit_tls = self.port == _IMPLICIT_TLS_PORT
        if implicit_tls:
            smtp = smtplib.SMTP_SSL(self.address, self.port, context=context)
        else:
            smtp = smtplib.SMTP(self.address, self.port)
        with smtp:
            if not implicit_tls:
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    smtp.starttls(context=context)
                    smtp.ehlo()
            if self.username and smtp.has_extn("auth"):
                smtp.login(self.username, self.password)
            smtp.send_message(message)