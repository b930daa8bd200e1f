"""Output that POSTs each event as JSON to one of several HTTP endpoints."""

from __future__ import annotations

import dataclasses
import logging
import random
from typing import Any, Mapping

import requests

from eventsink.core import ConfigError, LogEvent, Output

log = logging.getLogger(__name__)

_CONNECT_TIMEOUT = 30.0


class EndpointDownError(RuntimeError):
    """Raised when an endpoint answers with a status other than 200."""

    def __init__(self, url: str, status: int | None = None) -> None:
        super().__init__(f"{url!r} endpoint down")
        self.url = url
        self.status = status


@dataclasses.dataclass
class HttpOutput(Output):
    """POST every event as JSON to a randomly chosen URL from ``urls``."""

    module_name = "http"

    urls: list[str] = dataclasses.field(default_factory=list)
    _session: requests.Session | None = dataclasses.field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.urls:
            raise ConfigError("no valid URLs found")
        self._session = requests.Session()

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> HttpOutput:
        """Build the output from a raw configuration mapping."""
        return super().from_config(raw)

    def output(self, event: LogEvent) -> None:
        url = random.choice(self.urls)
        body = event.to_json().encode("utf-8")
        session = self._session or requests.Session()
        self._session = session
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"eventsink/output{self.module_name}",
        }
        with session.post(
            url, data=body, headers=headers, timeout=(_CONNECT_TIMEOUT, None)
        ) as response:
            _ = response.content
            if response.status_code != 200:
                error = EndpointDownError(url, response.status_code)
                log.error("output http: %s", error)
                raise error

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None