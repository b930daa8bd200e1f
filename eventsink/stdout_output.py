"""Output that prints each event as indented JSON on standard output."""

from __future__ import annotations

import dataclasses
from typing import Any, Mapping

from eventsink.core import LogEvent, Output


@dataclasses.dataclass
class StdoutOutput(Output):
    """Print every event to standard output."""

    module_name = "stdout"

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> StdoutOutput:
        """Build the output from a raw configuration mapping."""
        return super().from_config(raw)

    def output(self, event: LogEvent) -> None:
        print(event.to_json_indent())