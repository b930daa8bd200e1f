"""Log events and the base class shared by every output module."""

from __future__ import annotations

import abc
import dataclasses
import datetime as dt
import json
import os
import re
from typing import Any, ClassVar, Mapping

VERSION = "0.1.18-dev"

_FIELD_RE = re.compile(r"%\{([^}]+)\}")


class ConfigError(ValueError):
    """Raised when an output's configuration is invalid."""


def _format_timestamp(ts: dt.datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    text = ts.strftime("%Y-%m-%dT%H:%M:%S")
    if ts.microsecond:
        text += f".{ts.microsecond:06d}".rstrip("0")
    offset = int(ts.utcoffset().total_seconds())
    if not offset:
        return text + "Z"
    sign = "+" if offset > 0 else "-"
    offset = abs(offset)
    return f"{text}{sign}{offset // 3600:02d}:{offset % 3600 // 60:02d}"


def _json_default(obj: Any) -> Any:
    return _format_timestamp(obj) if isinstance(obj, dt.datetime) else str(obj)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dt.datetime):
        return _format_timestamp(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=_json_default)
    return str(value)


def format_with_env(template: str) -> str:
    """Replace each ``%{NAME}`` with the environment variable NAME, if set."""
    return _FIELD_RE.sub(lambda m: os.environ.get(m.group(1), m.group(0)), template)


@dataclasses.dataclass
class LogEvent:
    """A single log event: message, timestamp, tags and extra fields."""

    message: str = ""
    timestamp: dt.datetime | None = None
    tags: list[str] = dataclasses.field(default_factory=list)
    extra: dict[str, Any] = dataclasses.field(default_factory=dict)

    def get_value(self, path: str) -> Any:
        """Return the value at ``path`` (dotted for nested extra fields), or None."""
        special = {"message": self.message, "@timestamp": self.timestamp, "tags": self.tags}
        if path in special:
            return special[path]
        node: Any = self.extra
        for part in path.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return None
            node = node[part]
        return node

    def set_value(self, path: str, value: Any) -> None:
        """Store ``value`` at ``path``, creating nested mappings as needed."""
        if path == "message":
            self.message = _stringify(value)
        elif path == "@timestamp":
            if not isinstance(value, dt.datetime):
                raise TypeError("@timestamp must be a datetime")
            self.timestamp = value
        elif path == "tags":
            self.tags = [str(tag) for tag in value]
        else:
            *parents, leaf = path.split(".")
            node = self.extra
            for part in parents:
                if not isinstance(node.get(part), dict):
                    node[part] = {}
                node = node[part]
            node[leaf] = value

    def get_string(self, path: str) -> str:
        """Return the value at ``path`` as text, or an empty string if absent."""
        value = self.get_value(path)
        return "" if value is None else _stringify(value)

    def format(self, template: str) -> str:
        """Expand ``%{field}`` and ``%{+strftime}``; missing fields stay as written."""

        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name.startswith("+"):
                return (self.timestamp or dt.datetime.now(dt.timezone.utc)).strftime(name[1:])
            value = self.get_value(name)
            return match.group(0) if value is None else _stringify(value)

        return _FIELD_RE.sub(replace, template)

    def to_dict(self) -> dict[str, Any]:
        """Return the event as a flat JSON-ready mapping."""
        data = dict(self.extra, message=self.message)
        if self.timestamp is not None:
            data["@timestamp"] = _format_timestamp(self.timestamp)
        if self.tags:
            data["tags"] = list(self.tags)
        return data

    def to_json(self) -> str:
        """Compact JSON with sorted keys."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"),
                          ensure_ascii=False, default=_json_default)

    def to_json_indent(self) -> str:
        """Indented JSON with sorted keys."""
        return json.dumps(self.to_dict(), sort_keys=True, indent=2,
                          ensure_ascii=False, default=_json_default)


def _coerce(key: str, value: Any, field: dataclasses.Field) -> Any:
    default = field.default
    if default is dataclasses.MISSING and field.default_factory is not dataclasses.MISSING:
        default = field.default_factory()
    for kind in (bool, int, float, str, list, dict):
        if isinstance(default, kind):
            accepted = (int, float) if kind is float else kind
            if not isinstance(value, accepted) or (kind is not bool and isinstance(value, bool)):
                raise ConfigError(f"invalid value for {key!r}: {value!r}")
            return float(value) if kind is float else value
    return value


class Output(abc.ABC):
    """Base class for outputs: built from a raw config mapping, fed events."""

    module_name: ClassVar[str] = ""

    @classmethod
    def from_config(cls, raw: Mapping[str, Any] | None = None) -> "Output":
        """Build an output from ``raw``, applying defaults for missing keys."""
        raw = dict(raw or {})
        declared = raw.pop("type", None)
        if declared is not None and cls.module_name and declared != cls.module_name:
            raise ConfigError(f"config type {declared!r} does not match {cls.module_name!r}")
        kwargs: dict[str, Any] = {}
        if dataclasses.is_dataclass(cls):
            for field in dataclasses.fields(cls):
                key = field.metadata.get("key", field.name)
                if field.init and key in raw:
                    kwargs[field.name] = _coerce(key, raw[key], field)
        return cls(**kwargs)

    @property
    def type(self) -> str:
        return self.module_name

    @abc.abstractmethod
    def output(self, event: LogEvent) -> None:
        """Deliver one event."""

    def close(self) -> None:
        """Release held resources; the base output holds none."""

    def __enter__(self) -> "Output":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()