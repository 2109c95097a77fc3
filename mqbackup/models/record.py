"""Record and queue declaration payload structures."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Union

from mqbackup.errors import ConfigurationError

# Scalar property values a record can carry through the backup file.
PropertyValue = Union[str, int, float, bool, None, bytes, datetime]

MAX_QUEUE_NAME_BYTES = 255


def validate_queue_name(name: str) -> str:
    if not isinstance(name, str) or not name:
        raise ValueError("queue name must be a non-empty string")
    if len(name.encode("utf-8")) > MAX_QUEUE_NAME_BYTES:
        raise ValueError(f"queue name longer than {MAX_QUEUE_NAME_BYTES} bytes")
    return name


@dataclass(frozen=True, slots=True)
class Record:
    """One drained message: destination queue, opaque body, scalar properties."""

    queue: str
    body: bytes
    properties: Mapping[str, PropertyValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_queue_name(self.queue)
        if not isinstance(self.body, (bytes, bytearray)):
            raise TypeError("record body must be bytes")
        object.__setattr__(self, "body", bytes(self.body))
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))


_FLAG_ALIASES = {
    "durable": ("durable", True),
    "transient": ("durable", False),
    "auto_delete": ("auto_delete", True),
    "auto-delete": ("auto_delete", True),
}


@dataclass(frozen=True, slots=True)
class QueueSpec:
    name: str
    durable: bool = True
    auto_delete: bool = False

    def conflicts_with(self, other: "QueueSpec") -> bool:
        return self.name == other.name and (self.durable, self.auto_delete) != (other.durable, other.auto_delete)

    def describe(self) -> str:
        flags = ["durable" if self.durable else "transient"]
        if self.auto_delete:
            flags.append("auto_delete")
        return f"{self.name}:{','.join(flags)}"


def parse_queue_spec(text: str, *, default_durable: bool = True, default_auto_delete: bool = False) -> QueueSpec:
    """Parse ``name[:flag,...]`` (flags: durable, transient, auto_delete)."""
    name, _, flag_text = text.partition(":")
    name = name.strip()
    try:
        validate_queue_name(name)
    except ValueError as e:
        raise ConfigurationError(f"invalid queue declaration '{text}': {e}") from e

    values: dict[str, bool] = {}
    for raw_flag in filter(None, (f.strip().lower() for f in flag_text.split(","))):
        if raw_flag not in _FLAG_ALIASES:
            raise ConfigurationError(f"unknown queue flag '{raw_flag}' in '{text}'", queue=name)
        attr, value = _FLAG_ALIASES[raw_flag]
        if attr in values and values[attr] != value:
            raise ConfigurationError(f"conflicting flags in '{text}'", queue=name)
        values[attr] = value

    return QueueSpec(
        name=name,
        durable=values.get("durable", default_durable),
        auto_delete=values.get("auto_delete", default_auto_delete),
    )


__all__ = ["Record", "QueueSpec", "PropertyValue", "parse_queue_spec", "validate_queue_name", "MAX_QUEUE_NAME_BYTES"]
