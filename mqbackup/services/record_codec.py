"""Record file codec (JSON Lines).

One record per line::

    {"v": 1, "queue": "orders", "body": "<base64>", "properties": {...}}

Bodies are base64 so binary payloads round-trip byte-exact. Property values
are JSON scalars, except ``bytes`` and ``datetime`` which are tagged as
``{"$bytes": "<base64>"}`` / ``{"$datetime": "<iso-8601>"}`` so their types
survive the trip. The same property encoding backs the Redis message envelope.

Reading never aborts on bad input: malformed lines are reported with their
line number and skipped.
"""
from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from mqbackup.errors import DecodeError
from mqbackup.models.record import PropertyValue, Record
from mqbackup.models.schemas import RECORD_FORMAT_VERSION, MessageEnvelope, RecordLine
from mqbackup.utils import get_logger

logger = get_logger(__name__)

BYTES_TAG = "$bytes"
DATETIME_TAG = "$datetime"

ErrorCallback = Callable[[int, DecodeError], None]


# ----------------------------- property values ----------------------------- #
def check_property_value(key: str, value: Any) -> PropertyValue:
    """Return ``value`` if it is a scalar a record can carry, else raise DecodeError."""
    if value is None or isinstance(value, (str, bool, int, float, datetime)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise DecodeError(f"property '{key}' has unsupported type {type(value).__name__}")


def encode_property_value(key: str, value: Any) -> Any:
    value = check_property_value(key, value)
    if isinstance(value, bytes):
        return {BYTES_TAG: base64.b64encode(value).decode("ascii")}
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    return value


def decode_property_value(key: str, value: Any) -> PropertyValue:
    if isinstance(value, dict):
        if len(value) == 1 and BYTES_TAG in value and isinstance(value[BYTES_TAG], str):
            return _b64decode(value[BYTES_TAG], f"property '{key}'")
        if len(value) == 1 and DATETIME_TAG in value and isinstance(value[DATETIME_TAG], str):
            try:
                return datetime.fromisoformat(value[DATETIME_TAG])
            except ValueError as e:
                raise DecodeError(f"property '{key}' has invalid datetime: {e}") from e
        raise DecodeError(f"property '{key}' is a nested object")
    if isinstance(value, list):
        raise DecodeError(f"property '{key}' is a list")
    return value


def encode_properties(properties: Mapping[str, Any]) -> dict[str, Any]:
    return {str(k): encode_property_value(str(k), v) for k, v in properties.items()}


def decode_properties(properties: Mapping[str, Any]) -> dict[str, PropertyValue]:
    return {k: decode_property_value(k, v) for k, v in properties.items()}


def _b64decode(text: str, what: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise DecodeError(f"{what} is not valid base64: {e}") from e


# --------------------------------- records --------------------------------- #
def encode_record(record: Record) -> bytes:
    """Serialize one record as a newline-terminated JSON line."""
    payload = {
        "v": RECORD_FORMAT_VERSION,
        "queue": record.queue,
        "body": base64.b64encode(record.body).decode("ascii"),
        "properties": encode_properties(record.properties),
    }
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + b"\n"


def decode_line(line: Union[bytes, str], *, line_no: Optional[int] = None) -> Record:
    """Parse one record line; raises DecodeError on anything malformed."""
    try:
        parsed = RecordLine.model_validate_json(line)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        detail = f"{'.'.join(str(p) for p in first.get('loc', ()))}: {first.get('msg', str(e))}"
        raise DecodeError(f"malformed record ({detail})", line_no=line_no) from e

    try:
        body = _b64decode(parsed.body, "body")
        properties = decode_properties(parsed.properties)
    except DecodeError as e:
        raise DecodeError(str(e), queue=parsed.queue, line_no=line_no) from e
    return Record(queue=parsed.queue, body=body, properties=properties)


def read_records(path: Union[str, Path], on_error: Optional[ErrorCallback] = None) -> Iterator[Tuple[int, Record]]:
    """Yield ``(line_no, record)`` in file order, skipping malformed lines."""
    with open(path, "rb") as fh:
        for line_no, raw in enumerate(fh, start=1):
            line = raw.strip()
            if not line:
                continue
            try:
                record = decode_line(line, line_no=line_no)
            except DecodeError as e:
                logger.warning("Skipping malformed record line", path=str(path), line_no=line_no, error=str(e))
                if on_error is not None:
                    on_error(line_no, e)
                continue
            yield line_no, record


def scan_queues(path: Union[str, Path]) -> list[str]:
    """Distinct queue names in first-seen order; malformed lines are ignored here."""
    seen: dict[str, None] = {}
    with open(path, "rb") as fh:
        for line_no, raw in enumerate(fh, start=1):
            line = raw.strip()
            if not line:
                continue
            try:
                seen.setdefault(decode_line(line, line_no=line_no).queue, None)
            except DecodeError:
                continue
    return list(seen)


# --------------------------------- envelope -------------------------------- #
def encode_envelope(body: bytes, properties: Mapping[str, Any]) -> bytes:
    payload = {
        "body": base64.b64encode(body).decode("ascii"),
        "properties": encode_properties(properties),
    }
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def decode_envelope(raw: Union[bytes, str]) -> Tuple[bytes, dict[str, PropertyValue]]:
    try:
        parsed = MessageEnvelope.model_validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"malformed message envelope: {e.error_count()} error(s)") from e
    return _b64decode(parsed.body, "body"), decode_properties(parsed.properties)


__all__ = [
    "encode_record",
    "decode_line",
    "read_records",
    "scan_queues",
    "encode_envelope",
    "decode_envelope",
    "encode_properties",
    "decode_properties",
    "check_property_value",
]
