"""
Wire schemas for the record file and the Redis message envelope.
Values are kept JSON-native here; tagged bytes/datetime values are resolved
by the record codec.
"""
from typing import Any, Dict, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mqbackup.models.record import validate_queue_name

RECORD_FORMAT_VERSION = 1


class MessageEnvelope(BaseModel):
    """
    Body + properties as stored in a broker that has no native metadata
    (one Redis list element).
    """
    body: str = Field(description="Base64-encoded payload")
    properties: Dict[str, Any] = Field(default_factory=dict, description="Scalar or tagged property values")

    model_config = ConfigDict(extra="forbid")


class RecordLine(MessageEnvelope):
    """One line of the record file."""
    v: Literal[1] = Field(default=RECORD_FORMAT_VERSION, description="Record format version")
    queue: str = Field(description="Source queue name")

    @field_validator("queue")
    @classmethod
    def _queue_name(cls, value: str) -> str:
        return validate_queue_name(value)
