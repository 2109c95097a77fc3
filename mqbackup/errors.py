"""Error taxonomy.

Per-run errors (connection, configuration) abort a run; per-record errors
(decode, publish) are counted and the run continues; per-queue errors
(missing queue) are reported on that queue only.
"""
from __future__ import annotations

from typing import Optional


class MqBackupError(Exception):
    """Base class for all tool errors."""

    def __init__(self, message: str, *, queue: Optional[str] = None) -> None:
        super().__init__(message)
        self.queue = queue


class BrokerConnectionError(MqBackupError):
    """Broker unreachable, authentication refused or connection lost."""


class ConfigurationError(MqBackupError):
    """Queue declared with conflicting properties or invalid operator input."""


class QueueNotFoundError(MqBackupError):
    """Source queue does not exist (or is not usable as a queue)."""


class DecodeError(MqBackupError):
    """A single message or record line could not be decoded."""

    def __init__(self, message: str, *, queue: Optional[str] = None, line_no: Optional[int] = None) -> None:
        super().__init__(message, queue=queue)
        self.line_no = line_no


class PublishError(MqBackupError):
    """A single record could not be published to the target broker."""


__all__ = [
    "MqBackupError",
    "BrokerConnectionError",
    "ConfigurationError",
    "QueueNotFoundError",
    "DecodeError",
    "PublishError",
]
