"""In-process broker (``memory://<name>``).

Servers live in a process-wide registry keyed by name, so a drain and a later
replay in the same process can point at distinct "brokers". Used by the test
suite and for embedding the tool; it mirrors the AMQP semantics the other
adapters implement (unacked messages return to the queue head on close,
publishing to an undeclared queue is unroutable).
"""
from __future__ import annotations

import itertools
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from mqbackup.errors import BrokerConnectionError, ConfigurationError, DecodeError, PublishError, QueueNotFoundError
from mqbackup.integrations.base import Broker, BrokerSettings, ReceivedMessage
from mqbackup.models.record import PropertyValue, QueueSpec, Record
from mqbackup.services.record_codec import check_property_value
from mqbackup.utils import get_logger

logger = get_logger(__name__)

StoredMessage = Tuple[bytes, Dict[str, Any]]


@dataclass
class MemoryServer:
    name: str
    queues: Dict[str, Deque[StoredMessage]] = field(default_factory=dict)
    declarations: Dict[str, QueueSpec] = field(default_factory=dict)
    # Failure injection: refuse connects, fail N publishes / fetches per queue.
    refuse_connections: bool = False
    publish_failures: Dict[str, int] = field(default_factory=dict)
    fetch_failures: Dict[str, int] = field(default_factory=dict)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def put(self, queue: str, body: bytes, properties: Optional[Mapping[str, Any]] = None) -> None:
        with self.lock:
            self.queues.setdefault(queue, deque()).append((bytes(body), dict(properties or {})))

    def create_queue(self, queue: str) -> None:
        with self.lock:
            self.queues.setdefault(queue, deque())

    def bodies(self, queue: str) -> List[bytes]:
        with self.lock:
            return [body for body, _ in self.queues.get(queue, ())]

    def messages(self, queue: str) -> List[StoredMessage]:
        with self.lock:
            return list(self.queues.get(queue, ()))

    def depth(self, queue: str) -> int:
        with self.lock:
            return len(self.queues.get(queue, ()))


_SERVERS: Dict[str, MemoryServer] = {}
_REGISTRY_LOCK = threading.Lock()


def get_server(name: str) -> MemoryServer:
    with _REGISTRY_LOCK:
        return _SERVERS.setdefault(name, MemoryServer(name=name))


def reset_servers() -> None:
    with _REGISTRY_LOCK:
        _SERVERS.clear()


class MemoryBroker(Broker):
    _tags = itertools.count(1)

    def __init__(self, settings: BrokerSettings) -> None:
        super().__init__(settings)
        self.server = get_server(settings.host)
        self._connected = False
        self._unacked: Dict[int, Tuple[str, StoredMessage]] = {}
        self._held: Dict[str, List[int]] = {}

    def connect(self) -> None:
        if self.server.refuse_connections:
            raise BrokerConnectionError(f"connection refused by memory broker '{self.server.name}'")
        self._connected = True

    def close(self) -> None:
        with self.server.lock:
            # Unacknowledged deliveries go back to the head of their queue, oldest first.
            for tag in sorted(self._unacked, reverse=True):
                queue, stored = self._unacked.pop(tag)
                self.server.queues.setdefault(queue, deque()).appendleft(stored)
        self._held.clear()
        self._connected = False

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise BrokerConnectionError("memory broker connection is closed")

    def check_queue(self, queue: str) -> None:
        self._ensure_connected()
        if queue not in self.server.queues:
            raise QueueNotFoundError(f"queue '{queue}' not found", queue=queue)

    def declare_queue(self, spec: QueueSpec) -> None:
        self._ensure_connected()
        with self.server.lock:
            existing = self.server.declarations.get(spec.name)
            if existing is not None and existing.conflicts_with(spec):
                raise ConfigurationError(
                    f"queue '{spec.name}' already declared as {existing.describe()}, requested {spec.describe()}",
                    queue=spec.name,
                )
            self.server.declarations[spec.name] = spec
            self.server.queues.setdefault(spec.name, deque())

    def fetch_next(self, queue: str) -> Optional[ReceivedMessage]:
        self._ensure_connected()
        with self.server.lock:
            if self.server.fetch_failures.get(queue, 0) > 0:
                self.server.fetch_failures[queue] -= 1
                self._connected = False
                raise BrokerConnectionError("memory broker connection lost", queue=queue)
            pending = self.server.queues.get(queue)
            if not pending:
                return None
            stored = pending.popleft()
            tag = next(self._tags)
            self._unacked[tag] = (queue, stored)
        body, properties = stored
        return ReceivedMessage(queue=queue, body=body, raw_properties=properties, delivery_tag=tag)

    def decode(self, message: ReceivedMessage) -> Record:
        properties = {}
        for key, value in (message.raw_properties or {}).items():
            if not isinstance(key, str):
                raise DecodeError(f"property key {key!r} is not a string", queue=message.queue)
            properties[key] = check_property_value(key, value)
        return Record(queue=message.queue, body=message.body, properties=properties)

    def acknowledge(self, message: ReceivedMessage) -> None:
        self._ensure_connected()
        with self.server.lock:
            self._unacked.pop(message.delivery_tag, None)

    def release(self, message: ReceivedMessage) -> None:
        self._held.setdefault(message.queue, []).append(message.delivery_tag)

    def finish(self, queue: str) -> None:
        held = self._held.pop(queue, [])
        if not held or not self._connected:
            return
        with self.server.lock:
            target = self.server.queues.setdefault(queue, deque())
            for tag in reversed(held):
                entry = self._unacked.pop(tag, None)
                if entry is not None:
                    target.appendleft(entry[1])
        logger.debug("Released messages returned to queue", queue=queue, count=len(held))

    def publish(self, queue: str, body: bytes, properties: Mapping[str, PropertyValue]) -> None:
        self._ensure_connected()
        with self.server.lock:
            if self.server.publish_failures.get(queue, 0) > 0:
                self.server.publish_failures[queue] -= 1
                raise PublishError(f"publish to '{queue}' rejected", queue=queue)
            if queue not in self.server.queues:
                raise PublishError(f"message to '{queue}' is unroutable", queue=queue)
            self.server.queues[queue].append((bytes(body), dict(properties)))


__all__ = ["MemoryBroker", "MemoryServer", "get_server", "reset_servers"]
