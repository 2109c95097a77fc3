"""Redis list-backed broker adapter.

Data structures in Redis (``<p>`` = configured key prefix):
 1. List ``<p><queue>`` - the queue; head on the left, publish is RPUSH.
 2. List ``<p><queue>:processing`` - fetched but not yet acknowledged messages.
 3. Hash ``<p><queue>:meta`` - declared flags (durable, auto_delete).

On fetch:
  - LMOVE head of the queue to the tail of the processing list (nothing is
    lost if the process dies before acknowledging).
On acknowledge:
  - LREM the element from the processing list.
On begin / finish:
  - Move anything left in the processing list (released messages, or leftovers
    of a crashed run) back to the head of the queue, preserving order.

Elements are JSON envelopes ``{"body": <base64>, "properties": {...}}`` unless
raw payload mode is configured, in which case the element is the body and
messages carry no properties. Redis does not enforce durability; the flags are
recorded so conflicting redeclarations are still caught.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional

import redis

from mqbackup.errors import BrokerConnectionError, ConfigurationError, DecodeError, PublishError, QueueNotFoundError
from mqbackup.integrations.base import Broker, BrokerSettings, ReceivedMessage
from mqbackup.models.record import PropertyValue, QueueSpec, Record
from mqbackup.services.record_codec import decode_envelope, encode_envelope
from mqbackup.utils import get_logger

logger = get_logger(__name__)

_CONNECTION_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisBroker(Broker):
    def __init__(self, settings: BrokerSettings) -> None:
        super().__init__(settings)
        self._prefix: str = str(settings.option("redis_key_prefix", "") or "")
        self._raw_payloads: bool = bool(settings.option("redis_raw_payloads", False))
        self._connect_timeout = float(settings.option("connect_timeout", 10.0))
        self._client: Optional[redis.Redis] = None
        self._held: Dict[str, List[bytes]] = {}
        if settings.virtual_host and not settings.virtual_host.isdigit():
            raise ConfigurationError(f"redis database must be a number, got '{settings.virtual_host}'")

    # ------------------------------- keys ------------------------------- #
    def _key(self, queue: str) -> str:
        return f"{self._prefix}{queue}"

    def _processing_key(self, queue: str) -> str:
        return f"{self._prefix}{queue}:processing"

    def _meta_key(self, queue: str) -> str:
        return f"{self._prefix}{queue}:meta"

    # ---------------------------- connection ---------------------------- #
    def connect(self) -> None:
        url = self.settings.to_url()
        try:
            client = redis.from_url(url, socket_connect_timeout=self._connect_timeout)
            client.ping()
        except redis.RedisError as e:
            raise BrokerConnectionError(f"cannot connect to {self.settings.redacted_url()}: {e}") from e
        self._client = client
        logger.info("Connected to Redis", url=self.settings.redacted_url())

    def close(self) -> None:
        client, self._client = self._client, None
        self._held.clear()
        if client is None:
            return
        try:
            client.close()
        except redis.RedisError as e:
            logger.debug("Error closing Redis client", error=str(e))

    def _call(self, queue: Optional[str], fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if self._client is None:
            raise BrokerConnectionError("redis connection is closed", queue=queue)
        try:
            return fn(*args, **kwargs)
        except _CONNECTION_ERRORS as e:
            raise BrokerConnectionError(f"redis connection lost: {e}", queue=queue) from e

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise BrokerConnectionError("redis connection is closed")
        return self._client

    # ------------------------------ queues ------------------------------ #
    def _key_type(self, queue: str) -> str:
        return _text(self._call(queue, self.client.type, self._key(queue)))

    def check_queue(self, queue: str) -> None:
        # An empty Redis list does not exist as a key, so "none" is a valid (empty) queue.
        key_type = self._key_type(queue)
        if key_type not in ("list", "none"):
            raise QueueNotFoundError(f"key '{self._key(queue)}' holds a {key_type}, not a list", queue=queue)

    def declare_queue(self, spec: QueueSpec) -> None:
        key_type = self._key_type(spec.name)
        if key_type not in ("list", "none"):
            raise ConfigurationError(f"key '{self._key(spec.name)}' holds a {key_type}, not a list", queue=spec.name)
        meta = self._call(spec.name, self.client.hgetall, self._meta_key(spec.name)) or {}
        if meta:
            fields = {_text(k): _text(v) for k, v in meta.items()}
            existing = QueueSpec(
                name=spec.name,
                durable=fields.get("durable", "1") == "1",
                auto_delete=fields.get("auto_delete", "0") == "1",
            )
            if existing.conflicts_with(spec):
                raise ConfigurationError(
                    f"queue '{spec.name}' already declared as {existing.describe()}, requested {spec.describe()}",
                    queue=spec.name,
                )
            return
        self._call(
            spec.name,
            self.client.hset,
            self._meta_key(spec.name),
            mapping={"durable": "1" if spec.durable else "0", "auto_delete": "1" if spec.auto_delete else "0"},
        )
        logger.debug("Queue declared", queue=spec.name, flags=spec.describe())

    # ------------------------------- drain ------------------------------ #
    def _restore_processing(self, queue: str) -> int:
        moved = 0
        while self._call(queue, self.client.lmove, self._processing_key(queue), self._key(queue), "RIGHT", "LEFT") is not None:
            moved += 1
        return moved

    def begin(self, queue: str) -> None:
        recovered = self._restore_processing(queue)
        if recovered:
            logger.warning("Recovered unacknowledged messages from an earlier run", queue=queue, count=recovered)

    def fetch_next(self, queue: str) -> Optional[ReceivedMessage]:
        try:
            raw = self._call(queue, self.client.lmove, self._key(queue), self._processing_key(queue), "LEFT", "RIGHT")
        except redis.exceptions.ResponseError as e:
            raise QueueNotFoundError(f"cannot read queue '{queue}': {e}", queue=queue) from e
        if raw is None:
            return None
        return ReceivedMessage(queue=queue, body=raw, delivery_tag=raw)

    def decode(self, message: ReceivedMessage) -> Record:
        if self._raw_payloads:
            return Record(queue=message.queue, body=message.body)
        try:
            body, properties = decode_envelope(message.body)
        except DecodeError as e:
            raise DecodeError(str(e), queue=message.queue) from e
        return Record(queue=message.queue, body=body, properties=properties)

    def acknowledge(self, message: ReceivedMessage) -> None:
        self._call(message.queue, self.client.lrem, self._processing_key(message.queue), 1, message.delivery_tag)

    def release(self, message: ReceivedMessage) -> None:
        self._held.setdefault(message.queue, []).append(message.delivery_tag)

    def finish(self, queue: str) -> None:
        held = self._held.pop(queue, [])
        if self._client is None:
            return
        restored = self._restore_processing(queue)
        if held or restored:
            logger.debug("Returned unacknowledged messages to queue", queue=queue, count=restored)

    # ------------------------------ replay ------------------------------ #
    def publish(self, queue: str, body: bytes, properties: Mapping[str, PropertyValue]) -> None:
        if self._raw_payloads:
            payload = bytes(body)
        else:
            payload = encode_envelope(body, properties)
        try:
            self._call(queue, self.client.rpush, self._key(queue), payload)
        except redis.exceptions.RedisError as e:
            raise PublishError(f"RPUSH to '{queue}' failed: {e}", queue=queue) from e


__all__ = ["RedisBroker"]
