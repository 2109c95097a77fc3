"""AMQP 0-9-1 broker adapter (RabbitMQ) on pika's blocking connection.

Messages are fetched with ``basic_get`` (no auto-ack) so nothing leaves the
broker until it is acknowledged. Publishing goes through the default exchange
with publisher confirms and ``mandatory`` set, so a rejected or unroutable
message surfaces as a PublishError instead of vanishing.

Properties map one-to-one from ``BasicProperties``; application headers are
carried as ``headers.<name>`` entries. Record properties with any other key
(e.g. from a Redis-originated backup) are published as headers, and so are
values that do not convert to their field's wire type (``"priority": "high"``).
Timestamps given as ISO-8601 text or numbers become integer epoch seconds.
"""
from __future__ import annotations

import ssl
import struct
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import pika
import pika.exceptions

from mqbackup.errors import BrokerConnectionError, ConfigurationError, DecodeError, PublishError, QueueNotFoundError
from mqbackup.integrations.base import Broker, BrokerSettings, ReceivedMessage
from mqbackup.models.record import PropertyValue, QueueSpec, Record
from mqbackup.services.record_codec import check_property_value
from mqbackup.utils import get_logger
from mqbackup.utils.time import to_epoch_seconds

logger = get_logger(__name__)

BASIC_PROPERTY_FIELDS = (
    "content_type",
    "content_encoding",
    "delivery_mode",
    "priority",
    "correlation_id",
    "reply_to",
    "expiration",
    "message_id",
    "timestamp",
    "type",
    "user_id",
    "app_id",
    "cluster_id",
)
HEADER_PREFIX = "headers."

NOT_FOUND = 404
ACCESS_REFUSED = 403
PRECONDITION_FAILED = 406

_CONNECTION_ERRORS = (
    pika.exceptions.AMQPConnectionError,
    pika.exceptions.ConnectionWrongStateError,
    pika.exceptions.ChannelWrongStateError,
)


def properties_to_record(queue: str, props: Any) -> Dict[str, PropertyValue]:
    result: Dict[str, PropertyValue] = {}
    if props is None:
        return result
    try:
        for name in BASIC_PROPERTY_FIELDS:
            value = getattr(props, name, None)
            if value is not None:
                result[name] = check_property_value(name, value)
        for key, value in (getattr(props, "headers", None) or {}).items():
            name = HEADER_PREFIX + str(key)
            result[name] = check_property_value(name, value)
    except DecodeError as e:
        raise DecodeError(str(e), queue=queue) from e
    return result


# Wire types of BasicProperties: shortstr fields, two octets and a uint64 timestamp.
_OCTET_FIELDS = ("delivery_mode", "priority")
_MAX_TIMESTAMP = 2 ** 64 - 1


def _parse_timestamp(value: Any) -> Optional[int]:
    if isinstance(value, datetime):
        return to_epoch_seconds(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = int(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = int(text)
        except ValueError:
            try:
                seconds = to_epoch_seconds(datetime.fromisoformat(text.replace("Z", "+00:00")))
            except ValueError:
                return None
    else:
        return None
    return seconds if 0 <= seconds <= _MAX_TIMESTAMP else None


def _coerce_basic(key: str, value: Any) -> Any:
    """Value in the type pika frames for ``key``, or None if it has no such form."""
    if key == "timestamp":
        return _parse_timestamp(value)
    if key in _OCTET_FIELDS:
        if isinstance(value, bool):
            return None
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value.strip())
        if isinstance(value, int) and 0 <= value <= 255:
            return value
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return None
    return None


def record_to_properties(properties: Mapping[str, PropertyValue]) -> pika.BasicProperties:
    kwargs: Dict[str, Any] = {}
    headers: Dict[str, Any] = {}
    for key, value in properties.items():
        if key in BASIC_PROPERTY_FIELDS:
            if value is None:
                continue
            coerced = _coerce_basic(key, value)
            if coerced is None:
                logger.debug("Property does not fit its AMQP field; sent as header", property=key, value=repr(value))
                headers[key] = value
                continue
            kwargs[key] = coerced
        elif key.startswith(HEADER_PREFIX):
            headers[key[len(HEADER_PREFIX):]] = value
        else:
            headers[key] = value
    if headers:
        kwargs["headers"] = headers
    return pika.BasicProperties(**kwargs)


class AmqpBroker(Broker):
    def __init__(self, settings: BrokerSettings) -> None:
        super().__init__(settings)
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Any = None
        self._held: Dict[str, List[int]] = {}

    def _parameters(self) -> pika.ConnectionParameters:
        s = self.settings
        timeout = float(s.option("connect_timeout", 10.0))
        ssl_options = None
        if s.scheme == "amqps":
            ssl_options = pika.SSLOptions(ssl.create_default_context(), s.host)
        return pika.ConnectionParameters(
            host=s.host,
            port=s.port,
            virtual_host=s.virtual_host or "/",
            credentials=pika.PlainCredentials(s.username or "guest", s.password or "guest"),
            heartbeat=int(s.option("heartbeat", 60)),
            blocked_connection_timeout=timeout,
            socket_timeout=timeout,
            connection_attempts=1,
            ssl_options=ssl_options,
        )

    # ---------------------------- connection ---------------------------- #
    def connect(self) -> None:
        try:
            self._connection = pika.BlockingConnection(self._parameters())
            self._open_channel()
        except pika.exceptions.AMQPError as e:
            self._connection = None
            raise BrokerConnectionError(f"cannot connect to {self.settings.redacted_url()}: {e!r}") from e
        logger.info("Connected to AMQP broker", url=self.settings.redacted_url())

    def _open_channel(self) -> None:
        if self._connection is None:
            raise BrokerConnectionError("amqp connection is closed")
        channel = self._connection.channel()
        channel.confirm_delivery()
        self._channel = channel

    def _reopen_channel(self) -> None:
        # A channel error closes the channel; unacked deliveries on it are requeued by the broker.
        self._held.clear()
        try:
            self._open_channel()
        except pika.exceptions.AMQPError as e:
            raise BrokerConnectionError(f"cannot reopen channel: {e!r}") from e

    def close(self) -> None:
        connection, self._connection = self._connection, None
        self._channel = None
        self._held.clear()
        if connection is None:
            return
        try:
            if connection.is_open:
                connection.close()
        except pika.exceptions.AMQPError as e:
            logger.debug("Error closing AMQP connection", error=repr(e))

    @property
    def channel(self) -> Any:
        if self._channel is None:
            raise BrokerConnectionError("amqp channel is closed")
        return self._channel

    # ------------------------------ queues ------------------------------ #
    def check_queue(self, queue: str) -> None:
        try:
            self.channel.queue_declare(queue=queue, passive=True)
        except pika.exceptions.ChannelClosedByBroker as e:
            self._reopen_channel()
            raise QueueNotFoundError(f"queue '{queue}' unavailable: {e.reply_code} {e.reply_text}", queue=queue) from e
        except _CONNECTION_ERRORS as e:
            raise BrokerConnectionError(f"amqp connection lost: {e!r}", queue=queue) from e

    def declare_queue(self, spec: QueueSpec) -> None:
        try:
            self.channel.queue_declare(queue=spec.name, durable=spec.durable, auto_delete=spec.auto_delete)
        except pika.exceptions.ChannelClosedByBroker as e:
            self._reopen_channel()
            if e.reply_code in (PRECONDITION_FAILED, ACCESS_REFUSED):
                raise ConfigurationError(
                    f"cannot declare {spec.describe()}: {e.reply_code} {e.reply_text}", queue=spec.name
                ) from e
            raise BrokerConnectionError(f"declare of '{spec.name}' failed: {e.reply_code} {e.reply_text}", queue=spec.name) from e
        except _CONNECTION_ERRORS as e:
            raise BrokerConnectionError(f"amqp connection lost: {e!r}", queue=spec.name) from e
        logger.debug("Queue declared", queue=spec.name, flags=spec.describe())

    # ------------------------------- drain ------------------------------ #
    def fetch_next(self, queue: str) -> Optional[ReceivedMessage]:
        try:
            method, props, body = self.channel.basic_get(queue=queue, auto_ack=False)
        except pika.exceptions.ChannelClosedByBroker as e:
            self._reopen_channel()
            if e.reply_code == NOT_FOUND:
                raise QueueNotFoundError(f"queue '{queue}' not found", queue=queue) from e
            raise BrokerConnectionError(f"basic_get on '{queue}' failed: {e.reply_code} {e.reply_text}", queue=queue) from e
        except _CONNECTION_ERRORS as e:
            raise BrokerConnectionError(f"amqp connection lost: {e!r}", queue=queue) from e
        if method is None:
            return None
        return ReceivedMessage(queue=queue, body=body, raw_properties=props, delivery_tag=method.delivery_tag)

    def decode(self, message: ReceivedMessage) -> Record:
        properties = properties_to_record(message.queue, message.raw_properties)
        return Record(queue=message.queue, body=message.body or b"", properties=properties)

    def acknowledge(self, message: ReceivedMessage) -> None:
        try:
            self.channel.basic_ack(delivery_tag=message.delivery_tag)
        except _CONNECTION_ERRORS as e:
            raise BrokerConnectionError(f"amqp connection lost before ack: {e!r}", queue=message.queue) from e

    def release(self, message: ReceivedMessage) -> None:
        # Requeueing now would hand the same message straight back to basic_get.
        self._held.setdefault(message.queue, []).append(message.delivery_tag)

    def finish(self, queue: str) -> None:
        held = self._held.pop(queue, [])
        if not held or self._channel is None:
            return
        try:
            for tag in held:
                self._channel.basic_nack(delivery_tag=tag, requeue=True)
        except _CONNECTION_ERRORS as e:
            logger.warning("Could not requeue released messages; broker will on disconnect", queue=queue, error=repr(e))
            return
        logger.debug("Released messages requeued", queue=queue, count=len(held))

    # ------------------------------ replay ------------------------------ #
    def publish(self, queue: str, body: bytes, properties: Mapping[str, PropertyValue]) -> None:
        try:
            self.channel.basic_publish(
                exchange="",
                routing_key=queue,
                body=body,
                properties=record_to_properties(properties),
                mandatory=True,
            )
        except (pika.exceptions.UnroutableError, pika.exceptions.NackError) as e:
            raise PublishError(f"broker did not accept message for '{queue}': {e!r}", queue=queue) from e
        except pika.exceptions.ChannelClosedByBroker as e:
            self._reopen_channel()
            raise PublishError(f"publish to '{queue}' failed: {e.reply_code} {e.reply_text}", queue=queue) from e
        except _CONNECTION_ERRORS as e:
            raise BrokerConnectionError(f"amqp connection lost: {e!r}", queue=queue) from e
        except (struct.error, TypeError, ValueError) as e:
            # Frame encoding failed for this message only; the channel is untouched.
            raise PublishError(f"message for '{queue}' cannot be encoded: {e}", queue=queue) from e


__all__ = ["AmqpBroker", "properties_to_record", "record_to_properties", "BASIC_PROPERTY_FIELDS"]
