"""
Integrations package initialization.
Exports the broker capability and the adapter factory.
"""
from typing import Dict, Type

from mqbackup.errors import ConfigurationError
from mqbackup.utils import get_logger

from .base import Broker, BrokerSettings, ReceivedMessage
from .memory import MemoryBroker

logger = get_logger(__name__)


def _adapter_for(scheme: str) -> Type[Broker]:
    # Client libraries load on first use.
    if scheme in ("amqp", "amqps"):
        from .amqp import AmqpBroker
        return AmqpBroker
    if scheme in ("redis", "rediss"):
        from .redis_broker import RedisBroker
        return RedisBroker
    if scheme == "memory":
        return MemoryBroker
    raise ConfigurationError(f"unsupported broker scheme '{scheme}'")


def create_broker(settings: BrokerSettings) -> Broker:
    """Create (not connect) the adapter matching the settings' scheme."""
    adapter = _adapter_for(settings.scheme)
    logger.debug("Using broker adapter", adapter=adapter.__name__, url=settings.redacted_url())
    return adapter(settings)


SUPPORTED_SCHEMES: Dict[str, str] = {
    "amqp": "AmqpBroker",
    "amqps": "AmqpBroker",
    "redis": "RedisBroker",
    "rediss": "RedisBroker",
    "memory": "MemoryBroker",
}

__all__ = [
    "Broker",
    "BrokerSettings",
    "ReceivedMessage",
    "MemoryBroker",
    "create_broker",
    "SUPPORTED_SCHEMES",
]
