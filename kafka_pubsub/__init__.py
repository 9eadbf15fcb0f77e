"""Multiplex many pub-sub channels onto a single Kafka topic."""

from kafka_pubsub.config import KafkaOptions
from kafka_pubsub.connection import ConnectionManager, ConnectionState
from kafka_pubsub.engine import PubSubEngine
from kafka_pubsub.errors import (
    BrokerConnectionError,
    CloseError,
    DecodeError,
    EngineClosedError,
    PublishError,
    PubSubError,
    TopicNotFoundError,
    UnknownSubscriptionError,
)
from kafka_pubsub.pubsub import KafkaPubSub
from kafka_pubsub.message import WireMessage
from kafka_pubsub.registry import Registry

__all__ = [
    "KafkaOptions",
    "KafkaPubSub",
    "PubSubEngine",
    "ConnectionManager",
    "ConnectionState",
    "Registry",
    "WireMessage",
    "PubSubError",
    "BrokerConnectionError",
    "TopicNotFoundError",
    "PublishError",
    "DecodeError",
    "UnknownSubscriptionError",
    "CloseError",
    "EngineClosedError",
]
