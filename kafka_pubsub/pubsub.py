"""KafkaPubSub: many logical channels multiplexed onto one Kafka topic."""

from typing import Any, Callable, Optional

from aiokafka.errors import KafkaError

from kafka_pubsub import codec
from kafka_pubsub.config import KafkaOptions
from kafka_pubsub.connection import ConnectionManager
from kafka_pubsub.engine import PubSubEngine
from kafka_pubsub.errors import DecodeError, EngineClosedError, PublishError
from kafka_pubsub.message import WireMessage
from kafka_pubsub.observability import Metrics, get_logger
from kafka_pubsub.registry import Listener, Registry


class KafkaPubSub(PubSubEngine):
    """Kafka-backed PubSubEngine.

    The producer is only created on the first publish() and the consumer on
    the first subscribe(). Every instance reads the whole topic under its own
    consumer group unless ``group_id`` is configured.

    In header mode listeners receive the raw message bytes (use
    :func:`kafka_pubsub.codec.decode_payload` to parse them); in envelope mode
    they receive the parsed payload.

    Once closed, an instance cannot publish or subscribe again.
    """

    def __init__(
        self,
        options: KafkaOptions,
        logger=None,
        producer_factory: Optional[Callable[..., Any]] = None,
        consumer_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        if not isinstance(options, KafkaOptions):
            options = KafkaOptions.model_validate(options)
        self.options = options
        self._logger = (logger or get_logger("kafka_pubsub")).getChild("KafkaPubSub")
        self.metrics = Metrics()
        self.registry = Registry(logger=self._logger)
        self.connections = ConnectionManager(
            options,
            logger=self._logger,
            producer_factory=producer_factory,
            consumer_factory=consumer_factory,
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def broker_list(self) -> str:
        return self.connections.broker_list()

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise EngineClosedError(f"cannot {operation}: KafkaPubSub is closed")

    async def publish(self, channel: str, payload: Any) -> None:
        self._check_open("publish")
        # only create the producer once something is actually published
        producer = await self.connections.ensure_producer()
        # close() may have run while the producer was being created
        self._check_open("publish")

        use_headers = self.options.use_headers
        message = codec.encode(channel, payload, use_headers, key=self._partition_key(channel, payload))
        self._logger.debug("Publish %s", message.value, extra={"channel": channel})
        try:
            await producer.send_and_wait(
                self.options.topic,
                value=message.value,
                key=message.key,
                timestamp_ms=message.timestamp,
                headers=message.kafka_headers(),
            )
        except KafkaError as e:
            self.metrics.increment("publish_failed")
            self._logger.error("publish_failed", extra={"channel": channel, "error": str(e)})
            raise PublishError(channel, str(e)) from e
        self.metrics.increment("published")
        self._logger.debug("published", extra={"channel": channel, "topic": self.options.topic})

    def _partition_key(self, channel: str, payload: Any) -> Optional[bytes]:
        key_fun = self.options.key_fun
        if key_fun is None:
            return None
        key = key_fun(codec.envelope(channel, payload, self.options.use_headers))
        if isinstance(key, str):
            key = key.encode("utf-8")
        return key

    async def subscribe(self, channel: str, listener: Listener) -> int:
        self._check_open("subscribe")
        self._logger.info("Subscribing to %s", channel)
        await self.connections.ensure_consumer(self._on_message)
        self._check_open("subscribe")
        subscription_id = self.registry.subscribe(channel, listener)
        self.metrics.set_gauge("subscriptions", self.registry.subscription_count())
        self._logger.info(
            "subscribed", extra={"channel": channel, "subscription_id": subscription_id}
        )
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> None:
        channel, _listener = self.registry.unsubscribe(subscription_id)
        self.metrics.set_gauge("subscriptions", self.registry.subscription_count())
        self._logger.info("Unsubscribing from %s", channel, extra={"subscription_id": subscription_id})

    def _on_message(self, message: WireMessage) -> None:
        """Consume-loop callback: route one record to its channel's listeners."""
        self.metrics.increment("received")
        try:
            channel, body = codec.decode_channel(
                message, self.options.use_headers, self.options.topic
            )
        except DecodeError as e:
            self.metrics.increment("decode_failed")
            self._logger.warning(
                "decode_failed",
                extra={"error": str(e), "offset": message.offset, "partition": message.partition},
            )
            return
        self._logger.debug("Received %s", message.value, extra={"channel": channel})
        delivered = self.registry.dispatch(channel, body)
        self.metrics.increment("dispatched", delivered)

    async def close(self) -> None:
        """Disconnect producer and consumer. A second call does nothing."""
        if self._closed:
            return
        self._closed = True
        await self.connections.close()
        self._logger.info("closed", extra={"topic": self.options.topic})

    def __repr__(self) -> str:
        return (
            f"KafkaPubSub(topic={self.options.topic!r}, brokers={self.broker_list()!r}, "
            f"subscriptions={self.registry.subscription_count()})"
        )
