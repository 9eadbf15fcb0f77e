"""Lazy, memoized producer and consumer connections to Kafka.

Each direction is a LazyConnection moving through
UNINITIALIZED -> CONNECTING -> READY | FAILED, and finally CLOSED. The first
caller starts the single creation task; everybody else awaits that same
task, so concurrent callers can never open a second connection. A failed
creation is memoized too: the error is re-raised to every later caller and
nothing is retried.
"""

import asyncio
import enum
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import ConsumerStoppedError, KafkaError

from kafka_pubsub.config import KafkaOptions
from kafka_pubsub.errors import (
    BrokerConnectionError,
    CloseError,
    EngineClosedError,
    TopicNotFoundError,
)
from kafka_pubsub.message import WireMessage
from kafka_pubsub.observability import get_logger

GROUP_ID_PREFIX = "kafka-pubsub-"
PRODUCER_DEFAULTS: Dict[str, Any] = {}
CONSUMER_DEFAULTS: Dict[str, Any] = {"auto_offset_reset": "latest"}

OnMessage = Callable[[WireMessage], None]


class ConnectionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


class LazyConnection:
    """A connection created on first use and at most once."""

    def __init__(
        self,
        name: str,
        create: Callable[[], Awaitable[Any]],
        disconnect: Callable[[Any], Awaitable[None]],
    ) -> None:
        self.name = name
        self.state = ConnectionState.UNINITIALIZED
        self.creations = 0
        self._create = create
        self._disconnect = disconnect
        self._task: Optional[asyncio.Task] = None

    async def get(self) -> Any:
        """Return the connection, creating it if nobody has yet."""
        if self.state is ConnectionState.CLOSED:
            raise EngineClosedError(f"{self.name} connection is closed")
        # The check and the assignment must not be separated by an await.
        if self._task is None:
            self.state = ConnectionState.CONNECTING
            self.creations += 1
            self._task = asyncio.get_running_loop().create_task(self._run())
        # shield: a cancelled caller must not cancel the shared creation
        return await asyncio.shield(self._task)

    async def _run(self) -> Any:
        try:
            handle = await self._create()
        except BaseException:
            if self.state is not ConnectionState.CLOSED:
                self.state = ConnectionState.FAILED
            raise
        if self.state is not ConnectionState.CLOSED:
            self.state = ConnectionState.READY
        return handle

    async def close(self) -> None:
        """Disconnect if a connection was made. Waits for an in-flight creation."""
        self.state = ConnectionState.CLOSED
        task = self._task
        if task is None:
            return
        try:
            handle = await asyncio.shield(task)
        except Exception:
            # Creation failed; whatever it opened was already torn down.
            return
        await self._disconnect(handle)

    def __repr__(self) -> str:
        return f"LazyConnection(name={self.name!r}, state={self.state.value})"


class ConnectionManager:
    """Owns the producer and the consumer of one engine instance."""

    error_backoff = 1.0

    def __init__(
        self,
        options: KafkaOptions,
        logger=None,
        producer_factory: Optional[Callable[..., Any]] = None,
        consumer_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.options = options
        self.group_id: Optional[str] = None
        self._logger = logger or get_logger("kafka_pubsub.connection")
        self._producer_factory = producer_factory or AIOKafkaProducer
        self._consumer_factory = consumer_factory or AIOKafkaConsumer
        self._producer = LazyConnection("producer", self._create_producer, self._disconnect_producer)
        self._consumer = LazyConnection("consumer", self._create_consumer, self._disconnect_consumer)
        self._on_message: Optional[OnMessage] = None
        self._consume_task: Optional[asyncio.Task] = None

    @property
    def producer(self) -> LazyConnection:
        return self._producer

    @property
    def consumer(self) -> LazyConnection:
        return self._consumer

    def broker_list(self) -> str:
        return self.options.broker_list()

    def _merge(self, defaults: Dict[str, Any]) -> Dict[str, Any]:
        # Increasing precedence: defaults, broker address, passthrough settings.
        config = dict(defaults)
        config["bootstrap_servers"] = self.broker_list()
        config.update(self.options.global_config)
        config.update(self.options.topic_config)
        return config

    def producer_config(self) -> Dict[str, Any]:
        return self._merge(PRODUCER_DEFAULTS)

    def consumer_config(self, group_id: str) -> Dict[str, Any]:
        return self._merge(dict(CONSUMER_DEFAULTS, group_id=group_id))

    async def ensure_producer(self) -> Any:
        return await self._producer.get()

    async def ensure_consumer(self, on_message: OnMessage) -> Any:
        """Return the consumer. The first callback supplied receives every record."""
        if self._on_message is None:
            self._on_message = on_message
        return await self._consumer.get()

    async def _start(self, client: Any, name: str) -> None:
        self._logger.info(
            f"Connecting {name} ...",
            extra={"brokers": self.broker_list(), "topic": self.options.topic},
        )
        try:
            await client.start()
        except (KafkaError, OSError) as e:
            self._logger.error(f"{name}_connect_failed", extra={"error": str(e)})
            await self._teardown(client, name)
            raise BrokerConnectionError(
                f"{name} could not connect to {self.broker_list()}: {e}"
            ) from e

    async def _verify_topic(self, client: Any, name: str, list_topics: Callable[[], Awaitable[Iterable[str]]]) -> None:
        try:
            topics = set(await list_topics())
        except KafkaError as e:
            await self._teardown(client, name)
            raise BrokerConnectionError(f"{name} could not fetch metadata: {e}") from e
        self._logger.info(
            "Connected, found topics: %s", sorted(topics), extra={"connection": name}
        )
        if self.options.topic not in topics:
            self._logger.error(
                "Could not find requested topic %s", self.options.topic, extra={"connection": name}
            )
            await self._teardown(client, name)
            raise TopicNotFoundError(self.options.topic, topics)

    async def _teardown(self, client: Any, name: str) -> None:
        try:
            await client.stop()
        except Exception as e:
            self._logger.warning(f"{name}_teardown_failed", extra={"error": str(e)})

    async def _create_producer(self) -> Any:
        producer = self._producer_factory(**self.producer_config())
        await self._start(producer, "producer")

        async def list_topics() -> Iterable[str]:
            metadata = await producer.client.fetch_all_metadata()
            return metadata.topics()

        await self._verify_topic(producer, "producer", list_topics)
        return producer

    async def _create_consumer(self) -> Any:
        # A fresh group per instance gives broadcast semantics: every engine
        # sees all of the topic's traffic unless a group id is shared.
        self.group_id = self.options.group_id or f"{GROUP_ID_PREFIX}{uuid.uuid4()}"
        self._logger.debug("Creating consumer %s", self.group_id)
        consumer = self._consumer_factory(**self.consumer_config(self.group_id))
        await self._start(consumer, "consumer")
        await self._verify_topic(consumer, "consumer", consumer.topics)

        self._logger.info("Subscribing to %s", self.options.topic)
        consumer.subscribe(topics=[self.options.topic])
        self._consume_task = asyncio.get_running_loop().create_task(self._consume(consumer))
        return consumer

    async def _consume(self, consumer: Any) -> None:
        """Pull records until the consumer stops, handing each to the callback."""
        while True:
            try:
                record = await consumer.getone()
            except ConsumerStoppedError:
                break
            except KafkaError as e:
                self._logger.error("consumer_error", extra={"error": str(e)})
                await asyncio.sleep(self.error_backoff)
                continue
            except Exception as e:
                self._logger.exception("consumer_failed", extra={"error": str(e)})
                await asyncio.sleep(self.error_backoff)
                continue
            try:
                message = WireMessage.from_record(record)
            except Exception as e:
                self._logger.exception("record_conversion_failed", extra={"error": str(e)})
                continue
            try:
                self._on_message(message)
            except Exception as e:
                self._logger.exception(
                    "message_handler_failed",
                    extra={"offset": message.offset, "error": str(e)},
                )
        self._logger.debug("consume loop stopped")

    async def _disconnect_producer(self, producer: Any) -> None:
        self._logger.info("Disconnecting producer")
        await producer.stop()

    async def _disconnect_consumer(self, consumer: Any) -> None:
        self._logger.info("Disconnecting consumer")
        task, self._consume_task = self._consume_task, None
        try:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        finally:
            # a failed loop must not leave the connection open
            await consumer.stop()

    async def close(self) -> None:
        """Disconnect both directions concurrently; raise CloseError if either failed."""
        results = await asyncio.gather(
            self._producer.close(), self._consumer.close(), return_exceptions=True
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise CloseError(errors)
