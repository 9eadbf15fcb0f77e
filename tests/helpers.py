"""In-memory stand-ins for the aiokafka producer and consumer, plus async test helpers."""

import asyncio
from dataclasses import dataclass
from typing import Optional, Tuple

from aiokafka.errors import ConsumerStoppedError, KafkaConnectionError, KafkaError, KafkaTimeoutError

_STOP = object()


@dataclass
class FakeRecord:
    topic: str
    partition: int
    offset: int
    timestamp: Optional[int]
    key: Optional[bytes]
    value: bytes
    headers: Tuple[Tuple[str, bytes], ...] = ()


class FakeMetadata:
    def __init__(self, topics):
        self._topics = set(topics)

    def topics(self, exclude_internal_topics=True):
        return set(self._topics)


class FakeClient:
    def __init__(self, broker):
        self.broker = broker

    async def fetch_all_metadata(self):
        return FakeMetadata(self.broker.topics)


class FakeBroker:
    """Holds topics and records and fans records out to started consumers."""

    def __init__(self, topics=("events",)):
        self.topics = set(topics)
        self.records = []
        self.producers = []
        self.consumers = []
        self.connect_delay = 0.0
        self.fail_connect = False
        self.fail_send = False
        self.fail_stop = False

    def producer_factory(self, **config):
        producer = FakeProducer(self, config)
        self.producers.append(producer)
        return producer

    def consumer_factory(self, **config):
        consumer = FakeConsumer(self, config)
        self.consumers.append(consumer)
        return consumer

    def deliver(self, topic, value, key=None, headers=None, timestamp=None):
        record = FakeRecord(
            topic=topic,
            partition=0,
            offset=len(self.records),
            timestamp=timestamp,
            key=key,
            value=value,
            headers=tuple(headers or ()),
        )
        self.records.append(record)
        for consumer in self.consumers:
            if consumer.started and not consumer.stopped and topic in consumer.subscription:
                consumer.queue.put_nowait(record)
        return record


class _FakeConnection:
    def __init__(self, broker, config):
        self.broker = broker
        self.config = config
        self.started = False
        self.stopped = False
        self.start_calls = 0

    async def start(self):
        self.start_calls += 1
        if self.broker.connect_delay:
            await asyncio.sleep(self.broker.connect_delay)
        if self.broker.fail_connect:
            raise KafkaConnectionError("Unable to bootstrap from localhost:9092")
        self.started = True

    async def stop(self):
        self.stopped = True
        if self.broker.fail_stop:
            raise KafkaError("disconnect failed")


class FakeProducer(_FakeConnection):
    def __init__(self, broker, config):
        super().__init__(broker, config)
        self.client = FakeClient(broker)
        self.sent = []

    async def send_and_wait(self, topic, value=None, key=None, timestamp_ms=None, headers=None):
        if self.broker.fail_send:
            raise KafkaTimeoutError()
        self.sent.append(
            {"topic": topic, "value": value, "key": key, "timestamp_ms": timestamp_ms, "headers": headers}
        )
        return self.broker.deliver(topic, value, key=key, headers=headers, timestamp=timestamp_ms)


class FakeConsumer(_FakeConnection):
    def __init__(self, broker, config):
        super().__init__(broker, config)
        self.subscription = []
        self.queue = asyncio.Queue()

    async def topics(self):
        return set(self.broker.topics)

    def subscribe(self, topics=(), pattern=None, listener=None):
        self.subscription = list(topics)

    async def getone(self):
        item = await self.queue.get()
        if item is _STOP:
            raise ConsumerStoppedError()
        if isinstance(item, BaseException):
            raise item
        return item

    async def stop(self):
        self.queue.put_nowait(_STOP)
        await super().stop()


async def wait_until(predicate, timeout=1.0):
    """Poll predicate until it holds; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def settle():
    """Give the consume loop a chance to run."""
    for _ in range(10):
        await asyncio.sleep(0)

