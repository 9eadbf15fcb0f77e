import asyncio
import json

import pytest

from helpers import settle, wait_until
from kafka_pubsub import (
    BrokerConnectionError,
    EngineClosedError,
    PublishError,
    TopicNotFoundError,
    UnknownSubscriptionError,
)
from kafka_pubsub.codec import decode_payload
from kafka_pubsub.connection import ConnectionState
from kafka_pubsub.engine import PubSubEngine

pytestmark = pytest.mark.asyncio


async def test_orders_scenario(broker, make_pubsub):
    pubsub = make_pubsub(topic="events", use_headers=False)
    received = []

    await pubsub.subscribe("orders", received.append)
    await pubsub.publish("orders", {"id": 42})

    await wait_until(lambda: received)
    await settle()
    assert received == [{"id": 42}]
    assert json.loads(broker.records[0].value) == {"channel": "orders", "payload": {"id": 42}}
    await pubsub.close()


async def test_round_trip_header_mode(broker, make_pubsub):
    pubsub = make_pubsub(use_headers=True)
    received = []

    await pubsub.subscribe("orders", received.append)
    await pubsub.publish("orders", {"id": 42, "items": ["a", "b"]})

    await wait_until(lambda: received)
    # header mode hands the listener the raw body
    assert isinstance(received[0], bytes)
    assert decode_payload(received[0]) == {"id": 42, "items": ["a", "b"]}
    assert broker.records[0].headers == (("channel", b"orders"),)
    await pubsub.close()


async def test_fan_out_keeps_order(make_pubsub):
    pubsub = make_pubsub()
    first, second, third = [], [], []

    for listener in (first.append, second.append, third.append):
        await pubsub.subscribe("a", listener)
    for n in range(5):
        await pubsub.publish("a", n)

    await wait_until(lambda: len(third) == 5)
    assert first == second == third == [0, 1, 2, 3, 4]
    await pubsub.close()


async def test_channels_are_isolated(make_pubsub):
    pubsub = make_pubsub()
    a, b = [], []

    await pubsub.subscribe("A", a.append)
    await pubsub.subscribe("B", b.append)
    await pubsub.publish("B", "for b")

    await wait_until(lambda: b)
    await settle()
    assert a == []
    assert b == ["for b"]
    await pubsub.close()


async def test_unsubscribe(make_pubsub):
    pubsub = make_pubsub()
    kept, dropped = [], []

    await pubsub.subscribe("a", kept.append)
    subscription_id = await pubsub.subscribe("a", dropped.append)
    await pubsub.publish("a", 1)
    await wait_until(lambda: len(dropped) == 1)

    pubsub.unsubscribe(subscription_id)
    await pubsub.publish("a", 2)

    await wait_until(lambda: len(kept) == 2)
    await settle()
    assert dropped == [1]
    assert pubsub.metrics.get_gauge("subscriptions") == 1

    with pytest.raises(UnknownSubscriptionError):
        pubsub.unsubscribe(subscription_id)
    await pubsub.close()


async def test_subscription_ids(make_pubsub):
    pubsub = make_pubsub()
    ids = [await pubsub.subscribe("a", lambda p: None) for _ in range(3)]
    assert ids == [1, 2, 3]
    await pubsub.close()


async def test_concurrent_publishes_open_one_producer(broker, make_pubsub):
    broker.connect_delay = 0.01
    pubsub = make_pubsub()

    await asyncio.gather(*[pubsub.publish("a", n) for n in range(50)])

    assert len(broker.producers) == 1
    assert broker.producers[0].start_calls == 1
    assert len(broker.records) == 50
    assert pubsub.metrics.get_counter("published") == 50
    await pubsub.close()


async def test_concurrent_subscribes_open_one_consumer(broker, make_pubsub):
    broker.connect_delay = 0.01
    pubsub = make_pubsub()

    ids = await asyncio.gather(*[pubsub.subscribe("a", lambda p: None) for _ in range(20)])

    assert len(broker.consumers) == 1
    assert sorted(ids) == list(range(1, 21))
    await pubsub.close()


async def test_missing_topic_fails_publish_and_subscribe(broker, make_pubsub):
    pubsub = make_pubsub(topic="missing")

    with pytest.raises(TopicNotFoundError):
        await pubsub.publish("a", 1)
    with pytest.raises(TopicNotFoundError):
        await pubsub.subscribe("a", lambda p: None)

    # a failed subscribe registers nothing
    assert pubsub.registry.subscription_count() == 0
    assert pubsub.connections.producer.state is ConnectionState.FAILED
    assert pubsub.connections.consumer.state is ConnectionState.FAILED
    await pubsub.close()


async def test_broker_unreachable(broker, make_pubsub):
    broker.fail_connect = True
    pubsub = make_pubsub()

    with pytest.raises(BrokerConnectionError):
        await pubsub.publish("a", 1)
    await pubsub.close()


async def test_envelope_fallback_to_topic_channel(broker, make_pubsub):
    pubsub = make_pubsub()
    topic_listener = []

    await pubsub.subscribe("events", topic_listener.append)
    broker.deliver("events", json.dumps({"temperature": 21}).encode())

    await wait_until(lambda: topic_listener)
    assert topic_listener == [{"temperature": 21}]
    await pubsub.close()


async def test_undecodable_messages_are_dropped(broker, make_pubsub):
    pubsub = make_pubsub()
    received = []

    await pubsub.subscribe("a", received.append)
    broker.deliver("events", b"{not json")
    await pubsub.publish("a", "after")

    await wait_until(lambda: received)
    assert received == ["after"]
    assert pubsub.metrics.get_counter("decode_failed") == 1
    await pubsub.close()


async def test_header_mode_requires_channel_header(broker, make_pubsub):
    pubsub = make_pubsub(use_headers=True)
    received = []

    await pubsub.subscribe("a", received.append)
    broker.deliver("events", b"1")
    broker.deliver("events", b"2", headers=[("trace", b"x")])
    await pubsub.publish("a", 3)

    await wait_until(lambda: received)
    assert received == [b"3"]
    assert pubsub.metrics.get_counter("decode_failed") == 2
    await pubsub.close()


async def test_failing_listener_is_isolated(make_pubsub):
    pubsub = make_pubsub()
    received = []

    def broken(payload):
        raise RuntimeError("listener bug")

    await pubsub.subscribe("a", broken)
    await pubsub.subscribe("a", received.append)
    await pubsub.publish("a", 1)
    await pubsub.publish("a", 2)

    await wait_until(lambda: received == [1, 2])
    await pubsub.close()


async def test_publish_error(broker, make_pubsub):
    pubsub = make_pubsub()
    await pubsub.publish("a", 1)
    broker.fail_send = True

    with pytest.raises(PublishError) as info:
        await pubsub.publish("a", 2)

    assert info.value.channel == "a"
    assert pubsub.metrics.get_counter("publish_failed") == 1
    # the producer itself is still usable
    broker.fail_send = False
    await pubsub.publish("a", 3)
    assert len(broker.producers) == 1
    await pubsub.close()


async def test_partition_key(broker, make_pubsub):
    pubsub = make_pubsub(key_fun=lambda outgoing: str(outgoing["payload"]["user"]))
    await pubsub.publish("a", {"user": 7})
    assert broker.records[0].key == b"7"

    header_mode = make_pubsub(use_headers=True, key_fun=lambda outgoing: b"%d" % outgoing["user"])
    await header_mode.publish("a", {"user": 8})
    assert broker.records[1].key == b"8"

    await pubsub.close()
    await header_mode.close()


async def test_publish_sets_timestamp(broker, make_pubsub):
    pubsub = make_pubsub()
    await pubsub.publish("a", 1)
    sent = broker.producers[0].sent[0]
    assert sent["topic"] == "events"
    assert isinstance(sent["timestamp_ms"], int)
    assert sent["headers"] is None
    assert sent["key"] is None
    await pubsub.close()


async def test_two_engines_both_receive(broker, make_pubsub):
    publisher = make_pubsub()
    first = make_pubsub()
    second = make_pubsub()
    a, b = [], []

    await first.subscribe("a", a.append)
    await second.subscribe("a", b.append)
    await publisher.publish("a", "hello")

    await wait_until(lambda: a and b)
    assert a == b == ["hello"]
    for engine in (publisher, first, second):
        await engine.close()


async def test_closed_engine_rejects_use(broker, make_pubsub):
    pubsub = make_pubsub()
    subscription_id = await pubsub.subscribe("a", lambda p: None)
    await pubsub.publish("a", 1)

    await pubsub.close()
    await pubsub.close()

    assert pubsub.closed
    assert broker.producers[0].stopped
    assert broker.consumers[0].stopped
    with pytest.raises(EngineClosedError):
        await pubsub.publish("a", 2)
    with pytest.raises(EngineClosedError):
        await pubsub.subscribe("a", lambda p: None)
    # local bookkeeping still works
    pubsub.unsubscribe(subscription_id)


async def test_is_a_pubsub_engine(make_pubsub):
    pubsub = make_pubsub()
    assert isinstance(pubsub, PubSubEngine)
    assert pubsub.broker_list() == "localhost:9092"
    assert "events" in repr(pubsub)


async def test_close_during_subscribe_rejects_it(broker, make_pubsub):
    broker.connect_delay = 0.02
    pubsub = make_pubsub()

    pending = asyncio.ensure_future(pubsub.subscribe("a", lambda p: None))
    await asyncio.sleep(0)
    await pubsub.close()

    with pytest.raises(EngineClosedError):
        await pending
    assert pubsub.registry.subscription_count() == 0
    assert broker.consumers[0].stopped


async def test_close_during_publish_rejects_it(broker, make_pubsub):
    broker.connect_delay = 0.02
    pubsub = make_pubsub()

    pending = asyncio.ensure_future(pubsub.publish("a", 1))
    await asyncio.sleep(0)
    await pubsub.close()

    with pytest.raises(EngineClosedError):
        await pending
    assert broker.records == []
    assert broker.producers[0].stopped
