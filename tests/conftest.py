"""Shared fixtures: a fake broker and engines wired to it."""

from typing import Any

import pytest

from helpers import FakeBroker
from kafka_pubsub import KafkaOptions, KafkaPubSub


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def make_pubsub(broker):
    def make(**overrides: Any) -> KafkaPubSub:
        settings = {"topic": "events", "host": "localhost", "port": 9092}
        settings.update(overrides)
        return KafkaPubSub(
            KafkaOptions(**settings),
            producer_factory=broker.producer_factory,
            consumer_factory=broker.consumer_factory,
        )
    return make
