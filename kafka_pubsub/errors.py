"""Error taxonomy for the Kafka-backed pub-sub engine."""

from typing import Iterable, List, Optional


class PubSubError(Exception):
    """Base class for all pub-sub errors."""


class BrokerConnectionError(PubSubError):
    """The broker could not be reached or the connect sequence failed."""


class TopicNotFoundError(PubSubError):
    """The configured topic is absent from the broker metadata."""

    def __init__(self, topic: str, available: Optional[Iterable[str]] = None) -> None:
        self.topic = topic
        self.available = sorted(available or [])
        super().__init__(f"Could not find requested topic {topic!r}")


class PublishError(PubSubError):
    """The broker rejected or failed to acknowledge a send."""

    def __init__(self, channel: str, message: str = "publish failed") -> None:
        self.channel = channel
        super().__init__(f"{message} (channel={channel!r})")


class DecodeError(PubSubError):
    """A single inbound message could not be decoded."""


class UnknownSubscriptionError(PubSubError, KeyError):
    """unsubscribe() was called with an id that is not registered."""

    def __init__(self, subscription_id: int) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"Unknown subscription id {subscription_id!r}")

    def __str__(self) -> str:
        return self.args[0]


class CloseError(PubSubError):
    """One or both disconnects failed during close()."""

    def __init__(self, errors: List[BaseException]) -> None:
        self.errors = list(errors)
        details = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} disconnect(s) failed: {details}")


class EngineClosedError(PubSubError):
    """The engine was closed and cannot publish or subscribe any more."""
