"""Abstract pub-sub engine contract consumed by subscription-serving layers."""

from abc import ABC, abstractmethod
from typing import Any, Callable


class PubSubEngine(ABC):
    """publish / subscribe / unsubscribe / close over named channels."""

    @abstractmethod
    async def publish(self, channel: str, payload: Any) -> None:
        """Publish payload to every subscriber of channel."""

    @abstractmethod
    async def subscribe(self, channel: str, listener: Callable[[Any], None]) -> int:
        """Register listener for channel and return a subscription id."""

    @abstractmethod
    def unsubscribe(self, subscription_id: int) -> None:
        """Stop delivering to the subscription with this id."""

    async def close(self) -> None:
        """Release any resources held by the engine."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
