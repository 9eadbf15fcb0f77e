"""In-process fan-out registry: channel -> ordered listeners, id -> subscription."""

import itertools
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from kafka_pubsub.errors import UnknownSubscriptionError
from kafka_pubsub.observability import get_logger

Listener = Callable[[Any], None]


class Registry:
    """Maps channels to the listeners subscribed to them.

    Subscription ids start at 1 and are never reused. Mutations and the
    snapshot taken by dispatch() happen under one lock; listeners are called
    outside it so they may subscribe or unsubscribe from inside a callback.
    """

    def __init__(self, logger=None) -> None:
        self._channels: Dict[str, List[Tuple[int, Listener]]] = {}
        self._subscriptions: Dict[int, Tuple[str, Listener]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._logger = logger or get_logger("kafka_pubsub.registry")

    def subscribe(self, channel: str, listener: Listener) -> int:
        """Register listener on channel and return its subscription id."""
        with self._lock:
            subscription_id = next(self._ids)
            self._subscriptions[subscription_id] = (channel, listener)
            self._channels.setdefault(channel, []).append((subscription_id, listener))
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> Tuple[str, Listener]:
        """Remove a subscription. Raises UnknownSubscriptionError for unknown ids."""
        with self._lock:
            entry = self._subscriptions.pop(subscription_id, None)
            if entry is None:
                raise UnknownSubscriptionError(subscription_id)
            channel = entry[0]
            remaining = [s for s in self._channels.get(channel, []) if s[0] != subscription_id]
            if remaining:
                self._channels[channel] = remaining
            else:
                self._channels.pop(channel, None)
        return entry

    def get(self, subscription_id: int) -> Optional[Tuple[str, Listener]]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def dispatch(self, channel: str, payload: Any) -> int:
        """Call every listener of channel in registration order; return how many ran.

        A failing listener is logged and does not stop the others.
        """
        with self._lock:
            listeners = list(self._channels.get(channel, ()))
        for subscription_id, listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                self._logger.exception(
                    "listener_failed",
                    extra={
                        "channel": channel,
                        "subscription_id": subscription_id,
                        "error": str(e),
                    },
                )
        return len(listeners)

    def channels(self) -> List[str]:
        with self._lock:
            return list(self._channels)

    def listener_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, ()))

    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def stats(self) -> Dict[str, int]:
        """Return { channel: listener_count }."""
        with self._lock:
            return {channel: len(listeners) for channel, listeners in self._channels.items()}

    def __len__(self) -> int:
        return self.subscription_count()

    def __repr__(self) -> str:
        return f"Registry(channels={len(self._channels)}, subscriptions={len(self._subscriptions)})"
