"""Publish/subscribe channels for in-process notifications.

Subscribers are called synchronously in subscription order. Late subscribers
do not receive past events.
"""

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventChannel(Generic[T]):
    """A single named stream of events."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: T) -> None:
        """Deliver an event to every current subscriber."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    f"Subscriber on channel '{self.name}' failed: {e}", exc_info=True
                )

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def clear(self) -> None:
        self._subscribers.clear()
