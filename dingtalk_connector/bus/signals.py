"""Observer-list signals for connector notifications.

The host application subscribes to connection status changes and session
updates. Each subscriber gets every event at most once; there is no ordering
guarantee across subscribers.
"""

from typing import Callable, Generic, TypeVar

from loguru import logger


T = TypeVar("T")


class Signal(Generic[T]):
    """
    A named observer list.

    Usage:
        status = Signal[StatusEvent]("status")
        unsubscribe = status.subscribe(lambda ev: print(ev))
        status.publish(StatusEvent(...))
        unsubscribe()
    """

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """
        Register a callback.

        Returns:
            A handle that removes the callback when called. Calling it twice is a no-op.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: T) -> None:
        """Deliver an event to every current subscriber.

        A failing subscriber is logged and does not prevent delivery to the others.
        """
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Signal '{self.name}' subscriber failed: {e}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
