"""Stage Events - In-process publication of committed stage changes"""
from typing import Callable, List

from ..domain.models import StageChanged
from ..utils.logger import get_logger

logger = get_logger(__name__)

Subscriber = Callable[[StageChanged], None]


class StageEventBus:
    """
    Synchronous fan-out of StageChanged events.

    Publishing happens after the commit, so a failing subscriber is logged and
    never undoes the transition or stops the other subscribers.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def publish(self, event: StageChanged) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                logger.error(
                    f"Stage event subscriber {getattr(subscriber, '__name__', subscriber)} failed: {e}",
                    extra={"application_id": event.application_id, "history_id": event.history_id},
                    exc_info=True
                )


_event_bus = StageEventBus()


def get_event_bus() -> StageEventBus:
    """Process-wide event bus"""
    return _event_bus
