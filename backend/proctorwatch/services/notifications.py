"""
Observer fan-out for violation notifications and risk snapshots
"""

import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Generic, List, TypeVar, Union

from proctorwatch.models.integrity import ViolationEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")
Listener = Callable[[T], Union[None, Awaitable[None]]]


class EventChannel(Generic[T]):
    """Delivers each published event to every subscriber; a failing subscriber never blocks the others"""

    def __init__(self, name: str, history: int = 20):
        self.name = name
        self._listeners: List[Listener] = []
        self.recent: Deque[T] = deque(maxlen=history)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def publish(self, event: T) -> None:
        self.recent.append(event)
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener on channel '{self.name}' failed")

    @property
    def latest(self) -> Any:
        return self.recent[-1] if self.recent else None


class ViolationChannel(EventChannel[ViolationEvent]):
    """Outward channel carrying {type, message, severity} to the exam UI"""

    async def notify(self, type: str, message: str, severity: str) -> ViolationEvent:
        event = ViolationEvent(type=type, message=message, severity=severity)
        await self.publish(event)
        return event
