"""
Write Event Bus

Outcomes of write-behind attempts (committed, retrying, abandoned) are
delivered two ways: to registered observers as they happen, and into a
bounded queue that callers can poll.
"""

import asyncio
import inspect
from typing import Awaitable, Callable, List, Optional, Union

import structlog

from ...domain.cache.entities import WriteEvent
from ...domain.cache.exceptions import WriteFailure
from ...domain.cache.value_objects import WriteEventKind

logger = structlog.get_logger(__name__)

WriteObserver = Callable[[WriteEvent], Union[None, Awaitable[None]]]


class WriteEventBus:
    """
    Observer registry plus a bounded event channel.

    When the channel is full the oldest event is dropped and counted in
    ``dropped``; publishing never blocks the flush loop.
    """

    def __init__(self, maxsize: int = 1000):
        self._observers: List[WriteObserver] = []
        self._queue: "asyncio.Queue[WriteEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.published = 0

    def subscribe(self, observer: WriteObserver) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            self.unsubscribe(observer)

        return _unsubscribe

    def unsubscribe(self, observer: WriteObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def publish(self, event: WriteEvent) -> None:
        self.published += 1
        if event.kind == WriteEventKind.ABANDONED:
            logger.error(
                "Write abandoned",
                key=event.key,
                op_id=str(event.op_id),
                attempts=event.attempt,
                error=str(event.error) if event.error else None,
            )

        for observer in list(self._observers):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Write event observer failed",
                    observer=getattr(observer, "__name__", repr(observer)),
                    error=str(e),
                )

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(event)
            self.dropped += 1
            logger.warning("Write event channel full, dropped oldest event", dropped=self.dropped)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[WriteEvent]:
        """Wait for the next event; ``None`` if ``timeout`` passes first."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> List[WriteEvent]:
        """Take every buffered event without waiting."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def pending(self) -> int:
        return self._queue.qsize()

    @staticmethod
    def failure_of(event: WriteEvent) -> Optional[WriteFailure]:
        """The ``WriteFailure`` carried by an abandoned event, if any."""
        if isinstance(event.error, WriteFailure):
            return event.error
        return None
