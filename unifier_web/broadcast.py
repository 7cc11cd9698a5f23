"""
Fan-out of job state changes to live observers (WebSocket connections in
production). Delivery is best effort: an observer whose send fails, stalls
or falls too far behind is dropped.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional

logger = logging.getLogger("unifier-web")


class _Subscription:
    def __init__(self, observer) -> None:
        self.observer = observer
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None


class ConnectionManager:
    """
    Observers are any object with an async send_json(dict) method.

    Each observer has its own queue drained by its own task, so publish()
    never waits on a socket and a slow observer only delays itself.
    Messages reach one observer in the order they were published.
    """

    def __init__(self, send_timeout: float = 5.0, max_pending: int = 1000) -> None:
        self.active: list[_Subscription] = []
        self.send_timeout = send_timeout
        self.max_pending = max_pending

    async def subscribe(self, observer, snapshot: Optional[Callable[[], Iterable[dict]]] = None):
        """
        Register observer. snapshot() is evaluated and queued in the same step
        as the registration, so nothing published concurrently can overtake it.
        """
        sub = _Subscription(observer)
        if snapshot is not None:
            for message in snapshot():
                sub.queue.put_nowait(message)
        self.active.append(sub)
        sub.task = asyncio.create_task(self._pump(sub))
        return observer

    def unsubscribe(self, observer) -> None:
        for sub in [s for s in self.active if s.observer is observer]:
            self._drop(sub)

    async def publish(self, data: dict) -> int:
        """Queue data for every observer. Returns how many observers got it."""
        queued = 0
        for sub in list(self.active):
            if sub.queue.qsize() >= self.max_pending:
                logger.warning(f"Dropping observer with {sub.queue.qsize()} undelivered messages")
                self._drop(sub)
                continue
            sub.queue.put_nowait(data)
            queued += 1
        return queued

    async def flush(self) -> None:
        """Wait until every queued message has been sent or discarded."""
        await asyncio.gather(*(s.queue.join() for s in list(self.active)))

    def close(self) -> None:
        for sub in list(self.active):
            self._drop(sub)

    def count(self) -> int:
        return len(self.active)

    async def _pump(self, sub: _Subscription) -> None:
        while True:
            message = await sub.queue.get()
            try:
                await asyncio.wait_for(sub.observer.send_json(message), timeout=self.send_timeout)
            except Exception as e:
                logger.warning(f"Dropping observer after failed send: {e!r}")
                self._drop(sub)
                return
            finally:
                sub.queue.task_done()

    def _drop(self, sub: _Subscription) -> None:
        if sub in self.active:
            self.active.remove(sub)
        if sub.task is not None and sub.task is not asyncio.current_task():
            sub.task.cancel()
        # Discard what is left so flush() does not wait on a dead observer
        while not sub.queue.empty():
            sub.queue.get_nowait()
            sub.queue.task_done()
