"""
Bounded single-producer / multi-consumer channel.

A thin wrapper around ``queue.Queue`` with an explicit ``close()``: consumers
iterate over the channel and stop once it is closed and drained, so the
producer never has to know how many consumers are listening.
"""

import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, Iterator, Optional, Tuple

_CLOSED = object()


class BoundedChannel:
    """Blocking FIFO with a fixed capacity and an end-of-stream signal."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("Channel capacity must be at least 1")
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()

    def put(self, item: Any) -> None:
        if self._closed.is_set():
            raise RuntimeError("Cannot put on a closed channel")
        self._queue.put(item)

    def close(self) -> None:
        """Signal that no more items will be produced."""
        if not self._closed.is_set():
            self._closed.set()
            # Wake one consumer; each consumer passes the marker on
            self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __iter__(self) -> Iterator[Any]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item


def run_producer_consumers(produce: Callable[[], Iterable[Any]],
                           new_worker: Callable[[], Tuple[Callable[[Any], None], Callable[[], None]]],
                           n_consumer: int) -> None:
    """Run one producer and ``n_consumer`` consumers over a bounded channel.

    Args:
        produce: Returns the items to send, in order
        new_worker: Called once per consumer thread; returns ``(handle, finish)``
            where ``handle(item)`` processes one item and ``finish()`` runs
            after the channel is drained (e.g. to merge local results)
        n_consumer: Number of consumer threads

    An exception in any thread is re-raised here once all threads stop. A
    failing consumer keeps draining the channel so the producer cannot block.
    """
    channel = BoundedChannel(capacity=n_consumer)

    def producer() -> None:
        try:
            for item in produce():
                channel.put(item)
        finally:
            channel.close()

    def consumer() -> None:
        error: Optional[BaseException] = None
        try:
            handle, finish = new_worker()
        except Exception as exc:
            error = exc
        for item in channel:
            if error is not None:
                continue
            try:
                handle(item)
            except Exception as exc:
                error = exc
        if error is not None:
            raise error
        finish()

    with ThreadPoolExecutor(max_workers=n_consumer + 1) as executor:
        futures = [executor.submit(producer)]
        futures += [executor.submit(consumer) for _ in range(n_consumer)]
        for future in futures:
            future.result()
