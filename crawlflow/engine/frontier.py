"""FIFO queue of requests waiting to be dispatched."""

from __future__ import annotations

from collections import deque
from typing import Iterable, Iterator

from ..errors import FrontierEmpty
from ..types import FetchRequest


class Frontier:
    """Unbounded, order-preserving work queue.

    No priority and no deduplication: whatever the spider yields is queued as
    is. Only the engine's controller thread pushes and pops.
    """

    def __init__(self, requests: Iterable[FetchRequest] | None = None) -> None:
        self._queue: deque[FetchRequest] = deque(requests or ())
        self.total_pushed = len(self._queue)

    def push(self, request: FetchRequest) -> None:
        self._queue.append(request)
        self.total_pushed += 1

    def extend(self, requests: Iterable[FetchRequest]) -> None:
        for request in requests:
            self.push(request)

    def pop(self) -> FetchRequest:
        try:
            return self._queue.popleft()
        except IndexError:
            raise FrontierEmpty("frontier is empty") from None

    def clear(self) -> None:
        self._queue.clear()
        self.total_pushed = 0

    def __len__(self) -> int:
        return len(self._queue)

    def __bool__(self) -> bool:
        return bool(self._queue)

    def __iter__(self) -> Iterator[FetchRequest]:
        return iter(tuple(self._queue))


__all__ = ["Frontier"]
