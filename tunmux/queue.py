"""Queues used by the multiplexer: ring buffers, priority and receive queues."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Generic, List, Optional, TypeVar

from tunmux.packager import MuxFlag

T = TypeVar("T")

DEQUEUE_BITS = 32
DEQUEUE_LIMIT = (1 << DEQUEUE_BITS) // 4
MAX_STARVING = 8


class QueueEmpty(Exception):
    """Nothing is queued right now."""


class QueueStopped(Exception):
    """The queue was stopped and holds nothing more."""


class BufDequeue(Generic[T]):
    """A fixed-capacity FIFO ring buffer; the capacity is a power of two."""

    def __init__(self, size: int) -> None:
        if size <= 0 or size & (size - 1):
            raise ValueError(f"dequeue size must be a power of two, got {size}")
        self._vals: List[Optional[T]] = [None] * size
        self._mask = size - 1
        self._head = 0
        self._tail = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return len(self._vals)

    def __len__(self) -> int:
        with self._lock:
            return self._head - self._tail

    def push_head(self, value: T) -> bool:
        """Add a value at the head; return False if the buffer is full."""
        with self._lock:
            if self._head - self._tail == len(self._vals):
                return False
            self._vals[self._head & self._mask] = value
            self._head += 1
            return True

    def pop_tail(self) -> T:
        """Remove and return the oldest value; raise QueueEmpty if there is none."""
        with self._lock:
            if self._head == self._tail:
                raise QueueEmpty("dequeue is empty")
            slot = self._tail & self._mask
            value = self._vals[slot]
            self._vals[slot] = None
            self._tail += 1
            return value  # type: ignore[return-value]


class BufChain(Generic[T]):
    """An unbounded FIFO made of ring buffers, each twice the size of the last."""

    def __init__(self, initial_size: int) -> None:
        self._segments: Deque[BufDequeue[T]] = deque([BufDequeue(initial_size)])
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(segment) for segment in self._segments)

    def push_head(self, value: T) -> None:
        """Add a value at the head, growing the chain when the newest buffer is full."""
        with self._lock:
            newest = self._segments[-1]
            if newest.push_head(value):
                return
            segment: BufDequeue[T] = BufDequeue(min(newest.capacity * 2, DEQUEUE_LIMIT))
            segment.push_head(value)
            self._segments.append(segment)

    def pop_tail(self) -> T:
        """Remove and return the oldest value; raise QueueEmpty if there is none."""
        with self._lock:
            while True:
                oldest = self._segments[0]
                try:
                    return oldest.pop_tail()
                except QueueEmpty:
                    if len(self._segments) == 1:
                        raise
                    self._segments.popleft()


class PriorityQueue:
    """Outgoing packets in three priorities, with a guard against starving the lowest."""

    def __init__(self) -> None:
        self._highest: BufChain[Any] = BufChain(4)
        self._middle: BufChain[Any] = BufChain(32)
        self._lowest: BufChain[Any] = BufChain(256)
        self._starving = 0
        self._stopped = False
        self._cond = threading.Condition()

    def push(self, package: Any) -> None:
        """Queue a packet according to its flag and wake any waiting reader."""
        flag = package.flag
        if flag in (MuxFlag.PING_FLAG, MuxFlag.PING_RETURN):
            self._highest.push_head(package)
        elif flag in (MuxFlag.NEW_CONN, MuxFlag.NEW_CONN_OK, MuxFlag.NEW_CONN_FAIL):
            self._middle.push_head(package)
        else:
            self._lowest.push_head(package)
        with self._cond:
            self._cond.notify_all()

    def try_pop(self) -> Optional[Any]:
        """Return the next packet, or None if nothing is queued."""
        with self._cond:
            return self._try_pop()

    def _try_pop(self) -> Optional[Any]:
        try:
            return self._highest.pop_tail()
        except QueueEmpty:
            pass
        if self._starving < MAX_STARVING:
            try:
                package = self._middle.pop_tail()
            except QueueEmpty:
                pass
            else:
                self._starving = (self._starving + 1) & 0xFF
                return package
        try:
            package = self._lowest.pop_tail()
        except QueueEmpty:
            pass
        else:
            if self._starving > 0:
                self._starving //= 2
            return package
        if self._starving > 0:
            try:
                package = self._middle.pop_tail()
            except QueueEmpty:
                pass
            else:
                self._starving = (self._starving + 1) & 0xFF
                return package
        return None

    def pop(self) -> Any:
        """Wait for the next packet; raise QueueStopped once stopped and drained."""
        with self._cond:
            while True:
                package = self._try_pop()
                if package is not None:
                    return package
                if self._stopped:
                    raise QueueStopped("priority queue stopped")
                self._cond.wait()

    def stop(self) -> None:
        """Stop the queue and release every waiting reader."""
        with self._cond:
            self._stopped = True
            self._cond.notify_all()


class ConnQueue:
    """FIFO of connections waiting to be accepted."""

    def __init__(self) -> None:
        self._chain: BufChain[Any] = BufChain(32)
        self._stopped = False
        self._cond = threading.Condition()

    def push(self, connection: Any) -> None:
        """Queue a connection and wake any waiting reader."""
        self._chain.push_head(connection)
        with self._cond:
            self._cond.notify_all()

    def try_pop(self) -> Optional[Any]:
        """Return the oldest connection, or None if nothing is queued."""
        try:
            return self._chain.pop_tail()
        except QueueEmpty:
            return None

    def pop(self) -> Any:
        """Wait for a connection; raise QueueStopped once stopped and drained."""
        with self._cond:
            while True:
                connection = self.try_pop()
                if connection is not None:
                    return connection
                if self._stopped:
                    raise QueueStopped("connection queue stopped")
                self._cond.wait()

    def stop(self) -> None:
        """Stop the queue and release every waiting reader."""
        with self._cond:
            self._stopped = True
            self._cond.notify_all()


@dataclass
class ListElement:
    """A received segment: its bytes, length and whether more parts follow."""

    buf: bytes
    length: int
    part: bool = False


def new_list_element(buf: bytes, length: int, part: bool) -> ListElement:
    """Build a ListElement, checking that the length matches the buffer."""
    if len(buf) != length:
        raise ValueError("listElement: buf length not match")
    return ListElement(bytes(buf), length, part)


class ReceiveWindowQueue:
    """FIFO of received segments that tracks the number of bytes it holds.

    Deadlines are absolute values of ``time.monotonic()``; ``None`` means none.
    """

    def __init__(self) -> None:
        self._chain: BufChain[ListElement] = BufChain(64)
        self._length = 0
        self._stopped = False
        self._deadline: Optional[float] = None
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return self._length

    def push(self, element: ListElement) -> None:
        """Queue a segment and wake a waiting reader."""
        with self._cond:
            self._length += element.length
            self._chain.push_head(element)
            self._cond.notify_all()

    def try_pop(self) -> Optional[ListElement]:
        """Return the oldest segment, or None if nothing is queued."""
        with self._cond:
            return self._try_pop()

    def _try_pop(self) -> Optional[ListElement]:
        try:
            element = self._chain.pop_tail()
        except QueueEmpty:
            return None
        self._length -= element.length
        return element

    def pop(self) -> ListElement:
        """Wait for a segment.

        Raises QueueStopped when stopped while empty and TimeoutError when the
        deadline passes. A deadline already past when waiting starts is ignored.
        """
        with self._cond:
            element = self._try_pop()
            if element is not None:
                return element
            expires: Optional[float] = None
            if self._deadline is not None and self._deadline - time.monotonic() > 0:
                expires = self._deadline
            while True:
                if self._stopped:
                    raise QueueStopped("receive queue stopped")
                if expires is None:
                    self._cond.wait()
                else:
                    remaining = expires - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError("mux.queue: read time out")
                    self._cond.wait(remaining)
                element = self._try_pop()
                if element is not None:
                    return element

    def stop(self) -> None:
        """Signal that nothing more will be pushed; waiting readers are released."""
        with self._cond:
            self._stopped = True
            self._cond.notify_all()

    def set_timeout(self, deadline: Optional[float]) -> None:
        """Set the absolute ``time.monotonic()`` deadline for pop."""
        with self._cond:
            self._deadline = deadline