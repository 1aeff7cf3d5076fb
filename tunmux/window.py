"""Flow-control windows of a multiplexed connection."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol, Tuple

from tunmux.packager import MAXIMUM_SEGMENT_SIZE, MAXIMUM_WINDOW_SIZE, MuxFlag
from tunmux.queue import (
    DEQUEUE_BITS,
    ListElement,
    QueueStopped,
    ReceiveWindowQueue,
    new_list_element,
)

log = logging.getLogger(__name__)

WINDOW_BITS = 31
WAIT_BIT = DEQUEUE_BITS + WINDOW_BITS
MASK31 = (1 << WINDOW_BITS) - 1
INITIAL_WINDOW_SIZE = MAXIMUM_SEGMENT_SIZE * 30
WRITE_CALC_THRESHOLD = 5 * 1024 * 1024


def pack_window(max_size: int, done: int, wait: bool) -> int:
    """Pack a window's maximum size, done size and wait flag into 64 bits."""
    value = ((max_size & MASK31) << DEQUEUE_BITS) | (done & MASK31)
    if wait:
        value |= 1 << WAIT_BIT
    return value


def unpack_window(value: int) -> Tuple[int, int, bool]:
    """Split a packed window value into (max_size, done, wait)."""
    max_size = (value >> DEQUEUE_BITS) & MASK31
    done = value & MASK31
    wait = bool((value >> WAIT_BIT) & 1)
    return max_size, done, wait


class WindowClosed(Exception):
    """The window was closed."""


class _MuxLike(Protocol):
    bw: Any
    latency: float

    def send_info(self, flag: int, conn_id: int, data: Any) -> None:
        ...


class WriteBandwidth:
    """Measures how fast a reader drains a receive window, in bytes per second."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._bandwidth = 0.0
        self._read_end: Optional[float] = None
        self._duration = 0.0
        self._buf_length = 0
        self._ratio = 1

    def start_read(self) -> None:
        """Mark the start of a read, recalculating once enough bytes were read."""
        now = self._clock()
        if self._read_end is None:
            self._read_end = now
        self._duration += now - self._read_end
        if self._buf_length >= WRITE_CALC_THRESHOLD * self._ratio:
            self._calc_bandwidth()

    def set_copy_size(self, n: int) -> None:
        """Record that a read copied ``n`` bytes and ended now."""
        self._buf_length += n
        self._read_end = self._clock()

    def _calc_bandwidth(self) -> None:
        if self._duration > 0:
            self._bandwidth = self._buf_length / self._duration
        else:
            self._bandwidth = float("inf")
        self._buf_length = 0
        self._duration = 0.0

    def get(self) -> float:
        """Return the last measured bandwidth, never negative."""
        return max(self._bandwidth, 0.0)

    def grow_ratio(self) -> None:
        """Raise the amount of data needed before the next measurement."""
        self._ratio += 1


class ReceiveWindow:
    """Buffers incoming segments and acknowledges freed space to the peer."""

    def __init__(self, mux: _MuxLike) -> None:
        self._mux = mux
        self._queue = ReceiveWindowQueue()
        self._element = ListElement(b"", 0, False)
        self._off = 0
        self._max_size = INITIAL_WINDOW_SIZE
        self._read = 0
        self._wait = False
        self._count = 0
        self._closed = False
        self._stopped = False
        self._lock = threading.Lock()
        self.bw = WriteBandwidth()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state(self) -> Tuple[int, int, bool]:
        """Current (max_size, read, wait)."""
        with self._lock:
            return self._max_size, self._read, self._wait

    def _remaining(self, max_size: int, delta: int) -> int:
        return max(max_size - len(self._queue) - delta, 0)

    def _calc_size(self) -> None:
        if self._count == 0:
            mux_bw = self._mux.bw.get()
            conn_bw = self.bw.get()
            latency = float(self._mux.latency)
            n = 0
            if conn_bw > 0 and mux_bw > 0:
                if conn_bw > mux_bw:
                    conn_bw = mux_bw
                    self.bw.grow_ratio()
                n = int(latency * (mux_bw + conn_bw))
            if n < INITIAL_WINDOW_SIZE:
                n = INITIAL_WINDOW_SIZE
            latency_gain = int(MAXIMUM_SEGMENT_SIZE * 3000 * latency)
            if n < latency_gain:
                n = latency_gain
            with self._lock:
                size = self._max_size
                ratio = self._remaining(size, 0) / size
                if ratio > 0.8:
                    n = int(n * 1.5625 * ratio * ratio)
                if n < size // 2:
                    n = size // 2
                if n > 2 * size:
                    if size == INITIAL_WINDOW_SIZE:
                        n = min(n, size * 6)
                    else:
                        n = 2 * size
                if conn_bw > 0 and mux_bw > 0:
                    limit = int(MAXIMUM_WINDOW_SIZE * (conn_bw / (mux_bw + conn_bw)))
                    if n > limit:
                        log.info(
                            "window too large, calculated: %d limit: %d %s %s",
                            n, limit, conn_bw, mux_bw,
                        )
                        n = limit
                self._max_size = n & MASK31
            self._count = -10
        self._count += 1

    def write(self, buf: bytes, length: int, part: bool, conn_id: int) -> None:
        """Queue a received segment and report the window state if not full."""
        if self._closed:
            raise WindowClosed("conn.receiveWindow: write on closed window")
        element = new_list_element(buf, length, part)
        self._calc_size()
        with self._lock:
            max_size, read = self._max_size, self._read
            remain = self._remaining(max_size, length)
            if remain == 0 and not self._wait:
                self._wait = True
            elif not self._wait:
                self._read = 0
            wait = self._wait
            self._queue.push(element)
        if not wait:
            self._mux.send_info(MuxFlag.MSG_SEND_OK, conn_id, pack_window(max_size, read, False))

    def read(self, size: int, conn_id: int) -> bytes:
        """Read up to ``size`` bytes; b"" means the window reached its end.

        Raises TimeoutError when the read deadline passes with nothing read.
        """
        if self._closed or size <= 0:
            return b""
        self.bw.start_read()
        data = self._read_from_queue(size, conn_id)
        self.bw.set_copy_size(len(data))
        return data

    def _read_from_queue(self, size: int, conn_id: int) -> bytes:
        out = bytearray()
        while True:
            if self._off == self._element.length:
                if self._closed:
                    return bytes(out)
                try:
                    self._element = self._queue.pop()
                except QueueStopped:
                    self._off = 0
                    self._element = ListElement(b"", 0, False)
                    self.close_window()
                    return bytes(out)
                except TimeoutError:
                    self._off = 0
                    self._element = ListElement(b"", 0, False)
                    self.close_window()
                    if out:
                        return bytes(out)
                    raise
                self._off = 0
            chunk = self._element.buf[self._off:self._off + size - len(out)]
            out += chunk
            self._off += len(chunk)
            if self._off == self._element.length:
                self._send_status(conn_id, self._element.length)
            if len(out) < size and self._element.part:
                continue
            return bytes(out)

    def _send_status(self, conn_id: int, length: int) -> None:
        with self._lock:
            max_size, read = self._max_size, self._read
            if read <= (read + length) & MASK31:
                read += length
                remain = self._remaining(max_size, 0)
                if (self._wait and remain > 0) or read >= max_size // 2 or remain == max_size:
                    self._read = 0
                    self._wait = False
                    notify = True
                else:
                    self._read = read
                    notify = False
            else:
                self._read = length
                notify = True
        if notify:
            self._mux.send_info(MuxFlag.MSG_SEND_OK, conn_id, pack_window(max_size, read, False))

    def set_timeout(self, deadline: Optional[float]) -> None:
        """Set the absolute ``time.monotonic()`` deadline for reads."""
        self._queue.set_timeout(deadline)

    def stop(self) -> None:
        """Signal that no more data will arrive."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self._queue.stop()

    def close_window(self) -> None:
        """Close the window and drop everything still buffered."""
        self._closed = True
        self.stop()
        while self._queue.try_pop() is not None:
            pass


class SendWindow:
    """Splits outgoing data into segments within the peer's advertised window.

    Deadlines are absolute values of ``time.monotonic()``; ``None`` means none.
    """

    def __init__(self, mux: _MuxLike) -> None:
        self._mux = mux
        self._max_size = INITIAL_WINDOW_SIZE
        self._send = 0
        self._wait = False
        self._allowed = False
        self._closed = False
        self._deadline: Optional[float] = None
        self._cond = threading.Condition()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state(self) -> Tuple[int, int, bool]:
        """Current (max_size, sent, wait)."""
        with self._cond:
            return self._max_size, self._send, self._wait

    @staticmethod
    def _remaining(max_size: int, send: int) -> int:
        return max((max_size & MASK31) - (send & MASK31), 0)

    def set_size(self, max_size_done: int) -> bool:
        """Apply a window update from the peer; return True if the window is closed."""
        if self._closed:
            return True
        current_max, read, _ = unpack_window(max_size_done)
        with self._cond:
            if read > self._send:
                log.info(
                    "window read > send: max size: %d read: %d send %d",
                    current_max, read, self._send,
                )
                return False
            if read == 0 and current_max == self._max_size:
                return False
            send = self._send - read
            was_waiting = self._wait
            new_wait = self._remaining(current_max, send) == 0 and was_waiting
            self._max_size = current_max
            self._send = send
            self._wait = new_wait
            if was_waiting and not new_wait:
                self._allowed = True
                self._cond.notify_all()
        return False

    def _wait_receive_window(self) -> None:
        # Caller holds the condition lock.
        self._allowed = False
        deadline = self._deadline
        if deadline is not None and deadline - time.monotonic() < 0:
            deadline = None
        while not self._allowed:
            if self._closed:
                raise WindowClosed("conn.writeWindow: window closed")
            if deadline is None:
                self._cond.wait()
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("conn.writeWindow: write to time out")
                self._cond.wait(remaining)
        if self._closed:
            raise WindowClosed("conn.writeWindow: window closed")

    def _next_segment(self, data: bytes, off: int) -> Tuple[bytes, bool]:
        with self._cond:
            while True:
                if self._closed:
                    raise WindowClosed("conn.writeWindow: window closed")
                remain = self._remaining(self._max_size, self._send)
                if remain > 0:
                    break
                self._wait = True
                self._wait_receive_window()
            left = len(data) - off
            send_size = min(left, MAXIMUM_SEGMENT_SIZE, remain)
            self._send += send_size
            return data[off:off + send_size], send_size < left

    def write_full(self, data: bytes, conn_id: int) -> int:
        """Send all of ``data`` to the peer, waiting for window space as needed."""
        data = bytes(data)
        if self._closed:
            raise WindowClosed("conn.writeWindow: window closed")
        off = 0
        while off < len(data):
            segment, part = self._next_segment(data, off)
            off += len(segment)
            flag = MuxFlag.NEW_MSG_PART if part else MuxFlag.NEW_MSG
            self._mux.send_info(flag, conn_id, segment)
        return off

    def set_timeout(self, deadline: Optional[float]) -> None:
        """Set the absolute ``time.monotonic()`` deadline for waiting on the peer."""
        with self._cond:
            self._deadline = deadline

    def close_window(self) -> None:
        """Close the window and release a waiting writer."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()