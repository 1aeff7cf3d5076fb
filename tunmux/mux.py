"""Many independent byte streams carried over one underlying connection."""

from __future__ import annotations

import logging
import re
import socket
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from tunmux.packager import MUX_PING_ID, MuxFlag, MuxPackage, PackError
from tunmux.queue import ConnQueue, PriorityQueue, QueueStopped
from tunmux.window import ReceiveWindow, SendWindow, WindowClosed

log = logging.getLogger(__name__)

_MAX_INT32 = (1 << 31) - 1
_DEFAULT_RECEIVE_BUFFER = 5 * 1024 * 1024
_WINDOWS_RECEIVE_BUFFER = 15 * 1024 * 1024
COUNTER_SIZE = 16
LOSS_RATIO = 3
DEFAULT_PING_INTERVAL = 5.0
DEFAULT_NEW_CONN_TIMEOUT = 120.0

_TIMESTAMP = re.compile(
    r"(\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d)(?:\.(\d+))?(Z|[+-]\d\d:\d\d)$"
)


class MuxError(Exception):
    """The multiplexer or one of its connections cannot serve the request."""


def socket_receive_buffer(sock: Any) -> int:
    """Return the receive buffer size used to pace bandwidth measurement."""
    if sys.platform.startswith("win"):
        return _WINDOWS_RECEIVE_BUFFER
    if isinstance(sock, socket.socket) and sock.family in (socket.AF_INET, socket.AF_INET6):
        return sock.getsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF)
    return _DEFAULT_RECEIVE_BUFFER


def _format_timestamp(moment: datetime) -> bytes:
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ").encode("ascii")


def _parse_timestamp(data: bytes) -> Optional[datetime]:
    match = _TIMESTAMP.match(data.decode("ascii", "replace").strip())
    if match is None:
        return None
    base, fraction, zone = match.groups()
    moment = datetime.strptime(base, "%Y-%m-%dT%H:%M:%S")
    if fraction:
        moment += timedelta(microseconds=int(fraction[:6].ljust(6, "0")))
    if zone == "Z":
        return moment.replace(tzinfo=timezone.utc)
    sign = 1 if zone[0] == "+" else -1
    offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])) * sign
    return moment.replace(tzinfo=timezone(offset))


class Bandwidth:
    """Estimates the read bandwidth of the underlying connection in bytes per second."""

    def __init__(self, sock: Any = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._sock = sock
        self._clock = clock
        self._bandwidth = 0.0
        self._read_start: Optional[float] = None
        self._last_read_start = 0.0
        self._buf_length = 0
        self._calc_threshold = 0

    def start_read(self) -> None:
        """Mark the start of a read, recalculating once a buffer's worth arrived."""
        now = self._clock()
        if self._read_start is None:
            self._read_start = now
        if self._buf_length >= self._calc_threshold:
            self._last_read_start, self._read_start = self._read_start, now
            self._calc_bandwidth()

    def set_copy_size(self, n: int) -> None:
        """Record that ``n`` bytes were read."""
        self._buf_length += n

    def _calc_bandwidth(self) -> None:
        elapsed = (self._read_start or 0.0) - self._last_read_start
        try:
            buffer_size = socket_receive_buffer(self._sock)
        except OSError as exc:
            log.warning("cannot read socket buffer size: %s", exc)
            self._buf_length = 0
            return
        if self._buf_length >= buffer_size:
            if elapsed > 0:
                self._bandwidth = self._buf_length / elapsed
        else:
            self._calc_threshold = buffer_size
        self._buf_length = 0

    def get(self) -> float:
        """Return the last measured bandwidth, never negative."""
        return max(self._bandwidth, 0.0)


class LatencyCounter:
    """Smooths latency samples over a ring of the most recent measurements.

    Samples more than three times the smallest one are treated as losses and
    left out of the average.
    """

    def __init__(self) -> None:
        self._buf: List[float] = [0.0] * COUNTER_SIZE
        self._head = 0
        self._min = 0

    def _minimal(self) -> int:
        positive = [(value, index) for index, value in enumerate(self._buf) if value > 0]
        return min(positive)[1] if positive else 0

    def _add(self, value: float) -> None:
        head, low = self._head, self._min
        self._buf[head] = value
        if head == low:
            low = self._minimal()
        if self._buf[low] > value:
            low = head
        self._head = (head + 1) % COUNTER_SIZE
        self._min = low

    def latency(self, value: float) -> float:
        """Add a sample and return the average of the samples considered valid."""
        self._add(value)
        floor = self._buf[self._min]
        valid = [sample for sample in self._buf if 0 < sample <= LOSS_RATIO * floor]
        return sum(valid) / len(valid) if valid else 0.0


class ConnMap:
    """Thread-safe map from connection id to connection."""

    def __init__(self) -> None:
        self._conns: Dict[int, Any] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._conns)

    def get(self, conn_id: int) -> Optional[Any]:
        """Return the connection with this id, or None."""
        with self._lock:
            return self._conns.get(conn_id)

    def set(self, conn_id: int, connection: Any) -> None:
        with self._lock:
            self._conns[conn_id] = connection

    def delete(self, conn_id: int) -> None:
        with self._lock:
            self._conns.pop(conn_id, None)

    def close_all(self) -> None:
        """Close every connection in the map."""
        with self._lock:
            conns = list(self._conns.values())
        for connection in conns:
            connection.close()


class MuxConn:
    """One logical stream carried by a Mux.

    Deadlines are absolute values of ``time.monotonic()``; ``None`` means none.
    """

    def __init__(self, conn_id: int, mux: "Mux") -> None:
        self.conn_id = conn_id
        self._mux = mux
        self.receive_window = ReceiveWindow(mux)
        self.send_window = SendWindow(mux)
        self.closed = False
        self.closing = False
        self._status = threading.Event()
        self._accepted = False
        self._close_lock = threading.Lock()

    def _mark_status(self, accepted: bool) -> None:
        self._accepted = accepted
        self._status.set()

    def _wait_status(self, timeout: float) -> bool:
        return self._status.wait(timeout) and self._accepted and not self.closed

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes; b"" means the peer closed the stream."""
        if self.closed:
            raise MuxError("the conn has closed")
        if size <= 0:
            return b""
        return self.receive_window.read(size, self.conn_id)

    def write(self, data: bytes) -> int:
        """Send all of ``data`` and return the number of bytes sent."""
        if self.closed:
            raise MuxError("the conn has closed")
        if self.closing:
            raise MuxError("io: write on closed conn")
        if not data:
            return 0
        return self.send_window.write_full(data, self.conn_id)

    def close(self) -> None:
        """Close the stream and tell the peer; closing twice does nothing."""
        with self._close_lock:
            if self.closed:
                return
            self.closed = True
        self._mux.conn_map.delete(self.conn_id)
        if not self._mux.is_closed:
            self._mux.send_info(MuxFlag.CONN_CLOSE, self.conn_id)
        self.send_window.close_window()
        self.receive_window.close_window()
        self._status.set()

    def local_address(self) -> Any:
        return self._mux.address()

    def remote_address(self) -> Any:
        return self._mux._peer_address()

    def set_deadline(self, deadline: Optional[float]) -> None:
        self.set_read_deadline(deadline)
        self.set_write_deadline(deadline)

    def set_read_deadline(self, deadline: Optional[float]) -> None:
        self.receive_window.set_timeout(deadline)

    def set_write_deadline(self, deadline: Optional[float]) -> None:
        self.send_window.set_timeout(deadline)

    def __enter__(self) -> "MuxConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Mux:
    """Multiplexes many MuxConn streams over one socket-like connection."""

    def __init__(
        self,
        conn: Any,
        conn_type: str = "tcp",
        ping_check_threshold: int = 0,
        *,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        new_conn_timeout: float = DEFAULT_NEW_CONN_TIMEOUT,
    ) -> None:
        self._conn = conn
        self.conn_type = conn_type
        if ping_check_threshold <= 0:
            ping_check_threshold = 20 if conn_type == "kcp" else 60
        self.ping_check_threshold = ping_check_threshold
        self.latency = 0.0
        self.bw = Bandwidth(conn)
        self.conn_map = ConnMap()
        self.is_closed = False
        self._ping_interval = ping_interval
        self._new_conn_timeout = new_conn_timeout
        self._counter = LatencyCounter()
        self._ping_check_time = 0
        self._ping_lock = threading.Lock()
        self._last_id = 0
        self._id_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed_event = threading.Event()
        self._write_queue = PriorityQueue()
        self._new_conn_queue = ConnQueue()
        for target in (self._read_session, self._ping_session, self._write_session):
            threading.Thread(target=target, daemon=True).start()

    def __enter__(self) -> "Mux":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._shutdown()

    def new_conn(self) -> MuxConn:
        """Open a stream to the peer, waiting until the peer accepts it."""
        if self.is_closed:
            raise MuxError("the mux has closed")
        connection = MuxConn(self._next_id(), self)
        self.conn_map.set(connection.conn_id, connection)
        self.send_info(MuxFlag.NEW_CONN, connection.conn_id)
        if connection._wait_status(self._new_conn_timeout):
            return connection
        self.conn_map.delete(connection.conn_id)
        raise MuxError("create connection fail, the server refused the connection")

    def accept(self) -> MuxConn:
        """Wait for the peer to open a stream and return it."""
        if self.is_closed:
            raise MuxError("accept error, the mux has closed")
        try:
            connection = self._new_conn_queue.pop()
        except QueueStopped:
            raise MuxError("accept error, the conn has closed") from None
        self.conn_map.set(connection.conn_id, connection)
        self.send_info(MuxFlag.NEW_CONN_OK, connection.conn_id)
        return connection

    def address(self) -> Any:
        """Local address of the underlying connection, if it has one."""
        getsockname = getattr(self._conn, "getsockname", None)
        return getsockname() if getsockname is not None else None

    def _peer_address(self) -> Any:
        getpeername = getattr(self._conn, "getpeername", None)
        return getpeername() if getpeername is not None else None

    def close(self) -> None:
        """Close the mux and every stream; raise MuxError if already closed."""
        if not self._shutdown():
            raise MuxError("the mux has closed")

    def send_info(self, flag: int, conn_id: int, data: Any = None) -> None:
        """Queue a packet for the peer."""
        if self.is_closed:
            return
        try:
            if flag == MuxFlag.MSG_SEND_OK:
                package = MuxPackage(flag, conn_id, window=int(data or 0))
            else:
                package = MuxPackage(flag, conn_id, b"" if data is None else data)
        except PackError as exc:
            log.error("mux: new pack err %s", exc)
            self._shutdown()
            return
        self._write_queue.push(package)

    def _shutdown(self) -> bool:
        with self._close_lock:
            if self.is_closed:
                return False
            self.is_closed = True
        log.info("close mux")
        self.conn_map.close_all()
        self._closed_event.set()
        self._new_conn_queue.stop()
        self._write_queue.stop()
        while self._write_queue.try_pop() is not None:
            pass
        self._close_transport()
        return True

    def _close_transport(self) -> None:
        shutdown = getattr(self._conn, "shutdown", None)
        if shutdown is not None:
            try:
                shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        try:
            self._conn.close()
        except OSError:
            pass

    def _next_id(self) -> int:
        with self._id_lock:
            while True:
                if _MAX_INT32 - self._last_id < 10000:
                    self._last_id = 0
                self._last_id += 1
                if self.conn_map.get(self._last_id) is None:
                    return self._last_id

    def _write_session(self) -> None:
        while not self.is_closed:
            try:
                package = self._write_queue.pop()
            except QueueStopped:
                break
            if self.is_closed:
                break
            try:
                package.write_to(self._conn)
            except OSError as exc:
                log.info("mux: pack err %s", exc)
                self._shutdown()
                break

    def _send_ping(self) -> None:
        self.send_info(MuxFlag.PING_FLAG, MUX_PING_ID, _format_timestamp(datetime.now(timezone.utc)))

    def _ping_session(self) -> None:
        self._send_ping()
        while not self._closed_event.wait(self._ping_interval):
            with self._ping_lock:
                check_time = self._ping_check_time
            if check_time > self.ping_check_threshold:
                log.info(
                    "mux: ping time out, checktime %d threshold %d",
                    check_time, self.ping_check_threshold,
                )
                self._shutdown()
                break
            self._send_ping()
            with self._ping_lock:
                self._ping_check_time += 1

    def _on_ping_return(self, content: bytes) -> None:
        with self._ping_lock:
            self._ping_check_time = 0
        sent = _parse_timestamp(content)
        if sent is None:
            return
        elapsed = (datetime.now(timezone.utc) - sent).total_seconds()
        if elapsed > 0:
            self.latency = self._counter.latency(elapsed)

    def _read_session(self) -> None:
        while not self.is_closed:
            self.bw.start_read()
            try:
                package = MuxPackage.read_from(self._conn)
            except (EOFError, PackError, OSError) as exc:
                if not self.is_closed:
                    log.info("mux: read session unpack from connection err %s", exc)
                self._shutdown()
                break
            self.bw.set_copy_size(len(package.pack()))
            self._dispatch(package)

    def _dispatch(self, package: MuxPackage) -> None:
        flag = package.flag
        if flag == MuxFlag.NEW_CONN:
            self._new_conn_queue.push(MuxConn(package.id, self))
            return
        if flag == MuxFlag.PING_FLAG:
            self.send_info(MuxFlag.PING_RETURN, MUX_PING_ID, package.content)
            return
        if flag == MuxFlag.PING_RETURN:
            self._on_ping_return(package.content)
            return
        connection = self.conn_map.get(package.id)
        if connection is None or connection.closed:
            return
        if flag in (MuxFlag.NEW_MSG, MuxFlag.NEW_MSG_PART):
            try:
                connection.receive_window.write(
                    package.content, len(package.content),
                    flag == MuxFlag.NEW_MSG_PART, package.id,
                )
            except (WindowClosed, ValueError) as exc:
                log.info("mux: read session connection new msg err %s", exc)
                connection.close()
        elif flag == MuxFlag.NEW_CONN_OK:
            connection._mark_status(True)
        elif flag == MuxFlag.NEW_CONN_FAIL:
            connection._mark_status(False)
        elif flag == MuxFlag.MSG_SEND_OK:
            connection.send_window.set_size(package.window)
        elif flag == MuxFlag.CONN_CLOSE:
            connection.closing = True
            connection.receive_window.stop()