"""Port reuse: tell client, manager, HTTP and HTTPS connections apart on one port."""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections import deque
from typing import Any, Deque, Optional, Tuple

log = logging.getLogger(__name__)

HTTP_GET = 716984
HTTP_POST = 807983
HTTP_HEAD = 726965
HTTP_PUT = 808585
HTTP_DELETE = 686976
HTTP_CONNECT = 677978
HTTP_OPTIONS = 798084
HTTP_TRACE = 848265
CLIENT = 848384
# A connection is handed over only if an accept is (almost) already waiting.
ACCEPT_TIMEOUT = 10e-9

_HTTP_METHODS = frozenset({
    HTTP_GET, HTTP_POST, HTTP_HEAD, HTTP_PUT,
    HTTP_DELETE, HTTP_CONNECT, HTTP_OPTIONS, HTTP_TRACE,
})
_READ_CHUNK = 4096


class ListenerClosed(Exception):
    """The listener or the port multiplexer has been closed."""


def _bytes_to_num(data: bytes) -> int:
    return int("".join(str(byte) for byte in data))


def _host_of(addr: str) -> str:
    return addr.split(":")[0]


def _recv_exact(conn: socket.socket, size: int) -> Optional[bytes]:
    buf = bytearray()
    while len(buf) < size:
        chunk = conn.recv(size - len(buf))
        if not chunk:
            return None
        buf += chunk
    return bytes(buf)


def _read_line(conn: socket.socket, pending: bytearray) -> Optional[bytes]:
    """Return the next line without its ending, or None at end of stream."""
    while b"\n" not in pending:
        try:
            chunk = conn.recv(_READ_CHUNK)
        except OSError:
            return None
        if not chunk:
            if not pending:
                return None
            line = bytes(pending)
            pending.clear()
            return line.rstrip(b"\r")
        pending += chunk
    index = pending.index(b"\n")
    line = bytes(pending[:index])
    del pending[:index + 1]
    return line[:-1] if line.endswith(b"\r") else line


class _Handoff:
    """A rendezvous point: an item is handed over only to a waiting receiver."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._items: Deque[Any] = deque()
        self._waiting = 0
        self._closed = False

    def offer(self, item: Any, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while not self._closed and self._waiting <= len(self._items):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            if self._closed:
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    def receive(self) -> Any:
        with self._cond:
            self._waiting += 1
            self._cond.notify_all()
            try:
                while not self._items:
                    if self._closed:
                        raise ListenerClosed("the listener has closed")
                    self._cond.wait()
                return self._items.popleft()
            finally:
                self._waiting -= 1

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class PortConn:
    """A connection whose first bytes were already read while routing it."""

    def __init__(self, conn: socket.socket, rs: bytes, read_more: bool) -> None:
        self.conn = conn
        self._rs = bytes(rs)
        self._read_more = read_more
        self._start = 0

    def read(self, size: int) -> bytes:
        """Return the bytes read during routing first, then read from the socket."""
        if size <= 0:
            return b""
        pending = len(self._rs) - self._start
        if size < pending:
            data = self._rs[self._start:self._start + size]
            self._start += size
            return data
        data = b""
        if pending > 0:
            data = self._rs[self._start:]
            self._start = len(self._rs)
            if not self._read_more:
                return data
        remaining = size - len(data)
        if remaining == 0:
            return data
        return data + self.conn.recv(remaining)

    def write(self, data: bytes) -> int:
        self.conn.sendall(data)
        return len(data)

    def close(self) -> None:
        self.conn.close()

    def local_address(self) -> Any:
        return self.conn.getsockname()

    def remote_address(self) -> Any:
        return self.conn.getpeername()

    def __enter__(self) -> "PortConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class PortListener:
    """Accepts the connections of one kind routed by a PortMux."""

    def __init__(self, channel: _Handoff, addr: Any) -> None:
        self._channel = channel
        self._addr = addr
        self._closed = False

    def accept(self) -> PortConn:
        """Wait for the next connection of this kind."""
        if self._closed:
            raise ListenerClosed("the listener has closed")
        return self._channel.receive()

    def close(self) -> None:
        if self._closed:
            raise ListenerClosed("the listener has closed")
        self._closed = True

    def address(self) -> Any:
        return self._addr


class PortMux:
    """Listens on one TCP port and routes each connection by its first bytes."""

    def __init__(
        self,
        port: int,
        manager_host: str,
        *,
        host: str = "0.0.0.0",
        accept_timeout: float = ACCEPT_TIMEOUT,
    ) -> None:
        self.port = port
        self.manager_host = manager_host
        self._host = host
        self._accept_timeout = accept_timeout
        self._closed = False
        self._close_lock = threading.Lock()
        self._client = _Handoff()
        self._http = _Handoff()
        self._https = _Handoff()
        self._manager = _Handoff()
        self._sock: Optional[socket.socket] = None
        self.start()

    def start(self) -> None:
        """Bind the port and start routing connections."""
        if self._sock is not None:
            raise RuntimeError("the port mux is already started")
        sock = socket.create_server((self._host, self.port))
        self._sock = sock
        self.port = sock.getsockname()[1]
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _accept_loop(self) -> None:
        assert self._sock is not None
        while True:
            try:
                conn, _ = self._sock.accept()
            except OSError as exc:
                if not self._closed:
                    log.warning("%s", exc)
                    try:
                        self.close()
                    except ListenerClosed:
                        pass
                return
            threading.Thread(target=self._process, args=(conn,), daemon=True).start()

    def _process(self, conn: socket.socket) -> None:
        try:
            head = _recv_exact(conn, 3)
        except OSError:
            head = None
        if head is None:
            conn.close()
            return
        number = _bytes_to_num(head)
        rs = head
        read_more = False
        if number in _HTTP_METHODS:
            routed = self._route_http(conn, head)
            if routed is None:
                conn.close()
                return
            channel, rs = routed
        elif number == CLIENT:
            channel = self._client
        else:
            read_more = True
            channel = self._https
        if not channel.offer(PortConn(conn, rs, read_more), self._accept_timeout):
            conn.close()

    def _route_http(self, conn: socket.socket, head: bytes) -> Optional[Tuple[_Handoff, bytes]]:
        buffer = bytearray(head)
        pending = bytearray()
        while True:
            line = _read_line(conn, pending)
            if line is None:
                log.warning("read line error")
                return None
            buffer += line + b"\r\n"
            text = line.decode("latin-1")
            if text.startswith(("Host:", "host:")):
                value = text.replace("Host:", "").replace("host:", "").strip()
                channel = self._manager if _host_of(value) == self.manager_host else self._http
                buffer += pending
                return channel, bytes(buffer)

    def close(self) -> None:
        """Stop routing and release every waiting listener."""
        with self._close_lock:
            if self._closed:
                raise ListenerClosed("the port pmux has closed")
            self._closed = True
        for channel in (self._client, self._https, self._http, self._manager):
            channel.close()
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._sock.close()

    def address(self) -> Any:
        return self._sock.getsockname() if self._sock is not None else None

    def client_listener(self) -> PortListener:
        return PortListener(self._client, self.address())

    def http_listener(self) -> PortListener:
        return PortListener(self._http, self.address())

    def https_listener(self) -> PortListener:
        return PortListener(self._https, self.address())

    def manager_listener(self) -> PortListener:
        return PortListener(self._manager, self.address())

    def __enter__(self) -> "PortMux":
        return self

    def __exit__(self, *exc_info: object) -> None:
        if not self._closed:
            self.close()