import contextlib
import socket
import threading
import time

import pytest

from tunmux.mux import (
    Bandwidth,
    ConnMap,
    LatencyCounter,
    Mux,
    MuxConn,
    MuxError,
    socket_receive_buffer,
)
from tunmux.packager import MuxFlag, MuxPackage


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def mux_pair():
    left, right = socket.socketpair()
    server = Mux(left)
    client = Mux(right)
    yield server, client
    for mux in (server, client):
        with contextlib.suppress(MuxError):
            mux.close()


def _open(server, client):
    result = {}
    thread = threading.Thread(target=lambda: result.setdefault("conn", client.accept()), daemon=True)
    thread.start()
    conn = server.new_conn()
    thread.join(5)
    return conn, result["conn"]


def _read_all(conn, total):
    out = bytearray()
    while len(out) < total:
        chunk = conn.read(total - len(out))
        if not chunk:
            break
        out += chunk
    return bytes(out)


def test_round_trip(mux_pair):
    server, client = mux_pair
    a, b = _open(server, client)
    assert a.conn_id == b.conn_id
    assert a.write(b"hello") == 5
    assert _read_all(b, 5) == b"hello"
    assert b.write(b"world") == 5
    assert _read_all(a, 5) == b"world"


def test_large_transfer_respects_window(mux_pair):
    server, client = mux_pair
    a, b = _open(server, client)
    payload = bytes(range(256)) * 1200  # larger than the initial window
    result = {}

    writer = threading.Thread(target=lambda: result.setdefault("sent", a.write(payload)), daemon=True)
    reader = threading.Thread(
        target=lambda: result.setdefault("got", _read_all(b, len(payload))), daemon=True
    )
    writer.start()
    reader.start()
    writer.join(15)
    reader.join(15)
    assert result["sent"] == len(payload)
    assert result["got"] == payload


def test_streams_are_independent(mux_pair):
    server, client = mux_pair
    a1, b1 = _open(server, client)
    a2, b2 = _open(server, client)
    assert a1.conn_id != a2.conn_id
    a1.write(b"first")
    a2.write(b"second")
    assert _read_all(b2, 6) == b"second"
    assert _read_all(b1, 5) == b"first"


def test_peer_close_gives_eof_then_write_fails(mux_pair):
    server, client = mux_pair
    a, b = _open(server, client)
    a.write(b"bye")
    a.close()
    assert b.read(100) == b"bye"
    assert b.read(100) == b""
    with pytest.raises(MuxError):
        b.write(b"more")


def test_closed_conn_rejects_io(mux_pair):
    server, client = mux_pair
    a, _ = _open(server, client)
    a.close()
    a.close()
    assert a.closed is True
    with pytest.raises(MuxError):
        a.read(10)
    with pytest.raises(MuxError):
        a.write(b"x")
    assert server.conn_map.get(a.conn_id) is None


def test_empty_io(mux_pair):
    server, client = mux_pair
    a, _ = _open(server, client)
    assert a.write(b"") == 0
    assert a.read(0) == b""


def test_read_deadline(mux_pair):
    server, client = mux_pair
    a, _ = _open(server, client)
    a.set_read_deadline(time.monotonic() + 0.2)
    with pytest.raises(TimeoutError):
        a.read(10)


def test_close_mux(mux_pair):
    server, client = mux_pair
    server.close()
    assert server.is_closed is True
    with pytest.raises(MuxError):
        server.close()
    with pytest.raises(MuxError):
        server.accept()
    with pytest.raises(MuxError):
        server.new_conn()
    assert _wait_for(lambda: client.is_closed)


def test_close_mux_closes_conns(mux_pair):
    server, client = mux_pair
    a, _ = _open(server, client)
    server.close()
    assert a.closed is True
    assert len(server.conn_map) == 0


def test_latency_measured_from_ping(mux_pair):
    server, client = mux_pair
    _wait_for(lambda: server.latency > 0 and client.latency > 0)
    assert 0 < server.latency < 5
    assert 0 < client.latency < 5


def test_ping_timeout_closes_mux():
    left, right = socket.socketpair()
    try:
        mux = Mux(left, ping_check_threshold=1, ping_interval=0.05)
        _wait_for(lambda: mux.is_closed, timeout=3)
        assert mux.is_closed is True
        with pytest.raises(MuxError):
            mux.new_conn()
    finally:
        right.close()


def test_new_conn_timeout():
    left, right = socket.socketpair()
    try:
        mux = Mux(left, new_conn_timeout=0.2)
        with pytest.raises(MuxError):
            mux.new_conn()
        assert len(mux.conn_map) == 0
        mux.close()
    finally:
        right.close()


def test_default_ping_thresholds():
    pairs = [socket.socketpair() for _ in range(3)]
    try:
        muxes = [Mux(pairs[0][0], "kcp"), Mux(pairs[1][0], "tcp"), Mux(pairs[2][0], "tcp", 5)]
        assert [m.ping_check_threshold for m in muxes] == [20, 60, 5]
        for mux in muxes:
            mux.close()
    finally:
        for _, right in pairs:
            right.close()


def _read_packet(sock, flag):
    while True:
        package = MuxPackage.read_from(sock)
        if package.flag == flag:
            return package


def test_raw_protocol_accept_and_message():
    left, right = socket.socketpair()
    right.settimeout(5)
    mux = Mux(left)
    try:
        right.sendall(MuxPackage(MuxFlag.NEW_CONN, 7).pack())
        conn = mux.accept()
        assert conn.conn_id == 7
        assert _read_packet(right, MuxFlag.NEW_CONN_OK).id == 7
        right.sendall(MuxPackage(MuxFlag.NEW_MSG, 7, b"hello").pack())
        assert conn.read(10) == b"hello"
        conn.write(b"reply")
        message = _read_packet(right, MuxFlag.NEW_MSG)
        assert (message.id, message.content) == (7, b"reply")
        conn.close()
        assert _read_packet(right, MuxFlag.CONN_CLOSE).id == 7
    finally:
        with contextlib.suppress(MuxError):
            mux.close()
        right.close()


def test_raw_ping_is_answered():
    left, right = socket.socketpair()
    right.settimeout(5)
    mux = Mux(left)
    try:
        right.sendall(MuxPackage(MuxFlag.PING_FLAG, -1, b"2020-01-01T00:00:00.5Z").pack())
        answer = _read_packet(right, MuxFlag.PING_RETURN)
        assert answer.id == -1
        assert answer.content == b"2020-01-01T00:00:00.5Z"
    finally:
        mux.close()
        right.close()


class _FakeConn:
    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1


def test_conn_map_operations():
    conns = ConnMap()
    first, second = _FakeConn(), _FakeConn()
    conns.set(1, first)
    conns.set(2, second)
    assert len(conns) == 2
    assert conns.get(1) is first
    assert conns.get(3) is None
    conns.delete(1)
    conns.delete(99)
    assert len(conns) == 1
    assert conns.get(1) is None
    conns.close_all()
    assert (first.closed, second.closed) == (0, 1)


def test_latency_counter_averages_valid_samples():
    counter = LatencyCounter()
    assert counter.latency(0.1) == pytest.approx(0.1)
    assert counter.latency(0.2) == pytest.approx(0.15)
    assert counter.latency(1.0) == pytest.approx(0.15)
    assert counter.latency(0.05) == pytest.approx(0.075)


def test_latency_counter_ring_wraps():
    counter = LatencyCounter()
    for _ in range(16):
        counter.latency(1.0)
    assert counter.latency(2.0) == pytest.approx(17 / 16)


def test_socket_receive_buffer_without_socket():
    import sys

    expected = 15 * 1024 * 1024 if sys.platform.startswith("win") else 5 * 1024 * 1024
    assert socket_receive_buffer(None) == expected


def test_bandwidth_measures_after_full_buffer():
    now = [0.0]
    bw = Bandwidth(None, clock=lambda: now[0])
    bw.start_read()
    size = socket_receive_buffer(None)
    bw.set_copy_size(size)
    now[0] = 2.0
    bw.start_read()
    assert bw.get() == pytest.approx(size / 2)


def test_bandwidth_waits_for_threshold():
    now = [0.0]
    bw = Bandwidth(None, clock=lambda: now[0])
    bw.start_read()
    bw.set_copy_size(socket_receive_buffer(None) - 1)
    now[0] = 1.0
    bw.start_read()
    assert bw.get() == 0.0


def test_mux_conn_deadline_sets_both(mux_pair):
    server, client = mux_pair
    a, _ = _open(server, client)
    assert isinstance(a, MuxConn)
    a.set_deadline(time.monotonic() + 0.2)
    with pytest.raises(TimeoutError):
        a.read(1)