# tunmux

`tunmux` carries many independent byte streams over a single reliable
connection, such as a TCP socket. It also has a few helpers that tunnelling
servers need alongside the multiplexer: port sharing, rate limiting and
network-impairment testing.

## Installing

```
pip install .
pip install ".[test]"   # with pytest, to run the tests
```

## What is inside

- **`tunmux.mux`**: the multiplexer. A `Mux` wraps one connected socket.
  - `Mux.new_conn()` opens a stream to the other side. It waits until the
    other side accepts the stream and raises `MuxError` if it does not in time.
  - `Mux.accept()` waits for a stream that the other side opened.
  - `Mux.close()` closes the mux and every stream on it. It raises
    `MuxError` if the mux is already closed.
  - Each stream is a `MuxConn` with `read`, `write` and `close`.
    `read` returns `b""` once the other side has closed the stream.
    Deadlines are set through `set_deadline`, `set_read_deadline` and
    `set_write_deadline`. A deadline is an absolute `time.monotonic()`
    value, and `None` means no deadline.
  - The mux sends pings to measure latency (`LatencyCounter`) and measures
    the read bandwidth of the socket (`Bandwidth`). It uses both to size
    each stream's receive window.
  - If more pings than `ping_check_threshold` go unanswered, the mux closes
    itself. The default threshold is 20 for `"kcp"` and 60 otherwise.
- **`tunmux.window`**: per-stream flow control.
  - `ReceiveWindow` and `SendWindow` exchange the window size and the
    number of bytes read. The two values and a wait flag are packed into
    one integer with `pack_window` and split again with `unpack_window`.
  - A writer blocks while the peer's window is full.
  - `WindowClosed` is raised once a window is shut.
- **`tunmux.packager`**: the wire format.
  - A `MuxPackage` holds a `MuxFlag`, a stream id and either a payload or
    a window value.
  - `pack()` and `write_to(stream)` serialise a package.
    `MuxPackage.read_from(stream)` parses one. It raises `EOFError` if the
    stream ends before a package starts.
  - A malformed frame raises `PackError`.
- **`tunmux.queue`**: the queues behind the mux.
  - `BufDequeue` is a fixed-size ring buffer. `BufChain` is an unbounded
    chain of ring buffers.
  - `PriorityQueue` sends pings first, then connection control, then
    data, and keeps data from starving.
  - `ConnQueue` holds streams waiting to be accepted.
  - `ReceiveWindowQueue` holds received segments (`ListElement`) for
    reading. Its read deadline is set with `set_timeout`.
  - A stopped, empty queue raises `QueueStopped` from `pop`.
- **`tunmux.ratelimit`**: token-bucket limiting.
  - `Rate(add_size)` adds `add_size` tokens to its bucket every second
    after `start()`, up to twice that amount. `stop()` stops the refill.
  - `Rate.get(size)` blocks until enough tokens are available.
  - `RateConn` draws from a `Rate` for every read and write on a stream.
- **`tunmux.pmux`**: port sharing. A `PortMux` binds and starts listening on
  one TCP port when it is created, and sorts each new connection by its
  first three bytes:
  - HTTP requests whose `Host` header names the manager host go to
    `manager_listener()`.
  - Other HTTP requests go to `http_listener()`.
  - Tunnel clients go to `client_listener()`.
  - Everything else, for example TLS, goes to `https_listener()`.

  Each listener's `accept()` returns a `PortConn`. A `PortConn` replays the
  bytes that were already read while the connection was sorted. A
  connection is handed over only to a listener that is already waiting in
  `accept()`; otherwise it is closed. A closed `PortMux` or listener raises
  `ListenerClosed`.
- **`tunmux.tc`**: helpers for testing under bad network conditions.
  - `TrafficControl` builds `tc qdisc ... netem` commands for delay, loss,
    duplication and corruption.
  - `TrafficControl.run_net_range_test(func)` calls `func` once under each
    combination of these settings.
  - `get_eth_by_ip` and `ips` find network interfaces.
  - `create_network`, `delete_network`, `run_docker` and `stop_docker`
    manage Docker test networks and containers.
  - These helpers run the system `tc` and `docker` programs, so they need
    those programs and usually root rights.
- **`tunmux.intheap`**: `IntHeap`, a min-heap of integers.
- **`tunmux.version`**: `VERSION` is this version. `get_version()` gives the
  oldest peer version that this one still works with.

## A stream over a socket pair

```python
import socket
import threading

from tunmux.mux import Mux

left, right = socket.socketpair()
server = Mux(left, "tcp", 60)
client = Mux(right, "tcp", 60)


def serve():
    conn = client.accept()
    data = conn.read(1024)
    conn.write(data.upper())
    conn.close()


threading.Thread(target=serve, daemon=True).start()

stream = server.new_conn()
stream.write(b"hello")
print(stream.read(1024))  # b'HELLO'
stream.close()
server.close()
client.close()
```

## Limiting a stream's speed

```python
from tunmux.ratelimit import Rate, RateConn

rate = Rate(1024 * 1024)  # about 1 MiB per second
rate.start()
limited = RateConn(stream, rate)
limited.write(b"x" * 4096)  # waits for the first refill
rate.stop()
```

## Sharing one port

```python
from tunmux.pmux import PortMux

pmux = PortMux(8024, "manager.example.com")  # already listening
clients = pmux.client_listener()
web = pmux.http_listener()
conn = web.accept()  # a PortConn; read() returns the request from its first byte
pmux.close()
```

## What it does not do

`tunmux` is a library of building blocks. It has no command-line program,
no tunnel server or client, no web management pages and no stored
configuration of clients or tunnels. The code that authenticates tunnel
clients and forwards TCP, UDP, HTTP or SOCKS traffic over the streams has
to be written by the application that uses it.