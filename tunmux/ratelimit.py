"""Token-bucket rate limiting for byte streams."""

from __future__ import annotations

import threading
from typing import Any, Optional

_POLL_INTERVAL = 0.1


class Rate:
    """A token bucket refilled by ``add_size`` bytes every ``interval`` seconds."""

    def __init__(self, add_size: int, interval: float = 1.0) -> None:
        self._bucket_size = add_size * 2
        self._add_size = add_size
        self._surplus = 0
        self._interval = interval
        self.now_rate = 0
        self._cond = threading.Condition()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def surplus(self) -> int:
        """Bytes currently available in the bucket."""
        with self._cond:
            return self._surplus

    def _add(self, size: int) -> None:
        # Caller holds the condition lock.
        room = self._bucket_size - self._surplus
        if room < self._add_size:
            self._surplus += room
        else:
            self._surplus += size
        self._cond.notify_all()

    def start(self) -> None:
        """Begin refilling the bucket in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._session, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop refilling the bucket."""
        self._stopped.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def return_bucket(self, size: int) -> None:
        """Put ``size`` bytes back into the bucket."""
        with self._cond:
            self._add(size)

    def get(self, size: int) -> None:
        """Take ``size`` bytes from the bucket, waiting until they are available."""
        with self._cond:
            while self._surplus < size:
                self._cond.wait(_POLL_INTERVAL)
            self._surplus -= size

    def _session(self) -> None:
        while not self._stopped.wait(self._interval):
            with self._cond:
                used = self._add_size - self._surplus
                if used > 0:
                    self.now_rate = used
                else:
                    self.now_rate = self._bucket_size - self._surplus
                self._add(self._add_size)


class RateConn:
    """Wraps a readable/writable stream so every transfer draws from a Rate."""

    def __init__(self, conn: Any, rate: Optional[Rate] = None) -> None:
        self._conn = conn
        self._rate = rate

    def read(self, size: int) -> bytes:
        data = self._conn.read(size)
        if self._rate is not None:
            self._rate.get(len(data))
        return data

    def write(self, data: bytes) -> int:
        written = self._conn.write(data)
        if written is None:
            written = len(data)
        if self._rate is not None:
            self._rate.get(written)
        return written

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "RateConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()