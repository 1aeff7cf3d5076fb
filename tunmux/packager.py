"""Wire format of the multiplexer's packets."""

from __future__ import annotations

import enum
import logging
import struct
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)

POOL_SIZE_BUFFER = 4096
MAXIMUM_SEGMENT_SIZE = POOL_SIZE_BUFFER - 2 - 4 - 4 - 1
MAXIMUM_WINDOW_SIZE = 1 << 27
MUX_PING_ID = -1


class MuxFlag(enum.IntEnum):
    """Packet types of the multiplexer protocol."""

    PING_FLAG = 0
    NEW_CONN_OK = 1
    NEW_CONN_FAIL = 2
    NEW_MSG = 3
    NEW_MSG_PART = 4
    MSG_SEND_OK = 5
    NEW_CONN = 6
    CONN_CLOSE = 7
    PING_RETURN = 8


class PackError(Exception):
    """A packet could not be encoded or decoded."""


_CONTENT_FLAGS = frozenset(
    {MuxFlag.PING_FLAG, MuxFlag.PING_RETURN, MuxFlag.NEW_MSG, MuxFlag.NEW_MSG_PART}
)
_HEADER = struct.Struct("<Bi")
_LENGTH = struct.Struct("<H")
_WINDOW = struct.Struct("<Q")


def _read_exact(stream: Any, size: int, allow_eof: bool = False) -> bytes:
    reader = stream.read if hasattr(stream, "read") else stream.recv
    buf = bytearray()
    while len(buf) < size:
        chunk = reader(size - len(buf))
        if not chunk:
            if not buf and allow_eof:
                raise EOFError("mux:packer: end of stream")
            raise PackError("mux:packer: unexpected end of stream")
        buf += chunk
    return bytes(buf)


@dataclass
class MuxPackage:
    """One packet: flag, connection id and either content or a window value."""

    flag: int
    id: int
    content: bytes = b""
    window: int = 0

    def __post_init__(self) -> None:
        if not 0 <= int(self.flag) <= 0xFF:
            raise PackError(f"mux:packer: flag {self.flag} out of range")
        try:
            self.flag = MuxFlag(self.flag)
        except ValueError:
            self.flag = int(self.flag)
        if not -(1 << 31) <= self.id < (1 << 31):
            raise PackError(f"mux:packer: id {self.id} out of range")

        if self.flag in _CONTENT_FLAGS:
            if self.content is None:
                log.error("mux:packer: newpack content is nil")
                self.content = b""
            elif len(self.content) > MAXIMUM_SEGMENT_SIZE:
                log.error("mux:packer: newpack content segment too large")
                self.content = b""
            else:
                self.content = bytes(self.content)
        else:
            self.content = b""

        if self.flag == MuxFlag.MSG_SEND_OK:
            if not 0 <= self.window < (1 << 64):
                raise PackError(f"mux:packer: window {self.window} out of range")
        else:
            self.window = 0

    def pack(self) -> bytes:
        """Encode the packet to its wire bytes."""
        header = _HEADER.pack(int(self.flag), self.id)
        if self.flag in _CONTENT_FLAGS:
            return header + _LENGTH.pack(len(self.content)) + self.content
        if self.flag == MuxFlag.MSG_SEND_OK:
            return header + _WINDOW.pack(self.window)
        return header

    def write_to(self, stream: Any) -> None:
        """Write the encoded packet to a stream or socket."""
        data = self.pack()
        if hasattr(stream, "sendall"):
            stream.sendall(data)
        else:
            stream.write(data)

    @classmethod
    def read_from(cls, stream: Any) -> "MuxPackage":
        """Read one packet; EOFError if the stream ends before it starts."""
        flag, conn_id = _HEADER.unpack(_read_exact(stream, _HEADER.size, allow_eof=True))
        if flag in _CONTENT_FLAGS:
            (length,) = _LENGTH.unpack(_read_exact(stream, _LENGTH.size))
            if length > MAXIMUM_SEGMENT_SIZE:
                raise PackError("mux:packer: unpack content segment too large")
            content = _read_exact(stream, length)
            return cls(flag, conn_id, content)
        if flag == MuxFlag.MSG_SEND_OK:
            (window,) = _WINDOW.unpack(_read_exact(stream, _WINDOW.size))
            return cls(flag, conn_id, window=window)
        return cls(flag, conn_id)