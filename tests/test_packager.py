import io
import struct

import pytest

from tunmux.packager import (
    MAXIMUM_SEGMENT_SIZE,
    MUX_PING_ID,
    MuxFlag,
    MuxPackage,
    PackError,
)


def _round_trip(package):
    stream = io.BytesIO()
    package.write_to(stream)
    stream.seek(0)
    return MuxPackage.read_from(stream), stream


def test_new_conn_wire_bytes():
    assert MuxPackage(MuxFlag.NEW_CONN, 1).pack() == b"\x06\x01\x00\x00\x00"


def test_ping_id_encoded_as_all_ones():
    data = MuxPackage(MuxFlag.PING_FLAG, MUX_PING_ID, b"t").pack()
    assert data[1:5] == b"\xff\xff\xff\xff"


@pytest.mark.parametrize(
    "flag", [MuxFlag.NEW_MSG, MuxFlag.NEW_MSG_PART, MuxFlag.PING_FLAG, MuxFlag.PING_RETURN]
)
def test_content_packages_round_trip(flag):
    original = MuxPackage(flag, 42, b"payload bytes")
    decoded, stream = _round_trip(original)
    assert decoded == original
    assert stream.read() == b""


def test_message_length_prefix_matches_content():
    content = b"abcdef"
    data = MuxPackage(MuxFlag.NEW_MSG, 7, content).pack()
    assert struct.unpack("<H", data[5:7])[0] == len(content)
    assert data[7:] == content


def test_window_package_round_trip():
    original = MuxPackage(MuxFlag.MSG_SEND_OK, 3, window=(1 << 63) + 5)
    decoded, _ = _round_trip(original)
    assert decoded.window == original.window
    assert decoded.flag is MuxFlag.MSG_SEND_OK


@pytest.mark.parametrize(
    "flag", [MuxFlag.NEW_CONN, MuxFlag.NEW_CONN_OK, MuxFlag.NEW_CONN_FAIL, MuxFlag.CONN_CLOSE]
)
def test_control_packages_carry_header_only(flag):
    package = MuxPackage(flag, 9, b"ignored")
    assert len(package.pack()) == struct.calcsize("<Bi")
    decoded, _ = _round_trip(package)
    assert decoded == MuxPackage(flag, 9)


def test_maximum_segment_round_trips():
    original = MuxPackage(MuxFlag.NEW_MSG, 1, b"z" * MAXIMUM_SEGMENT_SIZE)
    decoded, _ = _round_trip(original)
    assert decoded.content == original.content


def test_oversized_content_is_dropped():
    package = MuxPackage(MuxFlag.NEW_MSG, 1, b"x" * (MAXIMUM_SEGMENT_SIZE + 1))
    assert package.content == b""


def test_oversized_length_on_wire_rejected():
    data = struct.pack("<BiH", MuxFlag.NEW_MSG, 1, MAXIMUM_SEGMENT_SIZE + 1)
    with pytest.raises(PackError):
        MuxPackage.read_from(io.BytesIO(data))


def test_truncated_content_rejected():
    data = MuxPackage(MuxFlag.NEW_MSG, 1, b"hello").pack()[:-2]
    with pytest.raises(PackError):
        MuxPackage.read_from(io.BytesIO(data))


def test_truncated_header_rejected():
    with pytest.raises(PackError):
        MuxPackage.read_from(io.BytesIO(b"\x03\x01"))


def test_empty_stream_raises_eof():
    with pytest.raises(EOFError):
        MuxPackage.read_from(io.BytesIO(b""))


def test_id_out_of_range_rejected():
    with pytest.raises(PackError):
        MuxPackage(MuxFlag.NEW_CONN, 1 << 31)


def test_sequence_of_packages_read_back_in_order():
    packages = [
        MuxPackage(MuxFlag.NEW_CONN, 1),
        MuxPackage(MuxFlag.NEW_MSG, 1, b"data"),
        MuxPackage(MuxFlag.MSG_SEND_OK, 1, window=1234),
        MuxPackage(MuxFlag.CONN_CLOSE, 1),
    ]
    stream = io.BytesIO()
    for package in packages:
        package.write_to(stream)
    stream.seek(0)
    decoded = [MuxPackage.read_from(stream) for _ in packages]
    assert decoded == packages