import logging

import pytest

from xcomsave import (ERROR_STRING, BufferOverrun, _read_bool, _read_bytes, _read_float, _read_i32,
                      _read_string, _read_u32)
from savebuilder import f32, i32, string, u32, wide_string


def test_fixed_width_reads_are_little_endian():
    data = u32(0x11223344) + i32(-2) + f32(1.5) + u32(3)
    value, offset = _read_u32(data, 0)
    assert (value, offset) == (0x11223344, 4)
    value, offset = _read_i32(data, offset)
    assert (value, offset) == (-2, 8)
    value, offset = _read_float(data, offset)
    assert (value, offset) == (1.5, 12)
    value, offset = _read_bool(data, offset)
    assert (value, offset) == (True, 16)


def test_read_past_bound_raises():
    with pytest.raises(BufferOverrun) as excinfo:
        _read_u32(b"\x01\x02\x03", 0)
    assert excinfo.value.offset == 0

    # explicit sub-range bound is tighter than the buffer
    with pytest.raises(BufferOverrun):
        _read_u32(u32(1) + u32(2), 4, end=6)


def test_read_bytes_copies():
    data = bytearray(b"abcdef")
    raw, offset = _read_bytes(data, 1, 3)
    data[1] = 0
    assert raw == b"bcd"
    assert isinstance(raw, bytes)
    assert offset == 4


def test_empty_string_consumes_length_only():
    data = string("") + u32(9)
    value, offset = _read_string(data, 0)
    assert value == ""
    assert offset == 4


def test_string_consumes_declared_length():
    data = string("Soldier") + u32(9)
    value, offset = _read_string(data, 0)
    assert value == "Soldier"
    assert offset == 4 + len("Soldier") + 1


def test_string_is_decoded_losslessly():
    data = i32(5) + b"Jos\xe9\x00"
    value, _ = _read_string(data, 0)
    assert value == "José"


def test_wide_string():
    data = wide_string("Ivan") + u32(1)
    value, offset = _read_string(data, 0)
    assert value == "Ivan"
    assert offset == 4 + 10


def test_string_length_mismatch_is_reported_and_skipped(caplog):
    # declares 6 bytes but the terminator comes after 2
    data = i32(6) + b"ab\x00xyz" + u32(42)
    with caplog.at_level(logging.WARNING, logger="xcomsave"):
        value, offset = _read_string(data, 0)
    assert value == ERROR_STRING
    assert offset == 10
    assert "StringLengthMismatch" in caplog.text
    assert _read_u32(data, offset)[0] == 42


def test_string_without_terminator_is_a_mismatch(caplog):
    data = i32(3) + b"abc"
    with caplog.at_level(logging.WARNING, logger="xcomsave"):
        value, offset = _read_string(data, 0)
    assert value == ERROR_STRING
    assert offset == 7


def test_string_longer_than_buffer_raises():
    with pytest.raises(BufferOverrun):
        _read_string(i32(50) + b"abc\x00", 0)


def test_injected_logger_receives_reports(caplog):
    log = logging.getLogger("custom.decoder")
    with caplog.at_level(logging.WARNING, logger="custom.decoder"):
        _read_string(i32(4) + b"a\x00\x00\x00", 0, log=log)
    assert [r.name for r in caplog.records] == ["custom.decoder"]
