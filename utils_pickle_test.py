import io
import math

import pytest

from pickleport import InvalidLength, MalformedPrimitive, TruncatedStream
from pickleport.utils import (
    bytes_to_double,
    bytes_to_float,
    bytes_to_integer,
    bytes_to_long,
    bytes_to_uint,
    decode_escaped,
    decode_long,
    decode_unicode_escaped,
    double_to_bytes,
    encode_long,
    float_to_bytes,
    integer_to_bytes,
    readbyte,
    readbytes,
    readbytes_into,
    readline,
)

FILEDATA = "str1\nstr2  \n  str3  \nend".encode("utf-8")


def test_readline():
    bis = io.BytesIO(FILEDATA)
    assert readline(bis) == "str1"
    assert readline(bis) == "str2  "
    assert readline(bis) == "  str3  "
    with pytest.raises(TruncatedStream):
        readline(bis)


def test_readline_with_lf():
    bis = io.BytesIO(FILEDATA)
    assert readline(bis, True) == "str1\n"
    assert readline(bis, True) == "str2  \n"
    assert readline(bis, True) == "  str3  \n"
    with pytest.raises(EOFError):
        readline(bis, True)


def test_readline_is_latin1():
    assert readline(io.BytesIO(b"caf\xe9\n")) == "caf\xe9"


def test_readbytes():
    bis = io.BytesIO(FILEDATA)
    assert readbyte(bis) == 115
    assert readbytes(bis, 0) == b""
    assert readbytes(bis, 1) == bytes([116])
    assert readbytes(bis, 5) == bytes([114, 49, 10, 115, 116])
    with pytest.raises(TruncatedStream):
        readbytes(bis, 999)
    with pytest.raises(TruncatedStream):
        readbyte(io.BytesIO(b""))


def test_readbytes_into():
    bis = io.BytesIO(FILEDATA)
    buf = bytearray(10)
    readbytes_into(bis, buf, 1, 4)
    assert buf == bytearray([0, 115, 116, 114, 49, 0, 0, 0, 0, 0])
    readbytes_into(bis, buf, 8, 1)
    assert buf == bytearray([0, 115, 116, 114, 49, 0, 0, 0, 10, 0])


def test_bytes_to_integer():
    for bad in (b"", b"\x00", bytes([200, 50, 25, 100, 1, 2, 3, 4])):
        with pytest.raises(InvalidLength):
            bytes_to_integer(bad)
    assert bytes_to_integer(bytes([0x00, 0x00])) == 0
    assert bytes_to_integer(bytes([0x12, 0x34])) == 0x3412
    assert bytes_to_integer(bytes([0xff, 0xff])) == 0xffff
    assert bytes_to_integer(bytes([0, 0, 0, 0])) == 0
    assert bytes_to_integer(bytes([0x78, 0x56, 0x34, 0x12])) == 0x12345678
    assert bytes_to_integer(bytes([0x40, 0x20, 0x80, 0xff])) == -8380352
    assert bytes_to_integer(bytes([0xee, 0x02, 0xcc, 0x01])) == 0x01cc02ee
    assert bytes_to_integer(bytes([0x02, 0xee, 0x01, 0xcc])) == -872288766
    assert bytes_to_integer(bytes([0xfe, 0xff, 0xff, 0xee])) == -285212674


def test_bytes_to_uint():
    with pytest.raises(InvalidLength):
        bytes_to_uint(b"", 0)
    with pytest.raises(InvalidLength):
        bytes_to_uint(b"\x00", 0)
    assert bytes_to_uint(bytes([0, 0, 0, 0])) == 0
    assert bytes_to_uint(bytes([0x78, 0x56, 0x34, 0x12])) == 0x12345678
    assert bytes_to_uint(bytes([0x40, 0x20, 0x80, 0xff])) == 0xff802040
    assert bytes_to_uint(bytes([0xfe, 0xff, 0xff, 0xee])) == 0xeefffffe
    assert bytes_to_uint(bytes([9, 0xfe, 0xff, 0xff, 0xee]), 1) == 0xeefffffe


def test_bytes_to_long():
    with pytest.raises(InvalidLength):
        bytes_to_long(b"", 0)
    with pytest.raises(InvalidLength):
        bytes_to_long(b"\x00", 0)
    assert bytes_to_long(bytes(8)) == 0
    assert bytes_to_long(bytes([0x12, 0x34, 0, 0, 0, 0, 0, 0])) == 0x3412
    assert bytes_to_long(bytes([0xff, 0, 0, 0, 0, 0, 0, 0xff])) == -0xffffffffffff01
    assert bytes_to_long(bytes([0x11, 0x22, 0x33, 0x44, 0x55, 0x66, 0x77, 0x88])) == -0x778899aabbccddef
    assert bytes_to_long(bytes([0x88, 0x77, 0x66, 0x55, 0x44, 0x33, 0x22, 0x11])) == 0x1122334455667788
    assert bytes_to_long(b"\xff" * 8) == -1
    assert bytes_to_long(b"\xfe" + b"\xff" * 7) == -2


def test_integer_to_bytes():
    assert integer_to_bytes(0) == bytes([0, 0, 0, 0])
    assert integer_to_bytes(0x12345678) == bytes([0x78, 0x56, 0x34, 0x12])
    assert integer_to_bytes(-8380352) == bytes([0x40, 0x20, 0x80, 0xff])
    assert integer_to_bytes(-285212674) == bytes([0xfe, 0xff, 0xff, 0xee])
    assert integer_to_bytes(-1) == bytes([0xff, 0xff, 0xff, 0xff])
    assert integer_to_bytes(0x01cc02ee) == bytes([0xee, 0x02, 0xcc, 0x01])
    assert integer_to_bytes(-872288766) == bytes([0x02, 0xee, 0x01, 0xcc])
    with pytest.raises(MalformedPrimitive):
        integer_to_bytes(2**31)


def test_bytes_to_double():
    with pytest.raises(InvalidLength):
        bytes_to_double(b"", 0)
    with pytest.raises(InvalidLength):
        bytes_to_double(b"\x00", 0)
    with pytest.raises(InvalidLength):
        bytes_to_double(bytes([200, 50, 25, 100]), 0)
    assert bytes_to_double(bytes(8)) == 0.0
    assert bytes_to_double(bytes([0x3f, 0xf0, 0, 0, 0, 0, 0, 0])) == 1.0
    assert bytes_to_double(bytes([0x3f, 0xf1, 0x99, 0x99, 0x99, 0x99, 0x99, 0x9a])) == 1.1
    assert bytes_to_double(bytes([0x40, 0x93, 0x4a, 0x45, 0x6d, 0x5c, 0xfa, 0xad])) == 1234.5678
    assert bytes_to_double(bytes([0x59, 0x8a, 0x42, 0xd1, 0xce, 0xf5, 0x3f, 0x46])) == 2.17e123
    assert bytes_to_double(bytes([0x7e, 0x3d, 0x7e, 0xe8, 0xbc, 0xaf, 0x28, 0x3a])) == 1.23456789e300
    assert bytes_to_double(bytes([0x7f, 0xf0, 0, 0, 0, 0, 0, 0])) == math.inf
    assert bytes_to_double(bytes([0xff, 0xf0, 0, 0, 0, 0, 0, 0])) == -math.inf
    # offsets
    assert bytes_to_double(bytes([0, 0, 0, 0x7e, 0x3d, 0x7e, 0xe8, 0xbc, 0xaf, 0x28, 0x3a]), 3) == 1.23456789e300
    assert bytes_to_double(bytes([0x7e, 0x3d, 0x7e, 0xe8, 0xbc, 0xaf, 0x28, 0x3a, 0, 0, 0]), 0) == 1.23456789e300


def test_bytes_to_float():
    with pytest.raises(InvalidLength):
        bytes_to_float(b"", 0)
    with pytest.raises(InvalidLength):
        bytes_to_float(b"\x00", 0)
    assert bytes_to_float(bytes(4)) == 0.0
    assert bytes_to_float(bytes([0x3f, 0x80, 0, 0])) == 1.0
    assert bytes_to_float(bytes([0x3f, 0x8c, 0xcc, 0xcd])) == pytest.approx(1.1, rel=1e-7)
    assert bytes_to_float(bytes([0x44, 0x9a, 0x52, 0x2b])) == pytest.approx(1234.5678, rel=1e-7)
    assert bytes_to_float(bytes([0x7f, 0x80, 0, 0])) == math.inf
    assert bytes_to_float(bytes([0xff, 0x80, 0, 0])) == -math.inf
    assert bytes_to_float(bytes([0, 0, 0, 0x44, 0x9a, 0x52, 0x2b]), 3) == pytest.approx(1234.5678, rel=1e-7)


def test_float_to_bytes():
    assert float_to_bytes(1.0) == bytes([0x3f, 0x80, 0, 0])
    assert float_to_bytes(-math.inf) == bytes([0xff, 0x80, 0, 0])
    with pytest.raises(MalformedPrimitive):
        float_to_bytes(1e300)


def test_double_to_bytes():
    assert double_to_bytes(0.0) == bytes(8)
    assert double_to_bytes(1.0) == bytes([0x3f, 0xf0, 0, 0, 0, 0, 0, 0])
    assert double_to_bytes(1.1) == bytes([0x3f, 0xf1, 0x99, 0x99, 0x99, 0x99, 0x99, 0x9a])
    assert double_to_bytes(1234.5678) == bytes([0x40, 0x93, 0x4a, 0x45, 0x6d, 0x5c, 0xfa, 0xad])
    assert double_to_bytes(2.17e123) == bytes([0x59, 0x8a, 0x42, 0xd1, 0xce, 0xf5, 0x3f, 0x46])
    assert double_to_bytes(1.23456789e300) == bytes([0x7e, 0x3d, 0x7e, 0xe8, 0xbc, 0xaf, 0x28, 0x3a])
    assert double_to_bytes(math.inf) == bytes([0x7f, 0xf0, 0, 0, 0, 0, 0, 0])
    assert double_to_bytes(-math.inf) == bytes([0xff, 0xf0, 0, 0, 0, 0, 0, 0])


def test_decode_long():
    cases = [
        (b"", 0),
        (bytes([0]), 0),
        (bytes([1]), 1),
        (bytes([10]), 10),
        (bytes([0xff, 0x00]), 255),
        (bytes([0xff, 0x7f]), 32767),
        (bytes([0x00, 0xff]), -256),
        (bytes([0x00, 0x80]), -32768),
        (bytes([0x80]), -128),
        (bytes([0x7f]), 127),
        (bytes([0x80, 0x00]), 128),
        (bytes([0x12, 0x34, 0x56, 0x78]), 0x78563412),
        (bytes([0xf2, 0x34, 0x56, 0x78]), 0x785634f2),
        (bytes([0x78, 0x56, 0x34, 0x12]), 0x12345678),
        (bytes([0x78, 0x56, 0x34, 0xf2]), -231451016),
        (bytes([0x78, 0x56, 0x34, 0xf2, 0x00]), 0xf2345678),
    ]
    for data, expected in cases:
        assert decode_long(data) == expected
        assert decode_long(encode_long(expected)) == expected


def test_encode_long_is_minimal():
    assert encode_long(0) == b""
    assert encode_long(127) == b"\x7f"
    assert encode_long(128) == b"\x80\x00"
    assert encode_long(255) == b"\xff\x00"
    assert encode_long(-128) == b"\x80"
    assert encode_long(-256) == b"\x00\xff"


def test_decode_escaped():
    assert decode_escaped("abc") == "abc"
    assert decode_escaped("a\\\\c") == "a\\c"
    assert decode_escaped("a\\x42c") == "aBc"
    assert decode_escaped("a\\nc") == "a\nc"
    assert decode_escaped("a\\tc") == "a\tc"
    assert decode_escaped("a\\rc") == "a\rc"
    assert decode_escaped("a\\'c") == "a'c"


def test_decode_escaped_keeps_unknown_escapes():
    assert decode_escaped("a\\qc") == "a\\qc"
    assert decode_escaped("a\\x4") == "a\\x4"
    assert decode_escaped("trailing\\") == "trailing\\"


def test_decode_unicode_escaped():
    assert decode_unicode_escaped("abc") == "abc"
    assert decode_unicode_escaped("a\\\\c") == "a\\c"
    assert decode_unicode_escaped("a\\u0042c") == "aBc"
    assert decode_unicode_escaped("a\\nc") == "a\nc"
    assert decode_unicode_escaped("a\\tc") == "a\tc"
    assert decode_unicode_escaped("a\\rc") == "a\rc"


def test_decode_unicode_escaped_extras():
    assert decode_unicode_escaped("a\\x42c") == "a\\x42c"
    assert decode_unicode_escaped("\\U0001f600") == "\U0001f600"
    assert decode_unicode_escaped("\\ud83d\\ude00") == "\ud83d\ude00"
    assert len(decode_unicode_escaped("\\ud83d\\ude00")) == 2
    assert decode_unicode_escaped("\\u12") == "\\u12"
