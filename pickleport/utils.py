"""Primitive codec: fixed and variable width integers, IEEE-754 floats and
escaped string literals, plus exact reads from a byte source.

Everything here is a pure function. A byte source is anything with
``read(n)`` and ``readline()`` methods.
"""

from struct import pack, unpack_from, error as struct_error

from .errors import InvalidLength, MalformedPrimitive, TruncatedStream


def readline(stream, include_lf=False):
    """Read one ``\\n`` terminated line and return it as latin-1 text."""
    line = stream.readline()
    if not line.endswith(b"\n"):
        raise TruncatedStream("line is not terminated by a newline")
    if not include_lf:
        line = line[:-1]
    return line.decode("latin-1")


def readbyte(stream):
    data = stream.read(1)
    if not data:
        raise TruncatedStream("expected 1 byte, got end of stream")
    return data[0]


def readbytes(stream, n):
    data = stream.read(n)
    if len(data) != n:
        raise TruncatedStream("expected %d bytes, got %d" % (n, len(data)))
    return data


def readbytes_into(stream, buffer, offset, n):
    buffer[offset:offset + n] = readbytes(stream, n)


def _require(data, offset, size):
    if offset < 0 or len(data) - offset < size:
        raise InvalidLength("need %d bytes at offset %d, have %d"
                            % (size, offset, max(len(data) - offset, 0)))


def bytes_to_integer(data):
    """Little-endian 2 byte unsigned or 4 byte signed integer."""
    if len(data) == 2:
        return unpack_from("<H", data)[0]
    if len(data) == 4:
        return unpack_from("<i", data)[0]
    raise InvalidLength("integer operand must be 2 or 4 bytes, got %d" % len(data))


def bytes_to_uint(data, offset=0):
    _require(data, offset, 4)
    return unpack_from("<I", data, offset)[0]


def bytes_to_long(data, offset=0):
    _require(data, offset, 8)
    return unpack_from("<q", data, offset)[0]


def integer_to_bytes(value):
    try:
        return pack("<i", value)
    except struct_error as exc:
        raise MalformedPrimitive("%r does not fit in 4 bytes" % (value,)) from exc


def bytes_to_double(data, offset=0):
    _require(data, offset, 8)
    return unpack_from(">d", data, offset)[0]


def double_to_bytes(value):
    return pack(">d", value)


def bytes_to_float(data, offset=0):
    _require(data, offset, 4)
    return unpack_from(">f", data, offset)[0]


def float_to_bytes(value):
    try:
        return pack(">f", value)
    except (OverflowError, struct_error) as exc:
        raise MalformedPrimitive("%r does not fit in a 4 byte float" % (value,)) from exc


def decode_long(data):
    """Two's-complement little-endian bytes of any length to an int."""
    return int.from_bytes(data, byteorder="little", signed=True)


def encode_long(x):
    if x == 0:
        return b''
    nbytes = (x.bit_length() >> 3) + 1
    result = x.to_bytes(nbytes, byteorder='little', signed=True)
    if x < 0 and nbytes > 1:
        if result[-1] == 0xff and (result[-2] & 0x80) != 0:
            result = result[:-1]
    return result


_SIMPLE_ESCAPES = {"\\": "\\", "n": "\n", "t": "\t", "r": "\r"}
_HEXDIGITS = frozenset("0123456789abcdefABCDEF")


def _hex_at(text, start, width):
    digits = text[start:start + width]
    if len(digits) != width or not _HEXDIGITS.issuperset(digits):
        return None
    return int(digits, 16)


def decode_escaped(text):
    """Decode ``\\\\ \\n \\t \\r \\' \\xHH``; other escapes are kept as written."""
    out = []
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c != "\\" or i + 1 == n:
            out.append(c)
            i += 1
            continue
        e = text[i + 1]
        if e in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[e])
            i += 2
        elif e == "'":
            out.append("'")
            i += 2
        elif e == "x" and _hex_at(text, i + 2, 2) is not None:
            out.append(chr(_hex_at(text, i + 2, 2)))
            i += 4
        else:
            out.append(c)
            i += 1
    return "".join(out)


def decode_unicode_escaped(text):
    """Decode ``\\\\ \\n \\t \\r \\uHHHH \\UHHHHHHHH``; ``\\x`` is not an escape here."""
    out = []
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c != "\\" or i + 1 == n:
            out.append(c)
            i += 1
            continue
        e = text[i + 1]
        if e in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[e])
            i += 2
            continue
        width = 4 if e == "u" else 8 if e == "U" else 0
        code = _hex_at(text, i + 2, width) if width else None
        if code is None or code > 0x10ffff:
            out.append(c)
            i += 1
            continue
        out.append(chr(code))
        i += 2 + width
    return "".join(out)
