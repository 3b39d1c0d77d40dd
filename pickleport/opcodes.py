"""Pickle opcodes, byte-for-byte identical to CPython's pickle module."""

HIGHEST_PROTOCOL = 5
DEFAULT_PROTOCOL = 4

MARK           = b'('
STOP           = b'.'
POP            = b'0'
POP_MARK       = b'1'
DUP            = b'2'
FLOAT          = b'F'
INT            = b'I'
BININT         = b'J'
BININT1        = b'K'
LONG           = b'L'
BININT2        = b'M'
NONE           = b'N'
PERSID         = b'P'
BINPERSID      = b'Q'
REDUCE         = b'R'
STRING         = b'S'
BINSTRING      = b'T'
SHORT_BINSTRING= b'U'
UNICODE        = b'V'
BINUNICODE     = b'X'
APPEND         = b'a'
BUILD          = b'b'
GLOBAL         = b'c'
DICT           = b'd'
EMPTY_DICT     = b'}'
APPENDS        = b'e'
GET            = b'g'
BINGET         = b'h'
INST           = b'i'
LONG_BINGET    = b'j'
LIST           = b'l'
EMPTY_LIST     = b']'
OBJ            = b'o'
PUT            = b'p'
BINPUT         = b'q'
LONG_BINPUT    = b'r'
SETITEM        = b's'
TUPLE          = b't'
EMPTY_TUPLE    = b')'
SETITEMS       = b'u'
BINFLOAT       = b'G'

# Protocol 0 spells booleans as INT with a magic operand.
TRUE           = b'I01\n'
FALSE          = b'I00\n'

PROTO          = b'\x80'
NEWOBJ         = b'\x81'
EXT1           = b'\x82'
EXT2           = b'\x83'
EXT4           = b'\x84'
TUPLE1         = b'\x85'
TUPLE2         = b'\x86'
TUPLE3         = b'\x87'
NEWTRUE        = b'\x88'
NEWFALSE       = b'\x89'
LONG1          = b'\x8a'
LONG4          = b'\x8b'

BINBYTES       = b'B'
SHORT_BINBYTES = b'C'

SHORT_BINUNICODE = b'\x8c'
BINUNICODE8      = b'\x8d'
BINBYTES8        = b'\x8e'
EMPTY_SET        = b'\x8f'
ADDITEMS         = b'\x90'
FROZENSET        = b'\x91'
NEWOBJ_EX        = b'\x92'
STACK_GLOBAL     = b'\x93'
MEMOIZE          = b'\x94'
FRAME            = b'\x95'

BYTEARRAY8       = b'\x96'
NEXT_BUFFER      = b'\x97'
READONLY_BUFFER  = b'\x98'


# Protocol version that introduced each opcode.
OPCODE_PROTOCOL = {}
_NAMES = {}


def _introduce(protocol, *names):
    for name in names:
        code = globals()[name][0]
        OPCODE_PROTOCOL[code] = protocol
        _NAMES[code] = name


_introduce(0, "MARK", "STOP", "POP", "DUP", "FLOAT", "INT", "LONG", "NONE",
           "PERSID", "REDUCE", "STRING", "UNICODE", "APPEND", "BUILD",
           "GLOBAL", "DICT", "GET", "INST", "LIST", "PUT", "SETITEM", "TUPLE")
_introduce(1, "POP_MARK", "BININT", "BININT1", "BININT2", "BINPERSID",
           "BINSTRING", "SHORT_BINSTRING", "BINUNICODE", "EMPTY_DICT",
           "APPENDS", "BINGET", "LONG_BINGET", "EMPTY_LIST", "OBJ", "BINPUT",
           "LONG_BINPUT", "EMPTY_TUPLE", "SETITEMS", "BINFLOAT")
_introduce(2, "PROTO", "NEWOBJ", "EXT1", "EXT2", "EXT4", "TUPLE1", "TUPLE2",
           "TUPLE3", "NEWTRUE", "NEWFALSE", "LONG1", "LONG4")
_introduce(3, "BINBYTES", "SHORT_BINBYTES")
_introduce(4, "SHORT_BINUNICODE", "BINUNICODE8", "BINBYTES8", "EMPTY_SET",
           "ADDITEMS", "FROZENSET", "NEWOBJ_EX", "STACK_GLOBAL", "MEMOIZE",
           "FRAME")
_introduce(5, "BYTEARRAY8", "NEXT_BUFFER", "READONLY_BUFFER")


def opcode_name(code):
    """Return the symbolic name for an opcode byte, or its hex form."""
    return _NAMES.get(code, "0x%02x" % code)
