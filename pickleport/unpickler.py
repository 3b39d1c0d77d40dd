"""Stack machine that turns a pickle opcode stream back into objects.

Only the constructors registered in the type registry can be reached from a
stream; ``GLOBAL`` and friends never import modules or look up attributes.
"""

import _compat_pickle
import io
import logging

from .config import get_settings
from .errors import (
    MalformedPrimitive,
    MalformedStream,
    PickleError,
    TruncatedStream,
    UnpicklingError,
    UnresolvedType,
    UnsupportedOpcode,
)
from .memo import Memo
from .objects import ClassDictConstructor, ReconstructorConstructor
from .opcodes import *
from .registry import ObjectConstructor, apply_state, default_registry
from .utils import (
    bytes_to_double,
    bytes_to_integer,
    bytes_to_long,
    bytes_to_uint,
    decode_escaped,
    decode_long,
    decode_unicode_escaped,
    readbyte,
    readbytes,
    readline,
)

logger = logging.getLogger(__name__)


class _Stop(Exception):
    def __init__(self, value):
        self.value = value


class _CountingReader:
    """Borrowed byte source that serves FRAME contents and tracks the stream offset."""

    def __init__(self, file):
        try:
            self._read = file.read
            self._readline = file.readline
        except AttributeError:
            raise TypeError("file must have 'read' and 'readline' attributes")
        self.position = 0
        self.current_frame = None

    def read(self, n):
        if self.current_frame:
            data = self.current_frame.read(n)
            if not data and n != 0:
                self.current_frame = None
                return self.read(n)
            if len(data) < n:
                raise MalformedStream("pickle exhausted before end of frame")
        else:
            data = self._read(n)
        self.position += len(data)
        return data

    def readline(self):
        if self.current_frame:
            data = self.current_frame.readline()
            if not data:
                self.current_frame = None
                return self.readline()
            if data[-1] != b'\n'[0]:
                raise MalformedStream("pickle exhausted before end of frame")
        else:
            data = self._readline()
        self.position += len(data)
        return data

    def load_frame(self, frame_size):
        if self.current_frame and self.current_frame.read() != b'':
            raise MalformedStream("beginning of a new frame before end of current frame")
        frame = self._read(frame_size)
        if len(frame) < frame_size:
            raise TruncatedStream("frame of %d bytes is truncated to %d" % (frame_size, len(frame)))
        self.current_frame = io.BytesIO(frame)

    def reset(self):
        self.current_frame = None


def _parse_int(text):
    try:
        return int(text)
    except ValueError:
        raise MalformedPrimitive("invalid integer literal %r" % text) from None


class Unpickler:

    def __init__(self, file, *, registry=None, fallback=None, fix_imports=True, encoding=None,
                 errors=None, buffers=None, settings=None):
        self.settings = settings or get_settings()
        self._file = _CountingReader(file)
        self.registry = registry if registry is not None else default_registry
        self.fallback = self.settings.fallback_to_classdict if fallback is None else fallback
        self.fix_imports = fix_imports
        self.encoding = encoding or self.settings.string_encoding
        self.errors = errors or self.settings.string_errors
        self._buffers = iter(buffers) if buffers is not None else None
        self._reset()

    def _reset(self):
        self.memo = Memo()
        self.stack = []
        self.marks = []
        self.proto = 0
        self._builders = {}
        self._fallbacks = {}
        self._file.reset()
        # streams without a PROTO opcode are protocol 0 or 1
        self._allowed_protocol = 1

    def load(self):
        """Read one pickle from the file and return the reconstructed object."""
        self._reset()
        source = self._file
        dispatch = self.dispatch
        enforce = self.settings.enforce_opcode_versions
        try:
            while True:
                offset = source.position
                key = source.read(1)
                if not key:
                    raise TruncatedStream("pickle data was truncated", offset=offset)
                code = key[0]
                handler = dispatch.get(code)
                if handler is None:
                    raise UnsupportedOpcode(code, offset=offset)
                if enforce and code != PROTO[0] and OPCODE_PROTOCOL[code] > self._allowed_protocol:
                    raise UnsupportedOpcode(
                        code, "opcode %s needs protocol %d, stream is protocol %d"
                        % (opcode_name(code), OPCODE_PROTOCOL[code], self._allowed_protocol),
                        offset=offset)
                try:
                    handler(self)
                except _Stop as stopinst:
                    return stopinst.value
                except PickleError as exc:
                    raise exc.locate(code, offset)
                except UnicodeDecodeError as exc:
                    raise MalformedPrimitive(str(exc), opcode=code, offset=offset) from exc
                except (TypeError, ValueError, OverflowError, AttributeError, IndexError) as exc:
                    raise MalformedStream(str(exc), opcode=code, offset=offset) from exc
        finally:
            self._reset()

    def persistent_load(self, pid):
        raise UnpicklingError("unsupported persistent id encountered")

    def find_class(self, module, name):
        if self.proto < 3 and self.fix_imports:
            # Python 2 names
            if (module, name) in _compat_pickle.NAME_MAPPING:
                module, name = _compat_pickle.NAME_MAPPING[(module, name)]
            elif module in _compat_pickle.IMPORT_MAPPING:
                module = _compat_pickle.IMPORT_MAPPING[module]
        try:
            return self.registry.resolve_constructor(module, name)
        except UnresolvedType:
            if not self.fallback:
                raise
        constructor = self._fallbacks.get((module, name))
        if constructor is None:
            logger.debug("No constructor for %s.%s, decoding as ClassDict", module, name)
            constructor = self._fallbacks[(module, name)] = ClassDictConstructor(module, name)
        return constructor

    def _construct(self, cls, args, kwargs=None):
        if not isinstance(cls, ObjectConstructor):
            raise MalformedStream("%s object is not a class reference" % type(cls).__name__)
        if not isinstance(args, tuple):
            raise MalformedStream("constructor arguments must be a tuple, not %s"
                                  % type(args).__name__)
        try:
            if kwargs:
                obj = cls.construct_ex(args, kwargs)
            else:
                obj = cls.construct(args)
        except PickleError:
            raise
        except Exception as exc:
            raise UnpicklingError("%r failed: %s" % (cls, exc)) from exc
        if isinstance(cls, ReconstructorConstructor):
            # BUILD state goes to the class the reconstructor delegated to
            cls = args[0]
        self._builders[id(obj)] = cls, obj
        return obj

    # stack helpers

    def _top(self):
        if not self.stack or (self.marks and len(self.stack) == self.marks[-1]):
            raise MalformedStream("unexpected MARK or empty stack")
        return self.stack[-1]

    def _pop(self):
        value = self._top()
        del self.stack[-1]
        return value

    def pop_mark(self):
        if not self.marks:
            raise MalformedStream("could not find MARK")
        k = self.marks.pop()
        items = self.stack[k:]
        del self.stack[k:]
        return items

    def _decode_string(self, value):
        if self.encoding == "bytes":
            return value
        return value.decode(self.encoding, self.errors)

    def _read_size8(self):
        size = bytes_to_long(readbytes(self._file, 8))
        if size < 0:
            raise MalformedStream("size exceeds the maximum supported by this unpickler")
        return size

    dispatch = {}

    def load_proto(self):
        proto = readbyte(self._file)
        if not 0 <= proto <= HIGHEST_PROTOCOL:
            raise UnsupportedOpcode(PROTO[0], "unsupported pickle protocol: %d" % proto)
        logger.debug("Stream announces protocol %d", proto)
        self.proto = proto
        self._allowed_protocol = proto
    dispatch[PROTO[0]] = load_proto

    def load_frame(self):
        self._file.load_frame(self._read_size8())
    dispatch[FRAME[0]] = load_frame

    def load_persid(self):
        pid = readline(self._file)
        try:
            pid.encode("ascii")
        except UnicodeEncodeError:
            raise MalformedStream("persistent IDs in protocol 0 must be ASCII strings") from None
        self.stack.append(self.persistent_load(pid))
    dispatch[PERSID[0]] = load_persid

    def load_binpersid(self):
        pid = self._pop()
        self.stack.append(self.persistent_load(pid))
    dispatch[BINPERSID[0]] = load_binpersid

    def load_none(self):
        self.stack.append(None)
    dispatch[NONE[0]] = load_none

    def load_false(self):
        self.stack.append(False)
    dispatch[NEWFALSE[0]] = load_false

    def load_true(self):
        self.stack.append(True)
    dispatch[NEWTRUE[0]] = load_true

    def load_int(self):
        data = readline(self._file)
        if data == "00":
            val = False
        elif data == "01":
            val = True
        else:
            val = _parse_int(data)
        self.stack.append(val)
    dispatch[INT[0]] = load_int

    def load_binint(self):
        self.stack.append(bytes_to_integer(readbytes(self._file, 4)))
    dispatch[BININT[0]] = load_binint

    def load_binint1(self):
        self.stack.append(readbyte(self._file))
    dispatch[BININT1[0]] = load_binint1

    def load_binint2(self):
        self.stack.append(bytes_to_integer(readbytes(self._file, 2)))
    dispatch[BININT2[0]] = load_binint2

    def load_long(self):
        val = readline(self._file)
        if val and val[-1] == "L":
            val = val[:-1]
        self.stack.append(_parse_int(val))
    dispatch[LONG[0]] = load_long

    def load_long1(self):
        n = readbyte(self._file)
        self.stack.append(decode_long(readbytes(self._file, n)))
    dispatch[LONG1[0]] = load_long1

    def load_long4(self):
        n = bytes_to_integer(readbytes(self._file, 4))
        if n < 0:
            raise MalformedStream("LONG pickle has negative byte count")
        self.stack.append(decode_long(readbytes(self._file, n)))
    dispatch[LONG4[0]] = load_long4

    def load_float(self):
        text = readline(self._file)
        try:
            self.stack.append(float(text))
        except ValueError:
            raise MalformedPrimitive("invalid float literal %r" % text) from None
    dispatch[FLOAT[0]] = load_float

    def load_binfloat(self):
        self.stack.append(bytes_to_double(readbytes(self._file, 8)))
    dispatch[BINFLOAT[0]] = load_binfloat

    def load_string(self):
        data = readline(self._file)
        if len(data) >= 2 and data[0] == data[-1] and data[0] in "\"'":
            data = data[1:-1]
        else:
            raise MalformedStream("the STRING opcode argument must be quoted")
        self.stack.append(self._decode_string(decode_escaped(data).encode("latin-1")))
    dispatch[STRING[0]] = load_string

    def load_binstring(self):
        n = bytes_to_integer(readbytes(self._file, 4))
        if n < 0:
            raise MalformedStream("BINSTRING pickle has negative byte count")
        self.stack.append(self._decode_string(readbytes(self._file, n)))
    dispatch[BINSTRING[0]] = load_binstring

    def load_short_binstring(self):
        n = readbyte(self._file)
        self.stack.append(self._decode_string(readbytes(self._file, n)))
    dispatch[SHORT_BINSTRING[0]] = load_short_binstring

    def load_binbytes(self):
        n = bytes_to_uint(readbytes(self._file, 4))
        self.stack.append(readbytes(self._file, n))
    dispatch[BINBYTES[0]] = load_binbytes

    def load_short_binbytes(self):
        n = readbyte(self._file)
        self.stack.append(readbytes(self._file, n))
    dispatch[SHORT_BINBYTES[0]] = load_short_binbytes

    def load_binbytes8(self):
        self.stack.append(readbytes(self._file, self._read_size8()))
    dispatch[BINBYTES8[0]] = load_binbytes8

    def load_bytearray8(self):
        self.stack.append(bytearray(readbytes(self._file, self._read_size8())))
    dispatch[BYTEARRAY8[0]] = load_bytearray8

    def load_next_buffer(self):
        if self._buffers is None:
            raise UnpicklingError("pickle stream refers to out-of-band data "
                                  "but no *buffers* argument was given")
        try:
            buf = next(self._buffers)
        except StopIteration:
            raise UnpicklingError("not enough out-of-band buffers") from None
        self.stack.append(buf)
    dispatch[NEXT_BUFFER[0]] = load_next_buffer

    def load_readonly_buffer(self):
        buf = self._top()
        with memoryview(buf) as m:
            if not m.readonly:
                self.stack[-1] = m.toreadonly()
    dispatch[READONLY_BUFFER[0]] = load_readonly_buffer

    def load_unicode(self):
        self.stack.append(decode_unicode_escaped(readline(self._file)))
    dispatch[UNICODE[0]] = load_unicode

    def load_binunicode(self):
        n = bytes_to_uint(readbytes(self._file, 4))
        self.stack.append(str(readbytes(self._file, n), "utf-8", "surrogatepass"))
    dispatch[BINUNICODE[0]] = load_binunicode

    def load_binunicode8(self):
        n = self._read_size8()
        self.stack.append(str(readbytes(self._file, n), "utf-8", "surrogatepass"))
    dispatch[BINUNICODE8[0]] = load_binunicode8

    def load_short_binunicode(self):
        n = readbyte(self._file)
        self.stack.append(str(readbytes(self._file, n), "utf-8", "surrogatepass"))
    dispatch[SHORT_BINUNICODE[0]] = load_short_binunicode

    def load_tuple(self):
        self.stack.append(tuple(self.pop_mark()))
    dispatch[TUPLE[0]] = load_tuple

    def load_empty_tuple(self):
        self.stack.append(())
    dispatch[EMPTY_TUPLE[0]] = load_empty_tuple

    def load_tuple1(self):
        self.stack.append((self._pop(),))
    dispatch[TUPLE1[0]] = load_tuple1

    def load_tuple2(self):
        b = self._pop()
        a = self._pop()
        self.stack.append((a, b))
    dispatch[TUPLE2[0]] = load_tuple2

    def load_tuple3(self):
        c = self._pop()
        b = self._pop()
        a = self._pop()
        self.stack.append((a, b, c))
    dispatch[TUPLE3[0]] = load_tuple3

    def load_empty_list(self):
        self.stack.append([])
    dispatch[EMPTY_LIST[0]] = load_empty_list

    def load_empty_dictionary(self):
        self.stack.append({})
    dispatch[EMPTY_DICT[0]] = load_empty_dictionary

    def load_empty_set(self):
        self.stack.append(set())
    dispatch[EMPTY_SET[0]] = load_empty_set

    def load_frozenset(self):
        self.stack.append(frozenset(self.pop_mark()))
    dispatch[FROZENSET[0]] = load_frozenset

    def load_list(self):
        self.stack.append(self.pop_mark())
    dispatch[LIST[0]] = load_list

    def load_dict(self):
        items = self.pop_mark()
        if len(items) % 2:
            raise MalformedStream("odd number of items for DICT")
        self.stack.append({items[i]: items[i + 1] for i in range(0, len(items), 2)})
    dispatch[DICT[0]] = load_dict

    def load_inst(self):
        module = readline(self._file)
        name = readline(self._file)
        cls = self.find_class(module, name)
        self.stack.append(self._construct(cls, tuple(self.pop_mark())))
    dispatch[INST[0]] = load_inst

    def load_obj(self):
        args = self.pop_mark()
        if not args:
            raise MalformedStream("OBJ without a class reference")
        cls = args.pop(0)
        self.stack.append(self._construct(cls, tuple(args)))
    dispatch[OBJ[0]] = load_obj

    def load_newobj(self):
        args = self._pop()
        cls = self._pop()
        self.stack.append(self._construct(cls, args))
    dispatch[NEWOBJ[0]] = load_newobj

    def load_newobj_ex(self):
        kwargs = self._pop()
        args = self._pop()
        cls = self._pop()
        if not isinstance(kwargs, dict):
            raise MalformedStream("NEWOBJ_EX keyword arguments must be a dict")
        self.stack.append(self._construct(cls, args, kwargs))
    dispatch[NEWOBJ_EX[0]] = load_newobj_ex

    def load_global(self):
        module = readline(self._file)
        name = readline(self._file)
        self.stack.append(self.find_class(module, name))
    dispatch[GLOBAL[0]] = load_global

    def load_stack_global(self):
        name = self._pop()
        module = self._pop()
        if type(name) is not str or type(module) is not str:
            raise MalformedStream("STACK_GLOBAL requires str")
        self.stack.append(self.find_class(module, name))
    dispatch[STACK_GLOBAL[0]] = load_stack_global

    def load_ext1(self):
        self.get_extension(readbyte(self._file))
    dispatch[EXT1[0]] = load_ext1

    def load_ext2(self):
        self.get_extension(bytes_to_integer(readbytes(self._file, 2)))
    dispatch[EXT2[0]] = load_ext2

    def load_ext4(self):
        self.get_extension(bytes_to_integer(readbytes(self._file, 4)))
    dispatch[EXT4[0]] = load_ext4

    def get_extension(self, code):
        descriptor = self.registry.extension_descriptor(code)
        if descriptor is None:
            if code <= 0:
                raise MalformedStream("EXT specifies code <= 0")
            raise UnresolvedType("extension code %d" % code)
        self.stack.append(self.find_class(*descriptor))

    def load_reduce(self):
        args = self._pop()
        func = self._pop()
        self.stack.append(self._construct(func, args))
    dispatch[REDUCE[0]] = load_reduce

    def load_pop(self):
        if self.marks and self.marks[-1] == len(self.stack):
            self.marks.pop()
        elif self.stack:
            del self.stack[-1]
        else:
            raise MalformedStream("POP on an empty stack")
    dispatch[POP[0]] = load_pop

    def load_pop_mark(self):
        self.pop_mark()
    dispatch[POP_MARK[0]] = load_pop_mark

    def load_dup(self):
        self.stack.append(self._top())
    dispatch[DUP[0]] = load_dup

    def load_get(self):
        self.stack.append(self.memo.get(_parse_int(readline(self._file))))
    dispatch[GET[0]] = load_get

    def load_binget(self):
        self.stack.append(self.memo.get(readbyte(self._file)))
    dispatch[BINGET[0]] = load_binget

    def load_long_binget(self):
        self.stack.append(self.memo.get(bytes_to_uint(readbytes(self._file, 4))))
    dispatch[LONG_BINGET[0]] = load_long_binget

    def load_put(self):
        i = _parse_int(readline(self._file))
        if i < 0:
            raise MalformedStream("negative PUT argument")
        self.memo.put(i, self._top())
    dispatch[PUT[0]] = load_put

    def load_binput(self):
        self.memo.put(readbyte(self._file), self._top())
    dispatch[BINPUT[0]] = load_binput

    def load_long_binput(self):
        self.memo.put(bytes_to_uint(readbytes(self._file, 4)), self._top())
    dispatch[LONG_BINPUT[0]] = load_long_binput

    def load_memoize(self):
        self.memo.assign_next(self._top())
    dispatch[MEMOIZE[0]] = load_memoize

    def load_append(self):
        value = self._pop()
        target = self._top()
        if isinstance(target, list):
            target.append(value)
        else:
            getattr(target, "append")(value)
    dispatch[APPEND[0]] = load_append

    def load_appends(self):
        items = self.pop_mark()
        target = self._top()
        if isinstance(target, list):
            target.extend(items)
        else:
            append = getattr(target, "append")
            for item in items:
                append(item)
    dispatch[APPENDS[0]] = load_appends

    def load_setitem(self):
        value = self._pop()
        key = self._pop()
        target = self._top()
        if not isinstance(target, dict):
            raise MalformedStream("SETITEM on a %s object" % type(target).__name__)
        target[key] = value
    dispatch[SETITEM[0]] = load_setitem

    def load_setitems(self):
        items = self.pop_mark()
        target = self._top()
        if not isinstance(target, dict):
            raise MalformedStream("SETITEMS on a %s object" % type(target).__name__)
        if len(items) % 2:
            raise MalformedStream("odd number of items for SETITEMS")
        for i in range(0, len(items), 2):
            target[items[i]] = items[i + 1]
    dispatch[SETITEMS[0]] = load_setitems

    def load_additems(self):
        items = self.pop_mark()
        target = self._top()
        if isinstance(target, set):
            target.update(items)
        else:
            add = getattr(target, "add")
            for item in items:
                add(item)
    dispatch[ADDITEMS[0]] = load_additems

    def load_build(self):
        state = self._pop()
        inst = self._top()
        builder = self._builders.get(id(inst))
        try:
            if builder is not None and builder[1] is inst:
                builder[0].apply_state(inst, state)
            else:
                apply_state(inst, state)
        except PickleError:
            raise
        except Exception as exc:
            raise UnpicklingError("cannot apply state to %s object: %s"
                                  % (type(inst).__name__, exc)) from exc
    dispatch[BUILD[0]] = load_build

    def load_mark(self):
        self.marks.append(len(self.stack))
    dispatch[MARK[0]] = load_mark

    def load_stop(self):
        if len(self.stack) != 1:
            raise MalformedStream("STOP with %d items on the stack" % len(self.stack))
        raise _Stop(self.stack[0])
    dispatch[STOP[0]] = load_stop


def load(file, **kwargs):
    return Unpickler(file, **kwargs).load()


def loads(data, **kwargs):
    if isinstance(data, str):
        raise TypeError("Can't load pickle from unicode string")
    return Unpickler(io.BytesIO(data), **kwargs).load()
