import _compat_pickle
import io
import logging
from itertools import islice
from pickle import PickleBuffer
from struct import pack

from .config import get_settings
from .errors import PicklingError, UnpicklableType
from .memo import Memo
from .objects import OBJECT, RECONSTRUCTOR
from .opcodes import *
from .registry import ClassDescriptor, default_registry
from .utils import double_to_bytes, encode_long

logger = logging.getLogger(__name__)


class _Framer:
    _FRAME_SIZE_MIN = 4

    def __init__(self, file_write, frame_size_target=64 * 1024):
        self.file_write = file_write
        self.frame_size_target = frame_size_target
        self.current_frame = None

    def start_framing(self):
        self.current_frame = io.BytesIO()

    def end_framing(self):
        if self.current_frame and self.current_frame.tell() > 0:
            self.commit_frame(force=True)
            self.current_frame = None

    def commit_frame(self, force=False):
        if self.current_frame:
            f = self.current_frame
            if f.tell() >= self.frame_size_target or force:
                data = f.getbuffer()
                write = self.file_write
                if len(data) >= self._FRAME_SIZE_MIN:
                    write(FRAME + pack("<Q", len(data)))
                write(data)
                self.current_frame = io.BytesIO()

    def write(self, data):
        if self.current_frame:
            return self.current_frame.write(data)
        else:
            return self.file_write(data)

    def write_large_bytes(self, header, payload):
        write = self.file_write
        if self.current_frame:
            self.commit_frame(force=True)
        write(header)
        write(payload)


class Pickler:
    """Writes an object graph as a pickle opcode stream.

    Values of the core types are written directly. Anything else goes
    through the pickler functions of the type registry; a pickler function
    is called as ``fn(pickler, obj)`` and emits opcodes through
    :meth:`write`, :meth:`save`, :meth:`save_reduce` and :meth:`save_global`.
    """

    def __init__(self, file, protocol=None, *, fix_imports=True, buffer_callback=None,
                 registry=None, settings=None):
        self.settings = settings or get_settings()
        if protocol is None:
            protocol = self.settings.default_protocol
        if protocol < 0:
            protocol = HIGHEST_PROTOCOL
        elif not 0 <= protocol <= HIGHEST_PROTOCOL:
            raise ValueError("pickle protocol must be <= %d" % HIGHEST_PROTOCOL)
        if buffer_callback is not None and protocol < 5:
            raise ValueError("buffer_callback needs protocol >= 5")
        self._buffer_callback = buffer_callback
        try:
            self._file_write = file.write
        except AttributeError:
            raise TypeError("file must have a 'write' attribute")
        self.framer = _Framer(self._file_write, self.settings.frame_size_target)
        self.write = self.framer.write
        self._write_large_bytes = self.framer.write_large_bytes
        self.registry = registry if registry is not None else default_registry
        self.memo = Memo()
        self._globals = {}
        self.proto = int(protocol)
        self.bin = protocol >= 1
        self.fix_imports = fix_imports and protocol < 3
        self._batchsize = self.settings.batch_size

    def clear_memo(self):
        self.memo.clear()
        self._globals.clear()

    def dump(self, obj):
        if self.proto >= 2:
            self.write(PROTO + pack("<B", self.proto))
        if self.proto >= 4:
            self.framer.start_framing()
        self.save(obj)
        self.write(STOP)
        self.framer.end_framing()

    def persistent_id(self, obj):
        """Return a persistent id for ``obj``, or None to pickle it normally."""
        return None

    def memoize(self, obj):
        idx = self.memo.assign_next(obj)
        self.write(self.put(idx))

    def put(self, idx):
        if self.proto >= 4:
            return MEMOIZE
        elif self.bin:
            if idx < 256:
                return BINPUT + pack("<B", idx)
            else:
                return LONG_BINPUT + pack("<I", idx)
        else:
            return PUT + repr(idx).encode("ascii") + b'\n'

    def get(self, i):
        if self.bin:
            if i < 256:
                return BINGET + pack("<B", i)
            else:
                return LONG_BINGET + pack("<I", i)
        return GET + repr(i).encode("ascii") + b'\n'

    def save(self, obj, save_persistent_id=True):
        self.framer.commit_frame()

        pid = self.persistent_id(obj)
        if pid is not None and save_persistent_id:
            self.save_pers(pid)
            return

        x = self.memo.lookup(obj)
        if x is not None:
            self.write(self.get(x))
            return

        f = self.dispatch.get(type(obj))
        if f is not None:
            f(self, obj)
            return

        saver = self.registry.resolve_pickler(obj)
        if saver is not None:
            saver(self, obj)
        elif self.settings.pickle_objects:
            self.save_object(obj)
        else:
            raise UnpicklableType(type(obj))

    def save_pers(self, pid):
        if self.bin:
            self.save(pid, save_persistent_id=False)
            self.write(BINPERSID)
        else:
            try:
                self.write(PERSID + str(pid).encode("ascii") + b'\n')
            except UnicodeEncodeError:
                raise PicklingError("persistent IDs in protocol 0 must be ASCII strings")

    def save_reduce(self, func, args, state=None, listitems=None, dictitems=None,
                    *, newobj=False, kwargs=None, obj=None):
        if not isinstance(args, tuple):
            raise PicklingError("args from save_reduce() must be a tuple")
        if newobj and self.proto >= 2:
            if kwargs:
                if self.proto < 4:
                    raise PicklingError("keyword arguments need protocol >= 4")
                self.save(func)
                self.save(args)
                self.save(kwargs)
                self.write(NEWOBJ_EX)
            else:
                self.save(func)
                self.save(args)
                self.write(NEWOBJ)
        else:
            if kwargs:
                raise PicklingError("keyword arguments need NEWOBJ_EX")
            self.save(func)
            self.save(args)
            self.write(REDUCE)

        if obj is not None:
            # an object referencing itself through its args was already
            # memoized while the args were written
            x = self.memo.lookup(obj)
            if x is not None:
                self.write(POP + self.get(x))
            else:
                self.memoize(obj)

        if listitems is not None:
            self._batch_appends(listitems)
        if dictitems is not None:
            self._batch_setitems(dictitems)
        if state is not None:
            self.save(state)
            self.write(BUILD)

    def save_global(self, descriptor):
        x = self._globals.get(descriptor)
        if x is not None:
            self.write(self.get(x))
            return
        module, name = descriptor
        if self.proto >= 2:
            code = self.registry.extension_code(module, name)
            if code:
                if code <= 0xff:
                    self.write(EXT1 + pack("<B", code))
                elif code <= 0xffff:
                    self.write(EXT2 + pack("<H", code))
                else:
                    self.write(EXT4 + pack("<i", code))
                return
        if self.proto >= 4:
            self.save(module)
            self.save(name)
            self.write(STACK_GLOBAL)
        else:
            if self.fix_imports:
                r_name_mapping = _compat_pickle.REVERSE_NAME_MAPPING
                r_import_mapping = _compat_pickle.REVERSE_IMPORT_MAPPING
                if (module, name) in r_name_mapping:
                    module, name = r_name_mapping[(module, name)]
                elif module in r_import_mapping:
                    module = r_import_mapping[module]
            try:
                self.write(GLOBAL + bytes(module, "ascii") + b'\n' +
                           bytes(name, "ascii") + b'\n')
            except UnicodeEncodeError:
                raise PicklingError("can't pickle global identifier '%s.%s' using "
                                    "pickle protocol %i" % (module, name, self.proto))
        self._globals[descriptor] = self.memo.assign_next(descriptor)
        self.write(self.put(self._globals[descriptor]))

    def save_object(self, obj):
        """Write a plain instance as its class reference plus ``__getstate__()``."""
        t = type(obj)
        if "<locals>" in t.__qualname__ or t.__module__ is None:
            raise UnpicklableType(t, "cannot pickle local class %r" % t.__qualname__)
        getstate = getattr(obj, "__getstate__", None)
        state = getstate() if getstate is not None else getattr(obj, "__dict__", None)
        cls = ClassDescriptor(t.__module__, t.__qualname__)
        logger.debug("Pickling %s instance by class reference", cls)
        if self.proto >= 2:
            self.save_reduce(cls, (), state=state or None, newobj=True, obj=obj)
        else:
            self.save_reduce(RECONSTRUCTOR, (cls, OBJECT, None), state=state or None, obj=obj)

    dispatch = {}

    def save_none(self, obj):
        self.write(NONE)
    dispatch[type(None)] = save_none

    def save_bool(self, obj):
        if self.proto >= 2:
            self.write(NEWTRUE if obj else NEWFALSE)
        else:
            self.write(TRUE if obj else FALSE)
    dispatch[bool] = save_bool

    def save_long(self, obj):
        if self.bin:
            if obj >= 0:
                if obj <= 0xff:
                    self.write(BININT1 + pack("<B", obj))
                    return
                if obj <= 0xffff:
                    self.write(BININT2 + pack("<H", obj))
                    return
            if -0x80000000 <= obj <= 0x7fffffff:
                self.write(BININT + pack("<i", obj))
                return
        if self.proto >= 2:
            encoded = encode_long(obj)
            n = len(encoded)
            if n < 256:
                self.write(LONG1 + pack("<B", n) + encoded)
            else:
                self.write(LONG4 + pack("<i", n) + encoded)
            return
        if -0x80000000 <= obj <= 0x7fffffff:
            self.write(INT + repr(obj).encode("ascii") + b'\n')
        else:
            self.write(LONG + repr(obj).encode("ascii") + b'L\n')
    dispatch[int] = save_long

    def save_float(self, obj):
        if self.bin:
            self.write(BINFLOAT + double_to_bytes(obj))
        else:
            self.write(FLOAT + repr(obj).encode("ascii") + b'\n')
    dispatch[float] = save_float

    def save_bytes(self, obj):
        if self.proto < 3:
            if not obj:
                self.save_reduce(ClassDescriptor("builtins", "bytes"), (), obj=obj)
            else:
                self.save_reduce(ClassDescriptor("_codecs", "encode"),
                                 (str(obj, 'latin1'), 'latin1'), obj=obj)
            return
        self._save_bytes_no_memo(obj)
        self.memoize(obj)
    dispatch[bytes] = save_bytes

    def _save_bytes_no_memo(self, obj):
        n = len(obj)
        if n <= 0xff:
            self.write(SHORT_BINBYTES + pack("<B", n) + obj)
        elif n > 0xffffffff and self.proto >= 4:
            self._write_large_bytes(BINBYTES8 + pack("<Q", n), obj)
        elif n >= self.framer.frame_size_target:
            self._write_large_bytes(BINBYTES + pack("<I", n), obj)
        else:
            self.write(BINBYTES + pack("<I", n) + obj)

    def save_bytearray(self, obj):
        if self.proto < 5:
            if not obj:
                self.save_reduce(ClassDescriptor("builtins", "bytearray"), (), obj=obj)
            else:
                self.save_reduce(ClassDescriptor("builtins", "bytearray"), (bytes(obj),), obj=obj)
            return
        self._save_bytearray_no_memo(obj)
        self.memoize(obj)
    dispatch[bytearray] = save_bytearray

    def _save_bytearray_no_memo(self, obj):
        n = len(obj)
        if n >= self.framer.frame_size_target:
            self._write_large_bytes(BYTEARRAY8 + pack("<Q", n), obj)
        else:
            self.write(BYTEARRAY8 + pack("<Q", n) + obj)

    def save_picklebuffer(self, obj):
        if self.proto < 5:
            raise PicklingError("PickleBuffer can only be pickled with protocol >= 5")
        with obj.raw() as m:
            if not m.contiguous:
                raise PicklingError("PickleBuffer can not be pickled when "
                                    "pointing to a non-contiguous buffer")
            in_band = True
            if self._buffer_callback is not None:
                in_band = bool(self._buffer_callback(obj))
            if in_band:
                # same opcodes as bytes/bytearray, memoized by the buffer
                if m.readonly:
                    self._save_bytes_no_memo(m.tobytes())
                else:
                    self._save_bytearray_no_memo(m.tobytes())
                self.memoize(obj)
            else:
                self.write(NEXT_BUFFER)
                if m.readonly:
                    self.write(READONLY_BUFFER)
    dispatch[PickleBuffer] = save_picklebuffer

    def save_str(self, obj):
        if self.bin:
            encoded = obj.encode('utf-8', 'surrogatepass')
            n = len(encoded)
            if n <= 0xff and self.proto >= 4:
                self.write(SHORT_BINUNICODE + pack("<B", n) + encoded)
            elif n > 0xffffffff and self.proto >= 4:
                self._write_large_bytes(BINUNICODE8 + pack("<Q", n), encoded)
            elif n >= self.framer.frame_size_target:
                self._write_large_bytes(BINUNICODE + pack("<I", n), encoded)
            else:
                self.write(BINUNICODE + pack("<I", n) + encoded)
        else:
            tmp = obj.replace("\\", "\\u005c").replace("\0", "\\u0000").replace(
                "\n", "\\u000a").replace("\r", "\\u000d").replace("\x1a", "\\u001a")
            self.write(UNICODE + tmp.encode('raw-unicode-escape') + b'\n')
        self.memoize(obj)
    dispatch[str] = save_str

    def save_tuple(self, obj):
        if not obj:
            if self.bin:
                self.write(EMPTY_TUPLE)
            else:
                self.write(MARK + TUPLE)
            return

        n = len(obj)
        if n <= 3 and self.proto >= 2:
            for element in obj:
                self.save(element)
            # a tuple reached again through one of its own elements
            x = self.memo.lookup(obj)
            if x is not None:
                self.write(POP * n + self.get(x))
            else:
                self.write(_TUPLESIZE2CODE[n])
                self.memoize(obj)
            return

        self.write(MARK)
        for element in obj:
            self.save(element)

        x = self.memo.lookup(obj)
        if x is not None:
            if self.bin:
                self.write(POP_MARK + self.get(x))
            else:
                self.write(POP * (n + 1) + self.get(x))
            return

        self.write(TUPLE)
        self.memoize(obj)
    dispatch[tuple] = save_tuple

    def save_list(self, obj):
        if self.bin:
            self.write(EMPTY_LIST)
        else:
            self.write(MARK + LIST)
        self.memoize(obj)
        self._batch_appends(obj)
    dispatch[list] = save_list

    def _batch_appends(self, items):
        save = self.save
        write = self.write

        if not self.bin:
            for x in items:
                save(x)
                write(APPEND)
            return

        it = iter(items)
        while True:
            tmp = list(islice(it, self._batchsize))
            n = len(tmp)
            if n > 1:
                write(MARK)
                for x in tmp:
                    save(x)
                write(APPENDS)
            elif n:
                save(tmp[0])
                write(APPEND)
            if n < self._batchsize:
                return

    def save_dict(self, obj):
        if self.bin:
            self.write(EMPTY_DICT)
        else:
            self.write(MARK + DICT)
        self.memoize(obj)
        self._batch_setitems(iter(obj.items()))
    dispatch[dict] = save_dict

    def _batch_setitems(self, items):
        save = self.save
        write = self.write

        if not self.bin:
            for k, v in items:
                save(k)
                save(v)
                write(SETITEM)
            return

        it = iter(items)
        while True:
            tmp = list(islice(it, self._batchsize))
            n = len(tmp)
            if n > 1:
                write(MARK)
                for k, v in tmp:
                    save(k)
                    save(v)
                write(SETITEMS)
            elif n:
                k, v = tmp[0]
                save(k)
                save(v)
                write(SETITEM)
            if n < self._batchsize:
                return

    def save_set(self, obj):
        if self.proto < 4:
            self.save_reduce(ClassDescriptor("builtins", "set"), (list(obj),), obj=obj)
            return

        self.write(EMPTY_SET)
        self.memoize(obj)

        it = iter(obj)
        while True:
            batch = list(islice(it, self._batchsize))
            n = len(batch)
            if n > 0:
                self.write(MARK)
                for item in batch:
                    self.save(item)
                self.write(ADDITEMS)
            if n < self._batchsize:
                return
    dispatch[set] = save_set

    def save_frozenset(self, obj):
        if self.proto < 4:
            self.save_reduce(ClassDescriptor("builtins", "frozenset"), (list(obj),), obj=obj)
            return

        self.write(MARK)
        for item in obj:
            self.save(item)

        x = self.memo.lookup(obj)
        if x is not None:
            # a frozenset reached again through one of its own elements
            self.write(POP_MARK + self.get(x))
            return

        self.write(FROZENSET)
        self.memoize(obj)
    dispatch[frozenset] = save_frozenset


_TUPLESIZE2CODE = [EMPTY_TUPLE, TUPLE1, TUPLE2, TUPLE3]


def dump(obj, file, protocol=None, *, fix_imports=True, buffer_callback=None, registry=None,
         settings=None):
    Pickler(file, protocol, fix_imports=fix_imports, buffer_callback=buffer_callback,
            registry=registry, settings=settings).dump(obj)


def dumps(obj, protocol=None, *, fix_imports=True, buffer_callback=None, registry=None,
          settings=None):
    f = io.BytesIO()
    Pickler(f, protocol, fix_imports=fix_imports, buffer_callback=buffer_callback,
            registry=registry, settings=settings).dump(obj)
    return f.getvalue()
