"""Constructors and picklers for the standard types the codec understands.

Everything here is installed into :data:`pickleport.registry.default_registry`
by :func:`install_defaults`. Streams can only reach the callables listed in
this module.
"""

import builtins
import logging
import uuid
from collections import OrderedDict
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from fractions import Fraction

from .errors import MalformedPrimitive, UnpicklableType, UnpicklingError
from .registry import ClassDescriptor, ObjectConstructor

logger = logging.getLogger(__name__)

RECONSTRUCTOR = ClassDescriptor("copyreg", "_reconstructor")
OBJECT = ClassDescriptor("builtins", "object")


class ClassDict(dict):
    """Opaque record for a class that has no registered constructor.

    The keys hold the object's state; ``__class__`` holds the dotted class
    name. The constructor arguments are kept on :attr:`args` and
    :attr:`kwargs` so the record can be written back unchanged.
    """

    def __init__(self, module, name, args=(), kwargs=None):
        super().__init__()
        self.module = module
        self.name = name
        self.args = tuple(args)
        self.kwargs = dict(kwargs or {})
        self["__class__"] = self.classname

    @property
    def classname(self):
        return "%s.%s" % (self.module, self.name)

    @property
    def descriptor(self):
        return ClassDescriptor(self.module, self.name)

    def __repr__(self):
        return "ClassDict(%s, %s)" % (self.classname, dict.__repr__(self))


class ClassDictConstructor(ObjectConstructor):

    def __init__(self, module, name):
        self.module = module
        self.name = name

    def construct(self, args):
        return ClassDict(self.module, self.name, args)

    def construct_ex(self, args, kwargs):
        return ClassDict(self.module, self.name, args, kwargs)

    def apply_state(self, obj, state):
        if isinstance(state, tuple) and len(state) == 2:
            state, slotstate = state
            if slotstate:
                obj.update(slotstate)
        if state:
            obj.update(state)

    def __repr__(self):
        return "ClassDictConstructor(%s.%s)" % (self.module, self.name)


class CallableConstructor(ObjectConstructor):
    """Calls one fixed callable with the decoded arguments."""

    def __init__(self, func):
        self.func = func

    def construct(self, args):
        return self.func(*args)

    def construct_ex(self, args, kwargs):
        return self.func(*args, **kwargs)

    def __repr__(self):
        return "CallableConstructor(%s)" % getattr(self.func, "__qualname__", self.func)


class ReconstructorConstructor(ObjectConstructor):
    """``copyreg._reconstructor(cls, base, state)`` as written by protocols 0 and 1."""

    def construct(self, args):
        if len(args) != 3:
            raise UnpicklingError("_reconstructor expects 3 arguments, got %d" % len(args))
        cls, _base, state = args
        if not isinstance(cls, ObjectConstructor):
            raise UnpicklingError("_reconstructor argument 1 is not a class")
        return cls.construct(() if state is None else (state,))


class UUIDConstructor(ObjectConstructor):

    def construct(self, args):
        if not args:
            # filled in by BUILD through UUID.__setstate__
            return uuid.UUID.__new__(uuid.UUID)
        return uuid.UUID(*args)


def _latin1_state(state, size, kind):
    if isinstance(state, str):
        state = state.encode("latin-1")
    if len(state) != size:
        raise MalformedPrimitive("%s state must be %d bytes, got %d" % (kind, size, len(state)))
    return state


def _datetime_from_state(state, tzinfo=None):
    yhi, ylo, month, day, hour, minute, second, us1, us2, us3 = _latin1_state(state, 10, "datetime")
    fold = 0
    if month > 127:
        fold = 1
        month -= 128
    return datetime(yhi * 256 + ylo, month, day, hour, minute, second,
                    (us1 << 16) | (us2 << 8) | us3, tzinfo, fold=fold)


def _date_from_state(state):
    yhi, ylo, month, day = _latin1_state(state, 4, "date")
    return date(yhi * 256 + ylo, month, day)


def _time_from_state(state, tzinfo=None):
    hour, minute, second, us1, us2, us3 = _latin1_state(state, 6, "time")
    fold = 0
    if hour > 127:
        fold = 1
        hour -= 128
    return time(hour, minute, second, (us1 << 16) | (us2 << 8) | us3, tzinfo, fold=fold)


class DateTimeConstructor(ObjectConstructor):
    """datetime, date and time from either field arguments or packed state."""

    _from_state = {
        datetime: _datetime_from_state,
        date: _date_from_state,
        time: _time_from_state,
    }

    def __init__(self, cls):
        self.cls = cls

    def construct(self, args):
        if args and isinstance(args[0], (bytes, str)):
            return self._from_state[self.cls](*args)
        return self.cls(*args)

    def __repr__(self):
        return "DateTimeConstructor(%s)" % self.cls.__name__


def _codecs_encode(text, encoding="utf-8", errors="strict"):
    if not isinstance(text, str):
        raise UnpicklingError("_codecs.encode expects text, got %s" % type(text).__name__)
    return text.encode(encoding, errors)


_BUILTIN_CALLABLES = {
    "set": set,
    "frozenset": frozenset,
    "bytearray": bytearray,
    "bytes": bytes,
    "list": list,
    "tuple": tuple,
    "dict": dict,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "complex": complex,
    "slice": slice,
    "range": range,
    "object": object,
}


def _builtin_exceptions():
    for name, value in vars(builtins).items():
        if isinstance(value, type) and issubclass(value, BaseException):
            yield name, value


# picklers: fn(pickler, obj)

def save_descriptor(pickler, obj):
    pickler.save_global(obj)


def save_complex(pickler, obj):
    pickler.save_reduce(ClassDescriptor("builtins", "complex"), (obj.real, obj.imag), obj=obj)


def save_slice(pickler, obj):
    pickler.save_reduce(ClassDescriptor("builtins", "slice"), (obj.start, obj.stop, obj.step), obj=obj)


def save_range(pickler, obj):
    pickler.save_reduce(ClassDescriptor("builtins", "range"), (obj.start, obj.stop, obj.step), obj=obj)


def save_decimal(pickler, obj):
    pickler.save_reduce(ClassDescriptor("decimal", "Decimal"), (str(obj),), obj=obj)


def save_fraction(pickler, obj):
    pickler.save_reduce(ClassDescriptor("fractions", "Fraction"), (obj.numerator, obj.denominator), obj=obj)


def save_ordered_dict(pickler, obj):
    pickler.save_reduce(ClassDescriptor("collections", "OrderedDict"), (),
                        dictitems=iter(obj.items()), obj=obj)


def _microsecond_bytes(us):
    us2, us3 = divmod(us, 256)
    us1, us2 = divmod(us2, 256)
    return us1, us2, us3


def save_datetime(pickler, obj):
    yhi, ylo = divmod(obj.year, 256)
    month = obj.month
    if obj.fold and pickler.proto > 3:
        month += 128
    state = bytes([yhi, ylo, month, obj.day, obj.hour, obj.minute, obj.second,
                   *_microsecond_bytes(obj.microsecond)])
    args = (state,) if obj.tzinfo is None else (state, obj.tzinfo)
    pickler.save_reduce(ClassDescriptor("datetime", "datetime"), args, obj=obj)


def save_date(pickler, obj):
    yhi, ylo = divmod(obj.year, 256)
    state = bytes([yhi, ylo, obj.month, obj.day])
    pickler.save_reduce(ClassDescriptor("datetime", "date"), (state,), obj=obj)


def save_time(pickler, obj):
    hour = obj.hour
    if obj.fold and pickler.proto > 3:
        hour += 128
    state = bytes([hour, obj.minute, obj.second, *_microsecond_bytes(obj.microsecond)])
    args = (state,) if obj.tzinfo is None else (state, obj.tzinfo)
    pickler.save_reduce(ClassDescriptor("datetime", "time"), args, obj=obj)


def save_timedelta(pickler, obj):
    pickler.save_reduce(ClassDescriptor("datetime", "timedelta"),
                        (obj.days, obj.seconds, obj.microseconds), obj=obj)


def save_timezone(pickler, obj):
    pickler.save_reduce(ClassDescriptor("datetime", "timezone"), obj.__getinitargs__(), obj=obj)


def save_uuid(pickler, obj):
    cls = ClassDescriptor("uuid", "UUID")
    if pickler.proto >= 2:
        pickler.save_reduce(cls, (), state=obj.__getstate__(), newobj=True, obj=obj)
    else:
        pickler.save_reduce(RECONSTRUCTOR, (cls, OBJECT, None), state=obj.__getstate__(), obj=obj)


def save_exception(pickler, obj):
    t = type(obj)
    if getattr(builtins, t.__name__, None) is not t:
        raise UnpicklableType(t, "no pickler registered for exception type %s.%s"
                              % (t.__module__, t.__qualname__))
    pickler.save_reduce(ClassDescriptor("builtins", t.__name__), obj.args,
                        state=obj.__dict__ or None, obj=obj)


def save_classdict(pickler, obj):
    state = {k: v for k, v in obj.items() if k != "__class__"} or None
    if pickler.proto >= 2:
        pickler.save_reduce(obj.descriptor, obj.args, state=state, newobj=True,
                            kwargs=obj.kwargs or None, obj=obj)
    else:
        pickler.save_reduce(obj.descriptor, obj.args, state=state, obj=obj)


def install_defaults(registry):
    # Python 2 names are mapped onto these by the unpickler
    for name, func in _BUILTIN_CALLABLES.items():
        registry.register_constructor("builtins", name, CallableConstructor(func))
    for name, cls in _builtin_exceptions():
        registry.register_constructor("builtins", name, CallableConstructor(cls))
    registry.register_constructor("copyreg", "_reconstructor", ReconstructorConstructor())
    registry.register_constructor("_codecs", "encode", CallableConstructor(_codecs_encode))
    registry.register_constructor("collections", "OrderedDict", CallableConstructor(OrderedDict))
    registry.register_constructor("decimal", "Decimal", CallableConstructor(Decimal))
    registry.register_constructor("fractions", "Fraction", CallableConstructor(Fraction))
    registry.register_constructor("uuid", "UUID", UUIDConstructor())
    for cls in (datetime, date, time):
        registry.register_constructor("datetime", cls.__name__, DateTimeConstructor(cls))
    registry.register_constructor("datetime", "timedelta", CallableConstructor(timedelta))
    registry.register_constructor("datetime", "timezone", CallableConstructor(timezone))

    registry.register_pickler(ClassDescriptor, save_descriptor)
    registry.register_pickler(complex, save_complex)
    registry.register_pickler(slice, save_slice)
    registry.register_pickler(range, save_range)
    registry.register_pickler(Decimal, save_decimal)
    registry.register_pickler(Fraction, save_fraction)
    registry.register_pickler(OrderedDict, save_ordered_dict)
    registry.register_pickler(datetime, save_datetime)
    registry.register_pickler(date, save_date)
    registry.register_pickler(time, save_time)
    registry.register_pickler(timedelta, save_timedelta)
    registry.register_pickler(timezone, save_timezone)
    registry.register_pickler(uuid.UUID, save_uuid)
    registry.register_pickler(BaseException, save_exception)
    registry.register_pickler(ClassDict, save_classdict)
    logger.debug("Installed default constructors and picklers")
    return registry


__all__ = [
    "ClassDict",
    "ClassDictConstructor",
    "CallableConstructor",
    "DateTimeConstructor",
    "ReconstructorConstructor",
    "UUIDConstructor",
    "install_defaults",
]
