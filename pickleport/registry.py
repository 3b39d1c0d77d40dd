"""Type dispatch registry.

Unpickling looks up ``(module, name)`` class descriptors to find the
:class:`ObjectConstructor` that builds the value. Pickling looks up the
runtime type of a value to find the function that writes it.

The registry is meant to be filled once at startup and only read while
streams are being encoded or decoded.
"""

import logging
from typing import NamedTuple

from .errors import UnpicklingError, UnresolvedType

logger = logging.getLogger(__name__)


class ClassDescriptor(NamedTuple):
    module: str
    name: str

    def __str__(self):
        return "%s.%s" % (self.module, self.name)


class ObjectConstructor:
    """Builds values for one class descriptor."""

    def construct(self, args):
        raise NotImplementedError

    def construct_ex(self, args, kwargs):
        if kwargs:
            raise UnpicklingError("%s takes no keyword arguments" % type(self).__name__)
        return self.construct(args)

    def apply_state(self, obj, state):
        apply_state(obj, state)


def apply_state(obj, state):
    """Generic BUILD semantics: ``__setstate__``, dict merge, or attributes."""
    setstate = getattr(obj, "__setstate__", None)
    if setstate is not None:
        setstate(state)
        return
    slotstate = None
    if isinstance(state, tuple) and len(state) == 2:
        state, slotstate = state
    if state:
        if isinstance(obj, dict):
            obj.update(state)
        else:
            try:
                obj.__dict__.update(state)
            except AttributeError:
                raise UnpicklingError("cannot apply state to %s object"
                                      % type(obj).__name__) from None
    if slotstate:
        for key, value in slotstate.items():
            setattr(obj, key, value)


class TypeRegistry:

    def __init__(self):
        self._constructors = {}
        self._picklers = {}
        self._extension_registry = {}
        self._inverted_registry = {}

    def register_constructor(self, module, name, constructor):
        descriptor = ClassDescriptor(module, name)
        logger.debug("Registering constructor for %s: %r", descriptor, constructor)
        self._constructors[descriptor] = constructor

    def has_constructor(self, module, name):
        return ClassDescriptor(module, name) in self._constructors

    def resolve_constructor(self, module, name):
        descriptor = ClassDescriptor(module, name)
        try:
            return self._constructors[descriptor]
        except KeyError:
            raise UnresolvedType(descriptor) from None

    def register_pickler(self, cls, pickler):
        if not isinstance(cls, type):
            raise TypeError("register_pickler() argument 1 must be a type")
        if not callable(pickler):
            raise TypeError("register_pickler() argument 2 must be callable")
        logger.debug("Registering pickler for %s", cls.__qualname__)
        self._picklers[cls] = pickler

    def unregister_pickler(self, cls):
        self._picklers.pop(cls, None)

    def resolve_pickler(self, obj):
        """Most specific pickler for ``obj``: exact type, then MRO, then isinstance."""
        t = type(obj)
        pickler = self._picklers.get(t)
        if pickler is not None:
            return pickler
        for base in t.__mro__[1:]:
            pickler = self._picklers.get(base)
            if pickler is not None:
                return pickler
        for cls, pickler in self._picklers.items():
            if isinstance(obj, cls):
                return pickler
        return None

    def add_extension(self, module, name, code):
        if not 1 <= code <= 0x7fffffff:
            raise ValueError("extension code %d out of range" % code)
        key = ClassDescriptor(module, name)
        if (self._extension_registry.get(key) not in (None, code)
                or self._inverted_registry.get(code) not in (None, key)):
            raise ValueError("key %s is already registered with a different code" % (key,))
        self._extension_registry[key] = code
        self._inverted_registry[code] = key

    def remove_extension(self, module, name, code):
        key = ClassDescriptor(module, name)
        if self._extension_registry.get(key) != code or self._inverted_registry.get(code) != key:
            raise ValueError("key %s is not registered with code %s" % (key, code))
        del self._extension_registry[key]
        del self._inverted_registry[code]

    def extension_code(self, module, name):
        return self._extension_registry.get(ClassDescriptor(module, name))

    def extension_descriptor(self, code):
        return self._inverted_registry.get(code)

    def copy(self):
        other = TypeRegistry()
        other._constructors.update(self._constructors)
        other._picklers.update(self._picklers)
        other._extension_registry.update(self._extension_registry)
        other._inverted_registry.update(self._inverted_registry)
        return other


default_registry = TypeRegistry()
