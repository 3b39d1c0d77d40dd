from .config import PickleSettings, get_settings
from .errors import (
    InvalidLength,
    MalformedPrimitive,
    MalformedStream,
    PickleError,
    PicklingError,
    TruncatedStream,
    UnknownMemoReference,
    UnpicklableType,
    UnpicklingError,
    UnresolvedType,
    UnsupportedOpcode,
)
from .memo import Memo
from .objects import ClassDict, ClassDictConstructor, CallableConstructor, install_defaults
from .opcodes import DEFAULT_PROTOCOL, HIGHEST_PROTOCOL
from .pickler import Pickler, dump, dumps
from .registry import ClassDescriptor, ObjectConstructor, TypeRegistry, default_registry
from .unpickler import Unpickler, load, loads

install_defaults(default_registry)

__all__ = [
    "dump",
    "dumps",
    "load",
    "loads",
    "Pickler",
    "Unpickler",
    "HIGHEST_PROTOCOL",
    "DEFAULT_PROTOCOL",
    "PickleSettings",
    "get_settings",
    "Memo",
    "TypeRegistry",
    "default_registry",
    "ClassDescriptor",
    "ObjectConstructor",
    "ClassDict",
    "ClassDictConstructor",
    "CallableConstructor",
    "install_defaults",
    "PickleError",
    "PicklingError",
    "UnpicklingError",
    "TruncatedStream",
    "MalformedPrimitive",
    "InvalidLength",
    "UnknownMemoReference",
    "UnsupportedOpcode",
    "MalformedStream",
    "UnresolvedType",
    "UnpicklableType",
]
