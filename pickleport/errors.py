"""Exception taxonomy shared by the pickler, the unpickler and the primitive codec."""


class PickleError(Exception):
    """Base exception for the package.

    ``opcode`` and ``offset`` are filled in by the unpickler when the failure
    happened while interpreting a stream.
    """

    def __init__(self, message="", *, opcode=None, offset=None):
        super().__init__(message)
        self.message = message
        self.opcode = opcode
        self.offset = offset

    def locate(self, opcode, offset):
        if self.opcode is None:
            self.opcode = opcode
        if self.offset is None:
            self.offset = offset
        return self

    def __str__(self):
        if self.opcode is None:
            return self.message
        from .opcodes import opcode_name
        where = "opcode %s" % opcode_name(self.opcode)
        if self.offset is not None:
            where += " at offset %d" % self.offset
        return "%s (%s)" % (self.message, where)


class PicklingError(PickleError):
    """Raised when an object graph cannot be written."""


class UnpicklingError(PickleError):
    """Raised when a byte stream cannot be read back."""


class TruncatedStream(UnpicklingError, EOFError):
    """The byte source ran out in the middle of an opcode or operand."""


class MalformedPrimitive(PickleError, ValueError):
    """An operand cannot be decoded as the primitive it claims to be."""


class InvalidLength(MalformedPrimitive):
    """An operand has the wrong number of bytes for its primitive."""


class UnknownMemoReference(UnpicklingError):
    """A GET opcode referenced a memo id that was never PUT."""

    def __init__(self, index):
        super().__init__("memo key %d is not defined" % index)
        self.index = index


class UnsupportedOpcode(UnpicklingError):
    """The byte is not an opcode, or not one valid for the stream's protocol."""

    def __init__(self, code, message=None, *, offset=None):
        super().__init__(message or "invalid load key 0x%02x" % code,
                         opcode=code, offset=offset)
        self.code = code


class MalformedStream(UnpicklingError):
    """The opcode sequence is structurally invalid."""


class UnresolvedType(UnpicklingError):
    """No constructor is registered for a class descriptor."""

    def __init__(self, descriptor):
        super().__init__("no constructor registered for %s" % (descriptor,))
        self.descriptor = descriptor


class UnpicklableType(PicklingError, TypeError):
    """No pickler handles the runtime type of a value."""

    def __init__(self, cls, message=None):
        super().__init__(message or "cannot pickle %r object" % (cls.__qualname__,))
        self.type = cls
