from .errors import UnknownMemoReference


class Memo:
    """Id <-> object table for one pickling or unpickling session.

    Ids handed out by :meth:`assign_next` equal the number of entries at the
    time of the call, which is how the MEMOIZE opcode numbers them. The
    identity index keeps a strong reference to every stored object so that
    ``id()`` values stay unique for the lifetime of the session.
    """

    __slots__ = ("_values", "_ids")

    def __init__(self):
        self._values = {}
        self._ids = {}

    def __len__(self):
        return len(self._values)

    def __contains__(self, idx):
        return idx in self._values

    def put(self, idx, value):
        if idx < 0:
            raise ValueError("negative memo id %d" % idx)
        if idx in self._values:
            previous = self._values[idx]
            if self._ids.get(id(previous), (None,))[0] == idx:
                del self._ids[id(previous)]
        self._values[idx] = value
        self._ids[id(value)] = idx, value

    def get(self, idx):
        try:
            return self._values[idx]
        except KeyError:
            raise UnknownMemoReference(idx) from None

    def assign_next(self, value):
        idx = len(self._values)
        self.put(idx, value)
        return idx

    def lookup(self, obj):
        entry = self._ids.get(id(obj))
        if entry is None or entry[1] is not obj:
            return None
        return entry[0]

    def clear(self):
        self._values.clear()
        self._ids.clear()
