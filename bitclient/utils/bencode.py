"""Bencode codec.

Values are represented by :class:`Value`, a tagged variant over the four
bencode shapes. Consumers dispatch on ``Value.kind`` or use the typed
accessors, which raise :class:`UnexpectedTypeError` on a shape mismatch
instead of silently coercing.
"""
from enum import Enum

from .errors import MalformedInputError, UnexpectedTypeError

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

# Nesting guard for untrusted input, well below the interpreter's recursion limit.
MAX_DEPTH = 256

_DIGITS = b"0123456789"


class ValueKind(Enum):
    INTEGER = 'integer'
    STRING = 'byte string'
    LIST = 'list'
    DICT = 'dictionary'


class Value:
    __slots__ = ('kind', 'data')

    def __init__(self, kind: ValueKind, data):
        self.kind = kind
        self.data = data

    @classmethod
    def of_int(cls, number: int) -> 'Value':
        number = int(number)
        if not INT64_MIN <= number <= INT64_MAX:
            raise ValueError(f"Integer {number} does not fit in 64 bits")
        return cls(ValueKind.INTEGER, number)

    @classmethod
    def of_bytes(cls, raw: bytes) -> 'Value':
        return cls(ValueKind.STRING, bytes(raw))

    @classmethod
    def of_list(cls, items) -> 'Value':
        return cls(ValueKind.LIST, list(items))

    @classmethod
    def of_dict(cls, pairs) -> 'Value':
        """Build a dictionary value. Insertion order is kept; encoding sorts keys."""
        return cls(ValueKind.DICT, {bytes(k): v for k, v in dict(pairs).items()})

    @classmethod
    def from_python(cls, obj) -> 'Value':
        """Convert plain ints, bytes, str, lists and dicts into a Value tree."""
        if isinstance(obj, Value):
            return obj
        if isinstance(obj, bool):
            raise TypeError("Booleans have no bencode representation")
        if isinstance(obj, int):
            return cls.of_int(obj)
        if isinstance(obj, str):
            return cls.of_bytes(obj.encode('utf-8'))
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return cls.of_bytes(obj)
        if isinstance(obj, (list, tuple)):
            return cls.of_list(cls.from_python(item) for item in obj)
        if isinstance(obj, dict):
            return cls.of_dict({
                (k.encode('utf-8') if isinstance(k, str) else k): cls.from_python(v)
                for k, v in obj.items()
            })
        raise TypeError(f"Cannot bencode type: {type(obj).__name__}")

    def to_python(self):
        if self.kind is ValueKind.LIST:
            return [item.to_python() for item in self.data]
        if self.kind is ValueKind.DICT:
            return {k: v.to_python() for k, v in self.data.items()}
        return self.data

    # ------------------ Accessors --------------------

    def _expect(self, kind: ValueKind):
        if self.kind is not kind:
            raise UnexpectedTypeError(kind.value, self.kind.value)
        return self.data

    def as_int(self) -> int:
        return self._expect(ValueKind.INTEGER)

    def as_bytes(self) -> bytes:
        return self._expect(ValueKind.STRING)

    def as_list(self) -> list['Value']:
        return self._expect(ValueKind.LIST)

    def as_dict(self) -> dict[bytes, 'Value']:
        return self._expect(ValueKind.DICT)

    def __eq__(self, other):
        if not isinstance(other, Value):
            return NotImplemented
        return self.kind is other.kind and self.data == other.data

    __hash__ = None

    def __repr__(self):
        return f"Value({self.kind.value}, {self.data!r})"


# -------------------------------------------------
# -------------------- Decoding -------------------

class _Decoder:
    def __init__(self, data: bytes, max_depth: int):
        self.data = data
        self.max_depth = max_depth

    def decode_value(self, pos: int, depth: int) -> tuple[Value, int]:
        if depth > self.max_depth:
            raise MalformedInputError(f"Nesting deeper than {self.max_depth} levels", pos)
        if pos >= len(self.data):
            raise MalformedInputError("Unexpected end of data", pos)

        lead = self.data[pos:pos + 1]
        if lead == b'i':
            return self.decode_int(pos)
        if lead == b'l':
            return self.decode_list(pos, depth)
        if lead == b'd':
            return self.decode_dict(pos, depth)
        if lead in _DIGITS:
            return self.decode_string(pos)
        raise MalformedInputError(f"Invalid bencoded value starting with {lead!r}", pos)

    def decode_int(self, pos):
        """Format: i<integer>e"""
        end = self.data.find(b'e', pos + 1)
        if end == -1:
            raise MalformedInputError("Unterminated integer", pos)

        digits = self.data[pos + 1:end]
        magnitude = digits[1:] if digits.startswith(b'-') else digits
        if not magnitude or not magnitude.isdigit():
            raise MalformedInputError(f"Invalid integer {digits!r}", pos)

        number = int(digits)
        if not INT64_MIN <= number <= INT64_MAX:
            raise MalformedInputError(f"Integer {digits!r} does not fit in 64 bits", pos)
        return Value(ValueKind.INTEGER, number), end + 1

    def decode_string(self, pos):
        """Format: <length>:<bytes>"""
        colon = self.data.find(b':', pos)
        if colon == -1:
            raise MalformedInputError("Missing ':' after string length", pos)

        digits = self.data[pos:colon]
        if not digits.isdigit():
            raise MalformedInputError(f"Invalid string length {digits!r}", pos)

        start = colon + 1
        end = start + int(digits)
        if end > len(self.data):
            raise MalformedInputError(
                f"String needs {int(digits)} bytes, only {len(self.data) - start} left", pos)
        return Value(ValueKind.STRING, self.data[start:end]), end

    def decode_list(self, pos, depth):
        items = []
        cursor = pos + 1
        while True:
            if cursor >= len(self.data):
                raise MalformedInputError("Unterminated list", pos)
            if self.data[cursor] == ord('e'):
                return Value(ValueKind.LIST, items), cursor + 1
            item, cursor = self.decode_value(cursor, depth + 1)
            items.append(item)

    def decode_dict(self, pos, depth):
        pairs = {}
        cursor = pos + 1
        while True:
            if cursor >= len(self.data):
                raise MalformedInputError("Unterminated dictionary", pos)
            lead = self.data[cursor:cursor + 1]
            if lead == b'e':
                return Value(ValueKind.DICT, pairs), cursor + 1
            if lead not in _DIGITS:
                raise MalformedInputError("Dictionary key is not a byte string", cursor)

            key, cursor = self.decode_string(cursor)
            if key.data in pairs:
                raise MalformedInputError(f"Duplicate dictionary key {key.data!r}", cursor)
            value, cursor = self.decode_value(cursor, depth + 1)
            pairs[key.data] = value


def decode(buffer, offset: int = 0, max_depth: int = MAX_DEPTH) -> tuple[Value, int]:
    """Decode one value starting at ``offset``.

    Returns the value and the number of bytes it occupied, so consecutive
    values can be read from one buffer without a delimiter.
    """
    data = bytes(buffer)
    if not 0 <= offset < len(data):
        raise MalformedInputError("No value to decode", offset)

    value, end = _Decoder(data, max_depth).decode_value(offset, 0)
    return value, end - offset


def decode_exact(buffer, max_depth: int = MAX_DEPTH) -> Value:
    """Decode a buffer that must hold exactly one value."""
    value, consumed = decode(buffer, 0, max_depth)
    if consumed != len(buffer):
        raise MalformedInputError(f"{len(buffer) - consumed} trailing bytes after value", consumed)
    return value


# -------------------------------------------------
# -------------------- Encoding -------------------

def _encode_into(value: Value, out: bytearray):
    kind = value.kind
    if kind is ValueKind.INTEGER:
        out += b"i%de" % value.data
    elif kind is ValueKind.STRING:
        out += b"%d:" % len(value.data)
        out += value.data
    elif kind is ValueKind.LIST:
        out += b"l"
        for item in value.data:
            _encode_into(item, out)
        out += b"e"
    elif kind is ValueKind.DICT:
        # Keys must be sorted by raw bytes for the canonical form
        out += b"d"
        for key in sorted(value.data):
            out += b"%d:" % len(key)
            out += key
            _encode_into(value.data[key], out)
        out += b"e"
    else:
        raise TypeError(f"Unknown value kind {kind!r}")


def encode(value: Value) -> bytes:
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)
