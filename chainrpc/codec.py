"""
Wire codec for JSON-RPC values.

Integers travel as QUANTITY text (``0x`` + minimal big-endian hex digits,
``0x0`` for zero), byte strings as DATA text (``0x`` + two digits per byte),
addresses as 20-byte DATA in checksum casing. Every conversion goes through
explicit big-endian byte strings so the output never depends on the host's
integer representation.
"""

from __future__ import annotations

import string
from typing import Any, Optional, Union

from eth_utils import to_checksum_address

from chainrpc.errors import ChainIntegerOverflow, DecodeError

_HEX_DIGITS = frozenset(string.hexdigits)

SYMBOLIC_TAGS = ("latest", "pending", "earliest", "safe", "finalized")


def _operand(value: Any, op: str) -> int:
    # Exact integers only.
    if isinstance(value, int):
        return int(value)
    raise TypeError(f"unsupported operand for checked integer {op}: {type(value).__name__}")


class _CheckedUint(int):
    """Unsigned integer bounded to BITS; arithmetic that leaves the range raises."""

    BITS = 256

    def __new__(cls, value: Any = 0):
        if isinstance(value, float):
            raise TypeError(f"uint{cls.BITS} cannot hold a float: {value!r}")
        v = int(value)
        if v < 0 or v.bit_length() > cls.BITS:
            raise ChainIntegerOverflow(f"{v} does not fit in uint{cls.BITS}")
        return super().__new__(cls, v)

    @classmethod
    def max_value(cls) -> int:
        return (1 << cls.BITS) - 1

    @classmethod
    def fits(cls, value: int) -> bool:
        return 0 <= int(value) <= cls.max_value()

    @classmethod
    def from_bytes_be(cls, data: bytes):
        return cls(int.from_bytes(data, "big"))

    def to_bytes_be(self, length: Optional[int] = None) -> bytes:
        n = length if length is not None else max(1, (self.bit_length() + 7) // 8)
        return int(self).to_bytes(n, "big")

    def _wrap(self, value: int):
        return type(self)(value)

    def __add__(self, other: Any):
        return self._wrap(int(self) + _operand(other, "+"))

    def __radd__(self, other: Any):
        return self._wrap(_operand(other, "+") + int(self))

    def __sub__(self, other: Any):
        return self._wrap(int(self) - _operand(other, "-"))

    def __rsub__(self, other: Any):
        return self._wrap(_operand(other, "-") - int(self))

    def __mul__(self, other: Any):
        return self._wrap(int(self) * _operand(other, "*"))

    def __rmul__(self, other: Any):
        return self._wrap(_operand(other, "*") * int(self))

    def __floordiv__(self, other: Any):
        return self._wrap(int(self) // _operand(other, "//"))

    def __rfloordiv__(self, other: Any):
        return self._wrap(_operand(other, "//") // int(self))

    def __mod__(self, other: Any):
        return self._wrap(int(self) % _operand(other, "%"))

    def __rmod__(self, other: Any):
        return self._wrap(_operand(other, "%") % int(self))

    def __divmod__(self, other: Any):
        q, r = divmod(int(self), _operand(other, "divmod"))
        return self._wrap(q), self._wrap(r)

    def __truediv__(self, other: Any):
        raise TypeError(f"{type(self).__name__} has no true division; use //")

    __rtruediv__ = __truediv__

    def __pow__(self, other: Any, mod: Any = None):
        if mod is not None:
            mod = _operand(mod, "pow")
        return self._wrap(pow(int(self), _operand(other, "**"), mod))

    def __rpow__(self, other: Any):
        return self._wrap(pow(_operand(other, "**"), int(self)))

    def __lshift__(self, other: Any):
        return self._wrap(int(self) << _operand(other, "<<"))

    def __rlshift__(self, other: Any):
        return self._wrap(_operand(other, "<<") << int(self))

    def __rshift__(self, other: Any):
        return self._wrap(int(self) >> _operand(other, ">>"))

    def __rrshift__(self, other: Any):
        return self._wrap(_operand(other, ">>") >> int(self))

    def __and__(self, other: Any):
        return self._wrap(int(self) & _operand(other, "&"))

    def __rand__(self, other: Any):
        return self._wrap(_operand(other, "&") & int(self))

    def __or__(self, other: Any):
        return self._wrap(int(self) | _operand(other, "|"))

    def __ror__(self, other: Any):
        return self._wrap(_operand(other, "|") | int(self))

    def __xor__(self, other: Any):
        return self._wrap(int(self) ^ _operand(other, "^"))

    def __rxor__(self, other: Any):
        return self._wrap(_operand(other, "^") ^ int(self))

    def __neg__(self):
        return self._wrap(-int(self))

    def __pos__(self):
        return self

    def __abs__(self):
        return self

    def __invert__(self):
        # Complement within BITS, not the signed Python complement.
        return self._wrap(self.max_value() ^ int(self))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({int(self)})"


class Uint256(_CheckedUint):
    BITS = 256


class Uint64(_CheckedUint):
    BITS = 64


class Address(str):
    """20-byte account address, kept in EIP-55 checksum casing."""

    SIZE = 20

    def __new__(cls, value: Union[str, bytes]):
        if isinstance(value, (bytes, bytearray)):
            raw = bytes(value)
        else:
            raw = decode_data(value, size=cls.SIZE)
        if len(raw) != cls.SIZE:
            raise DecodeError(f"Address must be {cls.SIZE} bytes, got {len(raw)}")
        return super().__new__(cls, to_checksum_address(raw))

    def to_bytes(self) -> bytes:
        return bytes.fromhex(self[2:])


class Hash32(str):
    """32-byte hash (transaction, block), kept lowercase."""

    SIZE = 32

    def __new__(cls, value: Union[str, bytes]):
        raw = bytes(value) if isinstance(value, (bytes, bytearray)) else decode_data(value, size=cls.SIZE)
        if len(raw) != cls.SIZE:
            raise DecodeError(f"Hash must be {cls.SIZE} bytes, got {len(raw)}")
        return super().__new__(cls, "0x" + raw.hex())

    def to_bytes(self) -> bytes:
        return bytes.fromhex(self[2:])


BlockTag = Union[int, str]


# --- Encoding


def encode_quantity(value: int, *, bits: int = 256) -> str:
    v = int(value)
    if v < 0 or v.bit_length() > bits:
        raise ChainIntegerOverflow(f"{v} does not fit in uint{bits}")
    if v == 0:
        return "0x0"
    raw = v.to_bytes((v.bit_length() + 7) // 8, "big")
    return "0x" + raw.hex().lstrip("0")


def encode_data(value: Union[bytes, bytearray, memoryview]) -> str:
    return "0x" + bytes(value).hex()


def encode_block_tag(tag: BlockTag) -> str:
    if isinstance(tag, bool):
        raise ValueError(f"Invalid block tag: {tag!r}")
    if isinstance(tag, int):
        return encode_quantity(tag)
    if isinstance(tag, str):
        t = tag.strip().lower()
        if t in SYMBOLIC_TAGS:
            return t
        return encode_quantity(decode_quantity(t))
    raise ValueError(f"Invalid block tag: {tag!r}")


def is_symbolic_tag(tag: BlockTag) -> bool:
    return isinstance(tag, str) and tag.strip().lower() in SYMBOLIC_TAGS


def encode(value: Any) -> Any:
    """Encode a native value into its wire form."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (Address, Hash32)):
        return str(value)
    if isinstance(value, int):
        return encode_quantity(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return encode_data(value)
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return {k: encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(v) for v in value]
    raise TypeError(f"Cannot encode {type(value).__name__} for the wire")


# --- Decoding


def _strip_prefix(text: Any, what: str) -> str:
    if not isinstance(text, str):
        raise DecodeError(f"Expected 0x-prefixed {what} text, got {type(text).__name__}")
    if not text.startswith(("0x", "0X")):
        raise DecodeError(f"Missing 0x prefix in {what}: {text!r}")
    digits = text[2:]
    if any(c not in _HEX_DIGITS for c in digits):
        raise DecodeError(f"Non-hex characters in {what}: {text!r}")
    return digits


def decode_quantity(text: Any, *, bits: int = 256) -> int:
    digits = _strip_prefix(text, "quantity")
    if not digits:
        raise DecodeError(f"Empty quantity: {text!r}")
    if len(digits) % 2:
        digits = "0" + digits
    raw = bytes.fromhex(digits)
    value = int.from_bytes(raw, "big")
    if value.bit_length() > bits:
        raise DecodeError(f"Quantity {text!r} exceeds {bits} bits")
    return value


def decode_uint256(text: Any) -> Uint256:
    return Uint256(decode_quantity(text, bits=256))


def decode_data(text: Any, *, size: Optional[int] = None) -> bytes:
    digits = _strip_prefix(text, "data")
    if len(digits) % 2:
        raise DecodeError(f"Odd-length data: {text!r}")
    raw = bytes.fromhex(digits)
    if size is not None and len(raw) != size:
        raise DecodeError(f"Expected {size} bytes, got {len(raw)}: {text!r}")
    return raw


def decode_address(text: Any) -> Address:
    return Address(decode_data(text, size=Address.SIZE))


def decode_hash(text: Any) -> Hash32:
    return Hash32(decode_data(text, size=Hash32.SIZE))


def decode(text: Any, expected: Any) -> Any:
    """Decode wire text into `expected` (Uint256, Uint64, int, bytes, Address, Hash32 or bool)."""
    if expected is Uint256:
        return decode_uint256(text)
    if expected is Uint64:
        return Uint64(decode_quantity(text, bits=64))
    if expected is int:
        return decode_quantity(text)
    if expected is bytes:
        return decode_data(text)
    if expected is Address:
        return decode_address(text)
    if expected is Hash32:
        return decode_hash(text)
    if expected is bool:
        if not isinstance(text, bool):
            raise DecodeError(f"Expected boolean, got {text!r}")
        return text
    raise TypeError(f"Unsupported wire shape: {expected!r}")
