"""Minimal protocol-buffer wire format encoding and decoding."""

from __future__ import annotations

from typing import Iterable, Iterator, Tuple, Union

MASK64 = (1 << 64) - 1

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_BYTES = 2
WIRE_FIXED32 = 5

FieldValue = Union[int, bytes]


class DecodeError(ValueError):
    """Raised when a buffer is not valid protocol-buffer wire data."""


def encode_varint(value: int) -> bytes:
    """Encode an integer as a varint (negatives as 64-bit two's complement)."""
    if value < 0:
        value &= MASK64
    if value > MASK64:
        raise ValueError(f"value {value} does not fit in 64 bits")
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_varint(data: bytes, pos: int) -> Tuple[int, int]:
    """Decode a varint at ``pos``; return the value and the position after it."""
    result = 0
    for shift in range(0, 70, 7):
        if pos >= len(data):
            raise DecodeError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & MASK64, pos
    raise DecodeError("varint too long")


def iter_fields(data: bytes) -> Iterator[Tuple[int, int, FieldValue]]:
    """Yield ``(field_number, wire_type, value)`` for every field in ``data``."""
    pos = 0
    while pos < len(data):
        key, pos = decode_varint(data, pos)
        field, wire_type = key >> 3, key & 7
        if field == 0:
            raise DecodeError("invalid field number 0")
        if wire_type == WIRE_VARINT:
            value, pos = decode_varint(data, pos)
            yield field, wire_type, value
            continue
        if wire_type == WIRE_BYTES:
            size, pos = decode_varint(data, pos)
        elif wire_type in (WIRE_FIXED64, WIRE_FIXED32):
            size = 8 if wire_type == WIRE_FIXED64 else 4
        else:
            raise DecodeError(f"unsupported wire type {wire_type}")
        end = pos + size
        if end > len(data):
            raise DecodeError("truncated field")
        chunk = bytes(data[pos:end])
        pos = end
        yield field, wire_type, chunk if wire_type == WIRE_BYTES else int.from_bytes(chunk, "little")


def decode_packed(value: FieldValue) -> list[int]:
    """Decode a repeated varint field, packed or not."""
    if isinstance(value, int):
        return [value]
    out = []
    pos = 0
    while pos < len(value):
        item, pos = decode_varint(value, pos)
        out.append(item)
    return out


def to_signed(value: int) -> int:
    """Reinterpret an unsigned 64-bit value as signed."""
    value &= MASK64
    return value - (1 << 64) if value >> 63 else value


def scalar(value: FieldValue) -> int:
    """Return ``value`` if it is a scalar field value, else raise DecodeError."""
    if not isinstance(value, int):
        raise DecodeError("expected a scalar field")
    return value


def message(value: FieldValue) -> bytes:
    """Return ``value`` if it is length-delimited, else raise DecodeError."""
    if not isinstance(value, bytes):
        raise DecodeError("expected a length-delimited field")
    return value


def text(value: FieldValue) -> str:
    """Decode a length-delimited field as UTF-8."""
    try:
        return message(value).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"invalid utf-8 string: {exc}") from exc


class ProtoWriter:
    """Accumulates encoded fields; scalar defaults (zero, false) are omitted."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def varint(self, field: int, value: int) -> None:
        if value:
            self._buf += encode_varint(field << 3 | WIRE_VARINT) + encode_varint(value)

    def int64(self, field: int, value: int) -> None:
        self.varint(field, value)

    def boolean(self, field: int, value: bool) -> None:
        self.varint(field, int(bool(value)))

    def string(self, field: int, value: str) -> None:
        self.bytes_field(field, value.encode("utf-8"))

    def bytes_field(self, field: int, data: bytes) -> None:
        self._buf += encode_varint(field << 3 | WIRE_BYTES) + encode_varint(len(data)) + data

    def packed_varints(self, field: int, values: Iterable[int]) -> None:
        payload = b"".join(encode_varint(v) for v in values)
        if payload:
            self.bytes_field(field, payload)

    def getvalue(self) -> bytes:
        return bytes(self._buf)


class Message:
    """Base for dataclasses encoded from a ``_fields`` table.

    Each entry is ``(number, attribute, kind)``; kind is "uint", "int", "bool",
    "strings", "packed", "packed_int", or a Message subclass (a list attribute
    holds repeated messages, any other an optional one).
    """

    _fields: tuple = ()

    def to_bytes(self) -> bytes:
        w = ProtoWriter()
        for num, name, kind in self._fields:
            value = getattr(self, name)
            if kind in ("uint", "int", "bool"):
                w.varint(num, int(value))
            elif kind == "strings":
                for s in value:
                    w.string(num, s)
            elif kind in ("packed", "packed_int"):
                w.packed_varints(num, value)
            elif isinstance(value, list):
                for item in value:
                    w.bytes_field(num, item.to_bytes())
            elif value is not None:
                w.bytes_field(num, value.to_bytes())
        return w.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes):
        obj = cls()
        specs = {num: (name, kind) for num, name, kind in cls._fields}
        for num, _, value in iter_fields(data):
            if num not in specs:
                continue
            name, kind = specs[num]
            if kind == "uint":
                setattr(obj, name, scalar(value))
            elif kind == "int":
                setattr(obj, name, to_signed(scalar(value)))
            elif kind == "bool":
                setattr(obj, name, bool(scalar(value)))
            elif kind == "strings":
                getattr(obj, name).append(text(value))
            elif kind == "packed":
                getattr(obj, name).extend(decode_packed(value))
            elif kind == "packed_int":
                getattr(obj, name).extend(to_signed(v) for v in decode_packed(value))
            else:
                item = kind.from_bytes(message(value))
                current = getattr(obj, name)
                if isinstance(current, list):
                    current.append(item)
                else:
                    setattr(obj, name, item)
        return obj