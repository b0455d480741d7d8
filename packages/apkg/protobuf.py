"""Protobuf wire-format reading for the few messages newer exports carry.

Only what the importer needs: varints and length-delimited fields, walked
without generated message classes.
"""

from collections.abc import Iterator

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LEN = 2
WIRE_FIXED32 = 5


class ProtobufDecodeError(ValueError):
    """Truncated or malformed protobuf payload."""


def read_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Read a varint at ``pos``; return ``(value, new_pos)``."""
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ProtobufDecodeError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 64:
            raise ProtobufDecodeError("varint too long")


def iter_fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    """Yield ``(field_number, wire_type, value)`` for each field of a message.

    Varints come back as ints, length-delimited fields as bytes, fixed-width
    fields as little-endian ints.
    """
    pos = 0
    end = len(data)
    while pos < end:
        key, pos = read_varint(data, pos)
        field_number, wire_type = key >> 3, key & 0x07
        if field_number == 0:
            raise ProtobufDecodeError("field number 0")
        value: int | bytes
        if wire_type == WIRE_VARINT:
            value, pos = read_varint(data, pos)
        elif wire_type == WIRE_LEN:
            length, pos = read_varint(data, pos)
            if pos + length > end:
                raise ProtobufDecodeError("length-delimited field overruns message")
            value = data[pos : pos + length]
            pos += length
        elif wire_type == WIRE_FIXED64:
            if pos + 8 > end:
                raise ProtobufDecodeError("truncated fixed64")
            value = int.from_bytes(data[pos : pos + 8], "little")
            pos += 8
        elif wire_type == WIRE_FIXED32:
            if pos + 4 > end:
                raise ProtobufDecodeError("truncated fixed32")
            value = int.from_bytes(data[pos : pos + 4], "little")
            pos += 4
        else:
            raise ProtobufDecodeError(f"unsupported wire type {wire_type}")
        yield field_number, wire_type, value


def first_field(data: bytes, number: int) -> int | bytes | None:
    """Return the first value of field ``number`` in a message, if present."""
    for field_number, _, value in iter_fields(data):
        if field_number == number:
            return value
    return None
