"""Bencode encoding and decoding.

Decoded values map onto plain Python types: byte strings become ``bytes``,
integers ``int``, lists ``list`` and dictionaries ``dict`` keyed by ``bytes``.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import Any, Union

BencodeValue = Union[bytes, int, list, dict]

_LENGTH_RE = re.compile(rb"\+?[0-9]+")
_INTEGER_RE = re.compile(rb"[+-]?[0-9]+")
_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1
_END = ord("e")


class BencodeError(ValueError):
    """Raised when bencoded input is malformed."""


def _decode_byte_string(data: bytes, pos: int) -> tuple[bytes, int]:
    colon = data.find(b":", pos)
    if colon < 0:
        raise BencodeError("expected ':'")
    length_text = data[pos:colon]
    if not _LENGTH_RE.fullmatch(length_text):
        raise BencodeError("invalid string length")
    start = colon + 1
    end = start + int(length_text)
    if end > len(data):
        raise BencodeError("unexpected end of input")
    return data[start:end], end


def _decode_integer(data: bytes, pos: int) -> tuple[int, int]:
    end = data.find(b"e", pos)
    if end < 0:
        raise BencodeError("expected 'e'")
    text = data[pos + 1 : end]
    if not _INTEGER_RE.fullmatch(text):
        raise BencodeError("invalid integer")
    value = int(text)
    if not _I64_MIN <= value <= _I64_MAX:
        raise BencodeError("invalid integer")
    return value, end + 1


def _decode_list(data: bytes, pos: int) -> tuple[list, int]:
    items: list = []
    pos += 1
    while pos < len(data) and data[pos] != _END:
        item, pos = _decode_at(data, pos)
        items.append(item)
    if pos >= len(data):
        raise BencodeError("expected 'e'")
    return items, pos + 1


def _decode_dictionary(data: bytes, pos: int) -> tuple[dict, int]:
    entries: dict[bytes, Any] = {}
    pos += 1
    while pos < len(data) and data[pos] != _END:
        key, pos = _decode_byte_string(data, pos)
        value, pos = _decode_at(data, pos)
        entries[key] = value
    if pos >= len(data):
        raise BencodeError("expected 'e'")
    return dict(sorted(entries.items())), pos + 1


def _decode_at(data: bytes, pos: int) -> tuple[Any, int]:
    if pos >= len(data):
        raise BencodeError("unexpected end of input")
    lead = data[pos : pos + 1]
    if lead.isdigit():
        return _decode_byte_string(data, pos)
    if lead == b"i":
        return _decode_integer(data, pos)
    if lead == b"l":
        return _decode_list(data, pos)
    if lead == b"d":
        return _decode_dictionary(data, pos)
    raise BencodeError("unexpected token")


def decode(data: bytes) -> tuple[BencodeValue, bytes]:
    """Decode one value from the start of ``data``.

    Returns the value and the bytes that follow it.
    """
    buffer = bytes(data)
    value, end = _decode_at(buffer, 0)
    return value, buffer[end:]


def _encode_parts(value: Any) -> Iterator[bytes]:
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        yield str(len(raw)).encode("ascii") + b":"
        yield raw
    elif isinstance(value, bool):
        raise TypeError("cannot bencode a bool")
    elif isinstance(value, int):
        yield b"i" + str(value).encode("ascii") + b"e"
    elif isinstance(value, (list, tuple)):
        yield b"l"
        for item in value:
            yield from _encode_parts(item)
        yield b"e"
    elif isinstance(value, dict):
        yield b"d"
        for key in sorted(value):
            if not isinstance(key, (bytes, bytearray)):
                raise TypeError(f"dictionary keys must be bytes, not {type(key).__name__}")
            yield from _encode_parts(key)
            yield from _encode_parts(value[key])
        yield b"e"
    else:
        raise TypeError(f"cannot bencode a value of type {type(value).__name__}")


def encode(value: BencodeValue) -> bytes:
    """Encode a value; dictionary keys are written in sorted order."""
    return b"".join(_encode_parts(value))