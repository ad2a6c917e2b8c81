"""Binary-safe helpers for the raw byte buffers moved across GnuPG pipes.

All lengths and offsets are byte counts. Nothing here is aware of text
encodings except :func:`cut`, which refuses to split a UTF-8 sequence.
"""

from __future__ import annotations


def strlen(data: bytes | bytearray) -> int:
    """Return the length of ``data`` in bytes."""
    return len(data)


def substr(data: bytes | bytearray, start: int, length: int | None = None) -> bytes:
    """Return ``length`` bytes of ``data`` starting at ``start``.

    Negative ``start`` counts from the end. A missing ``length`` returns the
    rest of the buffer.
    """
    if start < 0:
        start = max(len(data) + start, 0)
    if length is None:
        return bytes(data[start:])
    if length < 0:
        return bytes(data[start:length])
    return bytes(data[start : start + length])


def cut(data: bytes | bytearray, length: int) -> bytes:
    """Return the longest prefix of at most ``length`` bytes that ends on a
    UTF-8 character boundary."""
    if length >= len(data):
        return bytes(data)
    end = length
    # back off over continuation bytes (0b10xxxxxx)
    while end > 0 and (data[end] & 0xC0) == 0x80:
        end -= 1
    return bytes(data[:end])
