"""Bob Jenkins' lookup3 ``hashlittle`` hash with a zero seed."""

from __future__ import annotations

import struct

_MASK = 0xFFFFFFFF
_BLOCK = struct.Struct("<3I")


def _rot(x: int, k: int) -> int:
    return ((x << k) | (x >> (32 - k))) & _MASK


def _mix(a: int, b: int, c: int) -> tuple[int, int, int]:
    a = (a - c) & _MASK
    a ^= _rot(c, 4)
    c = (c + b) & _MASK
    b = (b - a) & _MASK
    b ^= _rot(a, 6)
    a = (a + c) & _MASK
    c = (c - b) & _MASK
    c ^= _rot(b, 8)
    b = (b + a) & _MASK
    a = (a - c) & _MASK
    a ^= _rot(c, 16)
    c = (c + b) & _MASK
    b = (b - a) & _MASK
    b ^= _rot(a, 19)
    a = (a + c) & _MASK
    c = (c - b) & _MASK
    c ^= _rot(b, 4)
    b = (b + a) & _MASK
    return a, b, c


def _final(a: int, b: int, c: int) -> int:
    c ^= b
    c = (c - _rot(b, 14)) & _MASK
    a ^= c
    a = (a - _rot(c, 11)) & _MASK
    b ^= a
    b = (b - _rot(a, 25)) & _MASK
    c ^= b
    c = (c - _rot(b, 16)) & _MASK
    a ^= c
    a = (a - _rot(c, 4)) & _MASK
    b ^= a
    b = (b - _rot(a, 14)) & _MASK
    c ^= b
    c = (c - _rot(b, 24)) & _MASK
    return c


def jenkins_hash(key) -> int:
    """Return the 32-bit little-endian lookup3 hash of a bytes-like key."""
    data = bytes(memoryview(key))
    length = len(data)
    a = b = c = (0xDEADBEEF + length) & _MASK
    if length == 0:
        return c

    full_blocks = (length - 1) // 12
    body_end = full_blocks * 12
    for ka, kb, kc in _BLOCK.iter_unpack(data[:body_end]):
        a, b, c = _mix((a + ka) & _MASK, (b + kb) & _MASK, (c + kc) & _MASK)

    ka, kb, kc = _BLOCK.unpack(data[body_end:].ljust(12, b"\0"))
    return _final((a + ka) & _MASK, (b + kb) & _MASK, (c + kc) & _MASK)