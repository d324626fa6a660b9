"""MurmurHash3 x86 32-bit hash with a zero seed."""

from __future__ import annotations

import struct

_MASK = 0xFFFFFFFF
_C1 = 0xCC9E2D51
_C2 = 0x1B873593
_BLOCK = struct.Struct("<I")


def _rotl(x: int, r: int) -> int:
    return ((x << r) | (x >> (32 - r))) & _MASK


def _fmix(h: int) -> int:
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _MASK
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _MASK
    h ^= h >> 16
    return h


def _scramble(k: int) -> int:
    k = (k * _C1) & _MASK
    k = _rotl(k, 15)
    return (k * _C2) & _MASK


def murmur3_32(key) -> int:
    """Return the 32-bit MurmurHash3 of a bytes-like key."""
    data = bytes(memoryview(key))
    length = len(data)
    body_end = length - length % 4
    h = 0
    for (k,) in _BLOCK.iter_unpack(data[:body_end]):
        h ^= _scramble(k)
        h = _rotl(h, 13)
        h = (h * 5 + 0xE6546B64) & _MASK

    tail = data[body_end:]
    if tail:
        h ^= _scramble(int.from_bytes(tail, "little"))

    h ^= length & _MASK
    return _fmix(h)