"""Cryptographic and fast non-cryptographic string hashing."""

from __future__ import annotations

import hashlib
import struct

_MASK = (1 << 64) - 1

_P1 = 0x9E3779B185EBCA87
_P2 = 0xC2B2AE3D27D4EB4F
_P3 = 0x165667B19E3779F9
_P4 = 0x85EBCA77C2B2AE63
_P5 = 0x27D4EB2F165667C5


def sha256sum(text: str) -> str:
    """Return the hex SHA-256 digest of ``text``.

    Used where the security properties of a cryptographic hash matter,
    such as proof-of-work challenges.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (64 - bits))) & _MASK


def _round(acc: int, lane: int) -> int:
    acc = (acc + lane * _P2) & _MASK
    acc = _rotl(acc, 31)
    return (acc * _P1) & _MASK


def _merge_round(acc: int, value: int) -> int:
    acc ^= _round(0, value)
    return (acc * _P1 + _P4) & _MASK


def xxh64(data: bytes | bytearray | memoryview | str, seed: int = 0) -> int:
    """Return the 64-bit XXH64 digest of ``data`` as an integer."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    data = bytes(data)
    length = len(data)
    seed &= _MASK
    stripe_end = length - length % 32

    if length >= 32:
        v1 = (seed + _P1 + _P2) & _MASK
        v2 = (seed + _P2) & _MASK
        v3 = seed
        v4 = (seed - _P1) & _MASK
        for a, b, c, d in struct.iter_unpack("<4Q", data[:stripe_end]):
            v1 = _round(v1, a)
            v2 = _round(v2, b)
            v3 = _round(v3, c)
            v4 = _round(v4, d)
        h = (_rotl(v1, 1) + _rotl(v2, 7) + _rotl(v3, 12) + _rotl(v4, 18)) & _MASK
        for value in (v1, v2, v3, v4):
            h = _merge_round(h, value)
    else:
        h = (seed + _P5) & _MASK

    h = (h + length) & _MASK

    tail = data[stripe_end:]
    lanes_end = len(tail) - len(tail) % 8
    for (lane,) in struct.iter_unpack("<Q", tail[:lanes_end]):
        h ^= _round(0, lane)
        h = (_rotl(h, 27) * _P1 + _P4) & _MASK

    rest = tail[lanes_end:]
    if len(rest) >= 4:
        (word,) = struct.unpack_from("<I", rest)
        h ^= (word * _P1) & _MASK
        h = (_rotl(h, 23) * _P2 + _P3) & _MASK
        rest = rest[4:]

    for byte in rest:
        h ^= (byte * _P5) & _MASK
        h = (_rotl(h, 11) * _P1) & _MASK

    h ^= h >> 33
    h = (h * _P2) & _MASK
    h ^= h >> 29
    h = (h * _P3) & _MASK
    h ^= h >> 32
    return h


def fast_hash(text: str) -> str:
    """Return a fast non-cryptographic hash of ``text`` as lowercase hex.

    Suitable for cache keys and rule identification; leading zeros are not
    padded, so the result has between 1 and 16 characters.
    """
    return format(xxh64(text.encode("utf-8"), 0), "x")