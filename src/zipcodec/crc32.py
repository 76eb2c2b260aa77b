"""CRC-32 as used by ZIP and gzip.

The checksum uses the reflected polynomial 0xEDB88320 with the register
inverted before and after the update. Values compose incrementally::

    crc = crc32(b"hello ")
    crc = crc32(b"world", crc)
    assert crc == crc32(b"hello world")
"""

from __future__ import annotations

import zlib
from functools import lru_cache

POLYNOMIAL = 0xEDB88320


@lru_cache(maxsize=None)
def crc_table() -> tuple[int, ...]:
    """Return the 256-entry lookup table, built on first use."""
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            if c & 1:
                c = POLYNOMIAL ^ (c >> 1)
            else:
                c >>= 1
        table.append(c)
    return tuple(table)


def crc32_from_table(data: bytes, value: int = 0) -> int:
    """Table-driven CRC-32, one lookup per byte."""
    table = crc_table()
    crc = value ^ 0xFFFFFFFF
    for byte in data:
        crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


def crc32(data: bytes, value: int = 0) -> int:
    """CRC-32 of *data*, continuing from *value*.

    Delegates to zlib, which runs the same table algorithm in C.
    """
    return zlib.crc32(data, value) & 0xFFFFFFFF
