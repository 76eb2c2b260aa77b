"""Tests for the CRC-32 and CP437 codecs."""

import os
import zlib

import pytest

from zipcodec import cp437
from zipcodec.crc32 import crc32, crc32_from_table, crc_table
from zipcodec.exceptions import EncodingError


class TestCrc32:
    """Tests for CRC-32."""

    def test_known_value(self):
        assert crc32(b"123456789") == 0xCBF43926
        assert crc32_from_table(b"123456789") == 0xCBF43926

    def test_empty(self):
        assert crc32(b"") == 0
        assert crc32_from_table(b"") == 0

    def test_table(self):
        table = crc_table()
        assert len(table) == 256
        assert table[0] == 0
        assert table[1] == 0x77073096
        assert table[255] == 0x2D02EF8D
        assert crc_table() is table

    def test_incremental(self):
        data = os.urandom(10_000)
        value = 0
        for i in range(0, len(data), 777):
            value = crc32(data[i : i + 777], value)
        assert value == zlib.crc32(data)

    def test_table_matches_zlib(self):
        data = os.urandom(4096)
        assert crc32_from_table(data) == zlib.crc32(data)
        assert crc32_from_table(data[100:], crc32_from_table(data[:100])) == zlib.crc32(data)


class TestCp437:
    """Tests for CP437 encoding and decoding."""

    def test_table_covers_every_byte(self):
        assert len(cp437.CP437) == 256
        assert len(set(cp437.CP437)) == 256

    def test_ascii_fast_path(self):
        assert cp437.encode("Hello, World!") == b"Hello, World!"
        assert cp437.decode(b"Hello, World!") == "Hello, World!"

    def test_upper_half_matches_codec(self):
        data = bytes(range(0x80, 0x100))
        assert cp437.decode(data) == data.decode("cp437")

    def test_graphic_control_characters(self):
        # Control bytes decode to their glyphs, not to C0 controls
        assert cp437.decode(b"\x01\x02\x7f") == "☺☻⌂"
        assert cp437.decode(b"\x00") == "\x00"

    def test_all_bytes_roundtrip(self):
        data = bytes(range(256))
        assert cp437.encode(cp437.decode(data)) == data

    def test_encode_non_ascii(self):
        assert cp437.encode("Ç░ß") == b"\x80\xb0\xe1"

    def test_unencodable(self):
        with pytest.raises(EncodingError, match="not encodable"):
            cp437.encode("日本")

    def test_encoding_error_is_value_error(self):
        with pytest.raises(ValueError):
            cp437.encode("€")
