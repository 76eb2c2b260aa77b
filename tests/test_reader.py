"""Tests for ZipReader."""

import io
import os
import struct
import tempfile
import zipfile
import zlib
from datetime import datetime
from pathlib import Path

import pytest

from zipcodec.crc32 import crc32_from_table
from zipcodec.exceptions import (
    BoundsError,
    ConsistencyError,
    FormatError,
    IntegrityError,
    ZipCodecError,
)
from zipcodec.reader import ReaderOptions, ZipReader
from zipcodec.structures import (
    CentralDirectoryHeader,
    EndOfCentralDirectory,
    ExtraField,
    LocalFileHeader,
)
from zipcodec.writer import ZipWriter


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def written_archive(temp_dir):
    """An archive with files, buffers, streams and directories."""
    archive_path = temp_dir / "written.zip"
    source = temp_dir / "source.bin"
    source.write_bytes(os.urandom(200_000))

    with ZipWriter(archive_path) as zf:
        zf.add_file(source, "data/source.bin")
        zf.add_buffer(b"stored buffer", "stored.txt", compress=False)
        zf.add_stream(io.BytesIO(b"streamed " * 1000), "stream.txt")
        zf.add_empty_directory("data/empty")
        zf.end(comment="hello ░")

    return archive_path, {
        "data/source.bin": source.read_bytes(),
        "stored.txt": b"stored buffer",
        "stream.txt": b"streamed " * 1000,
        "data/empty/": b"",
    }


def raw_deflate(data):
    compressor = zlib.compressobj(6, zlib.DEFLATED, -zlib.MAX_WBITS)
    return compressor.compress(data) + compressor.flush()


def craft_archive(records, comment=b"", disk_number=0, comment_length=None):
    """
    Build an archive byte by byte.

    Each record is a dict with ``name`` and optional ``data``, ``flags``,
    ``compression``, ``crc``, ``compressed_size``, ``uncompressed_size``,
    ``extra`` (central directory only) and ``offset``.
    """
    out = b""
    central_directory = b""
    for record in records:
        data = record.get("data", b"")
        fields = dict(
            flags=record.get("flags", 0),
            compression=record.get("compression", 0),
            crc32=record.get("crc", zlib.crc32(data)),
            compressed_size=record.get("compressed_size", len(data)),
            uncompressed_size=record.get("uncompressed_size", len(data)),
            filename=record["name"],
        )
        offset = len(out)
        out += LocalFileHeader(**fields).to_bytes() + data
        central_directory += CentralDirectoryHeader(
            **fields,
            extra=record.get("extra", b""),
            local_header_offset=record.get("offset", offset),
        ).to_bytes()

    eocdr = bytearray(
        EndOfCentralDirectory(
            disk_number=disk_number,
            entries_on_disk=len(records),
            total_entries=len(records),
            cd_size=len(central_directory),
            cd_offset=len(out),
            comment=comment,
        ).to_bytes()
    )
    if comment_length is not None:
        struct.pack_into("<H", eocdr, 20, comment_length)
    return out + central_directory + bytes(eocdr)


def open_crafted(records, options=None, **kwargs):
    return ZipReader.from_file(io.BytesIO(craft_archive(records, **kwargs)), options)


class TestEnumeration:
    """Tests for reading entries."""

    def test_roundtrip(self, written_archive):
        archive_path, expected = written_archive
        contents = {}

        with ZipReader.open(archive_path) as zf:
            assert zf.entry_count == 4
            assert zf.comment == "hello ░"
            for entry in zf:
                with zf.open_read_stream(entry) as stream:
                    contents[entry.file_name] = stream.read()
                assert entry.crc32 == zlib.crc32(contents[entry.file_name])

        assert contents == expected

    def test_order_preserved(self, written_archive):
        archive_path, expected = written_archive
        with ZipReader.open(archive_path) as zf:
            assert [entry.file_name for entry in zf] == list(expected)

    def test_entry_metadata(self, written_archive):
        archive_path, _ = written_archive
        with ZipReader.open(archive_path) as zf:
            entries = {entry.file_name: entry for entry in zf}

        directory = entries["data/empty/"]
        assert directory.is_directory
        assert directory.mode == 0o40775
        assert not directory.is_compressed()

        stored = entries["stored.txt"]
        assert not stored.is_directory
        assert not stored.is_compressed()
        assert not stored.is_encrypted()
        assert stored.mode == 0o100664
        assert stored.version_made_by == (3 << 8) | 63
        assert isinstance(stored.last_modified(), datetime)

        assert entries["stream.txt"].is_compressed()

    def test_reads_stdlib_archive(self, temp_dir):
        archive_path = temp_dir / "stdlib.zip"
        with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf_std:
            zf_std.writestr("a.txt", "alpha" * 100)
            zf_std.writestr("dir/", "")
            zf_std.writestr(zipfile.ZipInfo("b.bin", (2001, 2, 3, 4, 5, 6)), b"\x00\x01" * 10)
            zf_std.comment = b"stdlib comment"

        with ZipReader.open(archive_path) as zf:
            assert zf.comment == "stdlib comment"
            found = {}
            for entry in zf:
                if not entry.is_directory:
                    with zf.open_read_stream(entry) as stream:
                        found[entry.file_name] = (stream.read(), entry.last_modified())

        assert found["a.txt"][0] == b"alpha" * 100
        assert found["b.bin"] == (b"\x00\x01" * 10, datetime(2001, 2, 3, 4, 5, 6))

    def test_empty_archive(self, temp_dir):
        archive_path = temp_dir / "empty.zip"
        with ZipWriter(archive_path):
            pass

        with ZipReader.open(archive_path) as zf:
            assert list(zf) == []
            assert not zf.is_open

    def test_forced_zip64(self, temp_dir):
        archive_path = temp_dir / "zip64.zip"
        with ZipWriter(archive_path) as zf:
            zf.add_buffer(b"first", "first.txt", force_zip64=True)
            zf.add_stream(io.BytesIO(b"second" * 100), "second.txt", force_zip64=True)
            zf.add_buffer(b"third", "third.txt")
            zf.end(force_zip64=True)

        contents = {}
        with ZipReader.open(archive_path) as zf:
            assert zf.entry_count == 3
            for entry in zf:
                with zf.open_read_stream(entry) as stream:
                    contents[entry.file_name] = stream.read()

        assert contents == {
            "first.txt": b"first",
            "second.txt": b"second" * 100,
            "third.txt": b"third",
        }

    def test_cp437_names(self):
        zf = open_crafted([{"name": b"\x80\xb0.txt", "data": b"x"}])
        assert [entry.file_name for entry in zf] == ["Ç░.txt"]

    def test_utf8_names(self):
        zf = open_crafted([{"name": "日本語.txt".encode(), "flags": 0x800}])
        assert [entry.file_name for entry in zf] == ["日本語.txt"]

    def test_decode_strings_disabled(self):
        options = ReaderOptions(decode_strings=False)
        zf = open_crafted(
            [{"name": b"/abs\\path", "data": b"x"}], options, comment=b"\x80"
        )
        assert zf.comment == b"\x80"
        assert [entry.file_name for entry in zf] == [b"/abs\\path"]


class TestLifecycle:
    """Tests for lazy mode, auto-close and descriptor lifetime."""

    def test_lazy_entries(self, written_archive):
        archive_path, expected = written_archive
        zf = ZipReader.open(archive_path, ReaderOptions(lazy_entries=True))

        names = []
        while True:
            entry = zf.read_entry()
            if entry is None:
                break
            names.append(entry.file_name)

        assert names == list(expected)
        assert zf.read_entry() is None
        assert not zf.is_open

    def test_read_entry_requires_lazy_mode(self, written_archive):
        archive_path, _ = written_archive
        with ZipReader.open(archive_path) as zf:
            with pytest.raises(ZipCodecError, match="lazy_entries"):
                zf.read_entry()

    def test_auto_close_after_last_entry(self, written_archive):
        archive_path, _ = written_archive
        zf = ZipReader.open(archive_path)
        shared = zf._shared

        entries = list(zf)

        assert len(entries) == 4
        assert not zf.is_open
        assert shared.closed
        with pytest.raises(ZipCodecError, match="closed"):
            zf.open_read_stream(entries[0])

    def test_open_stream_keeps_file_open(self, written_archive):
        archive_path, expected = written_archive
        zf = ZipReader.open(archive_path)
        shared = zf._shared

        streams = [zf.open_read_stream(entry) for entry in zf]

        assert not zf.is_open
        assert not shared.closed
        for stream, name in zip(streams, expected):
            assert stream.read() == expected[name]
            stream.close()
        assert shared.closed

    def test_no_auto_close(self, written_archive):
        archive_path, expected = written_archive
        zf = ZipReader.open(archive_path, ReaderOptions(auto_close=False))

        entries = list(zf)
        assert zf.is_open

        with zf.open_read_stream(entries[1]) as stream:
            assert stream.read() == expected["stored.txt"]

        shared = zf._shared
        zf.close()
        zf.close()
        assert shared.closed

    def test_unreadable_archive_closes_file(self):
        fileobj = io.BytesIO(b"not a zip file at all" * 10)
        with pytest.raises(FormatError, match="signature not found"):
            ZipReader.from_file(fileobj)
        assert fileobj.closed

    def test_tiny_file(self):
        with pytest.raises(FormatError, match="signature not found"):
            ZipReader.from_file(io.BytesIO(b"PK"))

    def test_fatal_error_is_sticky(self):
        zf = open_crafted(
            [{"name": b"ok.txt"}, {"name": b"/etc/passwd"}, {"name": b"later.txt"}],
            ReaderOptions(lazy_entries=True),
        )
        shared = zf._shared

        assert zf.read_entry().file_name == "ok.txt"
        with pytest.raises(FormatError, match="absolute path") as first:
            zf.read_entry()
        with pytest.raises(FormatError) as second:
            zf.read_entry()

        assert second.value is first.value
        assert shared.closed


class TestMalformedArchives:
    """Tests for structural validation."""

    def test_multi_disk(self):
        with pytest.raises(FormatError, match="multi-disk"):
            open_crafted([{"name": b"a.txt"}], disk_number=1)

    def test_comment_length_mismatch(self):
        with pytest.raises(FormatError, match="invalid comment length"):
            open_crafted([{"name": b"a.txt"}], comment=b"abc", comment_length=2)

    def test_strong_encryption(self):
        zf = open_crafted([{"name": b"a.txt", "flags": 0x41}])
        with pytest.raises(FormatError, match="strong encryption"):
            list(zf)

    def test_bad_central_directory_signature(self):
        data = bytearray(craft_archive([{"name": b"a.txt"}]))
        cd_offset = struct.unpack_from("<I", data, len(data) - 6)[0]
        data[cd_offset : cd_offset + 4] = b"XXXX"
        zf = ZipReader.from_file(io.BytesIO(bytes(data)))
        with pytest.raises(FormatError, match="central directory file header signature"):
            list(zf)

    def test_stored_size_mismatch(self):
        record = {"name": b"a.txt", "data": b"0123456789", "uncompressed_size": 5}
        with pytest.raises(FormatError, match="size mismatch for stored file"):
            list(open_crafted([record]))

        entries = list(open_crafted([record], ReaderOptions(validate_entry_sizes=False)))
        assert entries[0].compressed_size == 10

    def test_encrypted_stored_size(self):
        record = {"name": b"a.txt", "data": b"\x00" * 17, "flags": 0x01, "uncompressed_size": 5}
        (entry,) = list(open_crafted([record]))
        assert entry.is_encrypted()

    def test_backslashes_normalized(self):
        zf = open_crafted([{"name": b"dir\\file.txt"}])
        assert [entry.file_name for entry in zf] == ["dir/file.txt"]

    def test_backslashes_strict(self):
        zf = open_crafted([{"name": b"dir\\file.txt"}], ReaderOptions(strict_file_names=True))
        with pytest.raises(FormatError, match="invalid characters"):
            list(zf)

    @pytest.mark.parametrize(
        "name,message",
        [
            (b"/etc/passwd", "absolute path"),
            (b"C:/Windows/evil.dll", "absolute path"),
            (b"../../evil", "invalid relative path"),
            (b"a/../../evil", "invalid relative path"),
        ],
    )
    def test_unsafe_names(self, name, message):
        with pytest.raises(FormatError, match=message):
            list(open_crafted([{"name": name}]))

    def test_missing_zip64_extra(self):
        zf = open_crafted([{"name": b"a.bin", "compression": 8, "uncompressed_size": 0xFFFFFFFF}])
        with pytest.raises(FormatError, match="expected zip64 extended information"):
            list(zf)

    def test_short_zip64_extra(self):
        extra = ExtraField(0x0001, struct.pack("<Q", 100)).to_bytes()
        record = {
            "name": b"a.bin",
            "compression": 8,
            "uncompressed_size": 0xFFFFFFFF,
            "compressed_size": 0xFFFFFFFF,
            "extra": extra,
        }
        with pytest.raises(BoundsError, match="does not include compressed size"):
            list(open_crafted([record]))

    def test_overflowing_extra_field(self):
        record = {"name": b"a.bin", "extra": struct.pack("<HH", 0x5455, 50) + b"\x00"}
        with pytest.raises(BoundsError, match="extra field length exceeds"):
            list(open_crafted([record]))


class TestUnicodePathExtra:
    """Tests for the Info-ZIP Unicode Path extra field (0x7075)."""

    def unicode_extra(self, raw_name, new_name, version=1, crc=None):
        if crc is None:
            crc = crc32_from_table(raw_name)
        data = bytes([version]) + struct.pack("<I", crc) + new_name.encode("utf-8")
        return ExtraField(0x7075, data).to_bytes()

    def test_overrides_name(self):
        zf = open_crafted([{"name": b"old.txt", "extra": self.unicode_extra(b"old.txt", "новый.txt")}])
        assert [entry.file_name for entry in zf] == ["новый.txt"]

    def test_crc_mismatch_ignored(self):
        extra = self.unicode_extra(b"old.txt", "новый.txt", crc=0x12345678)
        zf = open_crafted([{"name": b"old.txt", "extra": extra}])
        assert [entry.file_name for entry in zf] == ["old.txt"]

    def test_unknown_version_ignored(self):
        extra = self.unicode_extra(b"old.txt", "новый.txt", version=2)
        zf = open_crafted([{"name": b"old.txt", "extra": extra}])
        assert [entry.file_name for entry in zf] == ["old.txt"]

    def test_invalid_utf8_is_fatal(self):
        extra = ExtraField(0x7075, b"\x01" + struct.pack("<I", crc32_from_table(b"a.txt")) + b"\xff")
        zf = open_crafted(
            [{"name": b"a.txt", "extra": extra.to_bytes()}, {"name": b"b.txt"}],
            ReaderOptions(lazy_entries=True),
        )
        shared = zf._shared

        with pytest.raises(FormatError, match="invalid UTF-8 in unicode path") as first:
            zf.read_entry()
        # The bad entry is not skipped: the same error comes back
        with pytest.raises(FormatError) as second:
            zf.read_entry()

        assert second.value is first.value
        assert not zf.is_open
        assert shared.closed

    def test_unsafe_override_rejected(self):
        extra = self.unicode_extra(b"safe.txt", "../escape.txt")
        with pytest.raises(FormatError, match="invalid relative path"):
            list(open_crafted([{"name": b"safe.txt", "extra": extra}]))


class TestOpenReadStream:
    """Tests for opening entry data."""

    def open_single(self, record, **reader_options):
        zf = open_crafted([record], ReaderOptions(auto_close=False, **reader_options))
        (entry,) = zf
        return zf, entry

    def read_single(self, record, reader_options=None, **stream_options):
        zf, entry = self.open_single(record, **(reader_options or {}))
        with zf.open_read_stream(entry, **stream_options) as stream:
            return stream.read()

    def test_deflated(self):
        data = b"hello hello hello" * 100
        record = {"name": b"a.txt", "data": raw_deflate(data), "compression": 8,
                  "crc": zlib.crc32(data), "uncompressed_size": len(data)}
        assert self.read_single(record) == data

    def test_raw_compressed_bytes(self):
        data = b"hello hello hello" * 100
        compressed = raw_deflate(data)
        record = {"name": b"a.txt", "data": compressed, "compression": 8,
                  "crc": zlib.crc32(data), "uncompressed_size": len(data)}
        assert self.read_single(record, decompress=False) == compressed
        assert self.read_single(record, decompress=False, start=2, end=10) == compressed[2:10]

    def test_stored_range(self):
        record = {"name": b"a.txt", "data": b"0123456789"}
        assert self.read_single(record, start=3) == b"3456789"
        assert self.read_single(record, end=4) == b"0123"
        assert self.read_single(record, start=2, end=5) == b"234"
        assert self.read_single(record, start=5, end=5) == b""

    def test_crc_mismatch(self):
        record = {"name": b"a.txt", "data": b"payload", "crc": 0xDEADBEEF}
        with pytest.raises(IntegrityError, match="CRC32 mismatch for 'a.txt'"):
            self.read_single(record)

    def test_uncompressed_size_mismatch(self):
        record = {"name": b"a.txt", "data": raw_deflate(b"hello"), "compression": 8,
                  "crc": zlib.crc32(b"hello"), "uncompressed_size": 4}
        with pytest.raises(ConsistencyError, match="too many bytes"):
            self.read_single(record)
        # Without size validation the data comes through
        assert self.read_single(record, {"validate_entry_sizes": False}) == b"hello"

    def test_truncated_deflate(self):
        data = os.urandom(5000)
        compressed = raw_deflate(data)[:-100]
        record = {"name": b"a.bin", "data": compressed, "compression": 8,
                  "crc": zlib.crc32(data), "uncompressed_size": len(data)}
        with pytest.raises(FormatError):
            self.read_single(record)

    def test_encrypted_entry(self):
        record = {"name": b"a.txt", "data": b"\xaa" * 17, "flags": 0x01, "uncompressed_size": 5}
        zf, entry = self.open_single(record)
        with pytest.raises(FormatError, match="encrypted"):
            zf.open_read_stream(entry)
        with zf.open_read_stream(entry, decrypt=False) as stream:
            assert stream.read() == b"\xaa" * 17

    def test_unsupported_compression(self):
        zf, entry = self.open_single(
            {"name": b"a.bz2", "data": b"BZh9", "compression": 12, "uncompressed_size": 100}
        )
        with pytest.raises(FormatError, match="unsupported compression method: 12"):
            zf.open_read_stream(entry)

    def test_data_overflows_file(self):
        zf, entry = self.open_single(
            {"name": b"a.bin", "compression": 8, "compressed_size": 100_000, "uncompressed_size": 100_000}
        )
        with pytest.raises(BoundsError, match="overflows file bounds"):
            zf.open_read_stream(entry)

    def test_bad_local_header(self):
        zf, entry = self.open_single({"name": b"a.txt", "data": b"abc", "offset": 3})
        with pytest.raises(FormatError, match="Invalid local file header signature"):
            zf.open_read_stream(entry)

    @pytest.mark.parametrize(
        "record,options,message",
        [
            ({"name": b"a"}, {"decompress": True}, "only be specified for compressed"),
            ({"name": b"a"}, {"decrypt": False}, "only be specified for encrypted"),
            ({"name": b"a", "data": b"\x03\x00", "compression": 8, "uncompressed_size": 0},
             {"start": 1}, "range not allowed for compressed"),
            ({"name": b"a", "data": b"abcdefghijkl", "flags": 1},
             {"decrypt": False, "start": 13}, "start > entry.compressed_size"),
            ({"name": b"a", "data": b"abc"}, {"start": -1}, "start < 0"),
            ({"name": b"a", "data": b"abc"}, {"end": 4}, "end > entry.compressed_size"),
            ({"name": b"a", "data": b"abc"}, {"start": 2, "end": 1}, "end < start"),
        ],
    )
    def test_invalid_options(self, record, options, message):
        zf, entry = self.open_single(record, validate_entry_sizes=False)
        with pytest.raises(ValueError, match=message):
            zf.open_read_stream(entry, **options)

    def test_stream_interface(self, written_archive):
        archive_path, expected = written_archive
        with ZipReader.open(archive_path, ReaderOptions(auto_close=False)) as zf:
            entries = {entry.file_name: entry for entry in zf}
            with zf.open_read_stream(entries["stream.txt"]) as stream:
                assert stream.readable()
                assert stream.read(0) == b""
                buffer = bytearray(7)
                assert stream.readinto(buffer) == 7
                assert bytes(buffer) == b"streame"
                assert stream.read(2) == b"d "
                rest = stream.read()
            assert b"streamed " + rest == expected["stream.txt"]
            with pytest.raises(ValueError):
                stream.read()

            # Buffered wrappers work on top of the raw stream
            with io.BufferedReader(zf.open_read_stream(entries["data/source.bin"])) as buffered:
                assert buffered.read() == expected["data/source.bin"]
