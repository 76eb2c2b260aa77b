"""ZIP archive reader.

Entries are decoded one at a time from the central directory. File data is
read through streams that share one reference-counted descriptor, so an
archive can stay open exactly as long as something still reads from it.
"""

from __future__ import annotations

import io
import logging
import os
import struct
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Iterator

from . import cp437
from .crc32 import crc32_from_table
from .exceptions import BoundsError, FormatError, IntegrityError, ZipCodecError
from .fd import RangeReader, SharedFile
from .pipeline import (
    CHUNK_SIZE,
    AssertByteCount,
    ChunkQueue,
    Crc32Watcher,
    Stage,
    chain,
    decompressor_for,
)
from .structures import (
    CENTRAL_DIR_HEADER_SIG,
    END_OF_CENTRAL_DIR_SIG,
    UNICODE_PATH_EXTRA_ID,
    ZIP64_COUNT_LIMIT,
    ZIP64_EXTRA_ID,
    ZIP64_LIMIT,
    CentralDirectoryHeader,
    Compression,
    EndOfCentralDirectory,
    ExtraField,
    GeneralPurposeFlag,
    LocalFileHeader,
    Zip64EndOfCentralDirectory,
    Zip64EndOfCentralDirectoryLocator,
    Zip64ExtendedInfo,
    parse_extra_fields,
)
from .utils import dos_datetime_to_datetime, validate_file_name

logger = logging.getLogger(__name__)

# Largest possible end of central directory record: fixed part plus comment
_MAX_EOCDR_SEARCH = EndOfCentralDirectory.FIXED_SIZE + EndOfCentralDirectory.MAX_COMMENT_SIZE

# Traditional PKWARE encryption header preceding encrypted data
_ENCRYPTION_HEADER_SIZE = 12


@dataclass
class ReaderOptions:
    """Options for :class:`ZipReader`.

    Attributes:
        auto_close: Close the reader once every entry has been read or a
            fatal error occurs. Open entry streams keep the file open.
        lazy_entries: Entries are read only on explicit ``read_entry()``
            calls instead of by plain iteration.
        decode_strings: Decode names and comments to ``str`` (CP437 or
            UTF-8) and validate entry names. When False they stay ``bytes``.
        validate_entry_sizes: Check stored entry sizes and decompressed
            byte counts against the central directory.
        strict_file_names: Reject backslashes instead of turning them into
            forward slashes.
    """

    auto_close: bool = True
    lazy_entries: bool = False
    decode_strings: bool = True
    validate_entry_sizes: bool = True
    strict_file_names: bool = False


@dataclass
class Entry:
    """One central directory record, decoded."""

    file_name: str | bytes
    version_made_by: int = 0
    version_needed: int = 0
    flags: int = 0
    compression_method: int = Compression.STORED
    mod_time: int = 0
    mod_date: int = 0
    crc32: int = 0
    compressed_size: int = 0
    uncompressed_size: int = 0
    internal_attr: int = 0
    external_attr: int = 0
    local_header_offset: int = 0
    extra_fields: list[ExtraField] = field(default_factory=list)
    file_comment: str | bytes = ""

    def last_modified(self) -> datetime:
        return dos_datetime_to_datetime(self.mod_date, self.mod_time)

    def is_encrypted(self) -> bool:
        return bool(self.flags & GeneralPurposeFlag.ENCRYPTED)

    def is_compressed(self) -> bool:
        return self.compression_method == Compression.DEFLATED

    @property
    def is_directory(self) -> bool:
        name = self.file_name
        return name.endswith("/") if isinstance(name, str) else name.endswith(b"/")

    @property
    def mode(self) -> int:
        """Unix mode bits from the external attributes (0 if absent)."""
        return (self.external_attr >> 16) & 0xFFFF


class EntryStream(io.RawIOBase):
    """
    Readable view of one entry's data.

    Raw bytes are pulled from the archive on demand and pushed through the
    entry's decompression and validation stages.
    """

    def __init__(
        self,
        source: RangeReader,
        head: Stage,
        queue: ChunkQueue,
        crc_watcher: Crc32Watcher | None = None,
        expected_crc: int = 0,
        name: str | bytes = "",
    ) -> None:
        super().__init__()
        self._source = source
        self._head = head
        self._queue = queue
        self._crc_watcher = crc_watcher
        self._expected_crc = expected_crc
        self.name = name

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        if size is None or size < 0:
            return self.readall()
        if size == 0:
            return b""
        try:
            while not len(self._queue) and not self._queue.closed:
                chunk = self._source.read(CHUNK_SIZE)
                if chunk:
                    self._head.write(chunk)
                else:
                    self._head.close()
                    self._check_crc()
        except BaseException:
            self._source.close()
            raise
        if not len(self._queue):
            return b""
        return self._queue.pop(size)

    def readinto(self, buffer) -> int:
        data = self.read(len(buffer))
        buffer[: len(data)] = data
        return len(data)

    def close(self) -> None:
        self._source.close()
        super().close()

    def _check_crc(self) -> None:
        if self._crc_watcher is None:
            return
        actual = self._crc_watcher.crc32
        if actual != self._expected_crc:
            name = self.name if isinstance(self.name, str) else self.name.decode("utf-8", "replace")
            raise IntegrityError(self._expected_crc, actual, name)


class ZipReader:
    """
    Read a ZIP archive.

    Example:
        >>> with ZipReader.open("archive.zip") as zf:
        ...     for entry in zf:
        ...         with zf.open_read_stream(entry) as stream:
        ...             data = stream.read()

        >>> zf = ZipReader.open("archive.zip", ReaderOptions(lazy_entries=True))
        >>> entry = zf.read_entry()  # None once all entries are read

    With ``auto_close`` (the default) the reader closes itself after the
    last entry, so entry streams must be opened while iterating.

    Attributes:
        entry_count: Number of entries declared by the end of central directory.
        comment: Archive comment (``str`` when decoding strings, else ``bytes``).
        file_size: Size of the archive in bytes.
    """

    def __init__(
        self,
        shared: SharedFile,
        central_directory_offset: int,
        file_size: int,
        entry_count: int,
        comment: str | bytes,
        options: ReaderOptions,
    ) -> None:
        self._shared = shared
        self._shared.ref()
        self.options = options
        self.file_size = file_size
        self.entry_count = entry_count
        self.comment = comment
        self.entries_read = 0
        self.read_entry_cursor = central_directory_offset
        self.is_open = True
        self._ended = False
        self._error: BaseException | None = None

    @classmethod
    def open(cls, path: str | os.PathLike[str], options: ReaderOptions | None = None) -> ZipReader:
        """Open the archive at *path*.

        Raises:
            FileNotFoundError: If the file does not exist.
            FormatError: If no valid end of central directory record is found.
        """
        return cls._from_shared(SharedFile.open(path), options)

    @classmethod
    def from_file(cls, fileobj: BinaryIO, options: ReaderOptions | None = None) -> ZipReader:
        """Read an archive from a seekable binary file object."""
        return cls._from_shared(SharedFile(fileobj), options)

    @classmethod
    def _from_shared(cls, shared: SharedFile, options: ReaderOptions | None) -> ZipReader:
        options = options or ReaderOptions()
        # The temporary reference closes the file if the archive is unreadable.
        with shared.acquire():
            file_size = shared.size()
            return cls._find_end_of_central_directory(shared, file_size, options)

    @classmethod
    def _find_end_of_central_directory(
        cls, shared: SharedFile, file_size: int, options: ReaderOptions
    ) -> ZipReader:
        buffer_size = min(_MAX_EOCDR_SEARCH, file_size)
        buffer_read_start = file_size - buffer_size
        buffer = shared.read_exact_at(buffer_size, buffer_read_start)

        signature = struct.pack("<I", END_OF_CENTRAL_DIR_SIG)
        for i in range(buffer_size - EndOfCentralDirectory.FIXED_SIZE, -1, -1):
            if buffer[i : i + 4] != signature:
                continue
            eocdr = EndOfCentralDirectory.from_bytes(buffer[i:])

            if eocdr.disk_number != 0:
                raise FormatError(
                    f"multi-disk zip files are not supported: found disk number: {eocdr.disk_number}"
                )
            entry_count = eocdr.total_entries
            central_directory_offset = eocdr.cd_offset

            expected_comment_length = len(eocdr.comment)
            if eocdr.comment_length != expected_comment_length:
                raise FormatError(
                    f"invalid comment length. expected: {expected_comment_length}. "
                    f"found: {eocdr.comment_length}"
                )
            comment: str | bytes = (
                cp437.decode(eocdr.comment) if options.decode_strings else bytes(eocdr.comment)
            )

            if entry_count == ZIP64_COUNT_LIMIT or central_directory_offset == ZIP64_LIMIT:
                entry_count, central_directory_offset = cls._read_zip64_end_of_central_directory(
                    shared, buffer_read_start + i
                )

            logger.debug(
                "Found end of central directory: %d entries, central directory at %d",
                entry_count,
                central_directory_offset,
            )
            return cls(shared, central_directory_offset, file_size, entry_count, comment, options)

        raise FormatError("end of central directory record signature not found")

    @staticmethod
    def _read_zip64_end_of_central_directory(
        shared: SharedFile, eocdr_offset: int
    ) -> tuple[int, int]:
        locator_offset = eocdr_offset - Zip64EndOfCentralDirectoryLocator.FIXED_SIZE
        if locator_offset < 0:
            raise FormatError("cannot find zip64 end of central directory locator")
        locator = Zip64EndOfCentralDirectoryLocator.from_bytes(
            shared.read_exact_at(Zip64EndOfCentralDirectoryLocator.FIXED_SIZE, locator_offset)
        )
        record = Zip64EndOfCentralDirectory.from_bytes(
            shared.read_exact_at(Zip64EndOfCentralDirectory.FIXED_SIZE, locator.zip64_eocd_offset)
        )
        return record.total_entries, record.cd_offset

    def read_entry(self) -> Entry | None:
        """
        Read the next entry in lazy mode.

        Returns:
            The next entry, or None once every entry has been read.

        Raises:
            ZipCodecError: If the reader is not in lazy mode, or again on
                every call after a fatal error.
        """
        if not self.options.lazy_entries:
            raise ZipCodecError("read_entry() requires lazy_entries=True; iterate instead")
        return self._read_entry()

    def __iter__(self) -> Iterator[Entry]:
        while True:
            entry = self._read_entry()
            if entry is None:
                return
            yield entry

    def _read_entry(self) -> Entry | None:
        if self._error is not None:
            raise self._error
        if self.entries_read == self.entry_count:
            if not self._ended:
                self._ended = True
                if self.options.auto_close:
                    self.close()
            return None
        if not self.is_open:
            raise ZipCodecError("closed")

        try:
            return self._decode_next_entry()
        except Exception as e:
            self._fail(e)
            raise

    def _fail(self, error: BaseException) -> None:
        self._error = error
        logger.debug("Fatal error reading archive: %s", error)
        if self.options.auto_close:
            self.close()

    def _decode_next_entry(self) -> Entry:
        fixed = self._shared.read_exact_at(CentralDirectoryHeader.FIXED_SIZE, self.read_entry_cursor)
        (signature,) = struct.unpack_from("<I", fixed, 0)
        if signature != CENTRAL_DIR_HEADER_SIG:
            raise FormatError(f"invalid central directory file header signature: {signature:#010x}")

        variable = self._shared.read_exact_at(
            CentralDirectoryHeader.variable_length(fixed),
            self.read_entry_cursor + CentralDirectoryHeader.FIXED_SIZE,
        )
        record = CentralDirectoryHeader.from_bytes(fixed + variable)

        if record.flags & GeneralPurposeFlag.STRONG_ENCRYPTION:
            raise FormatError("strong encryption is not supported")

        is_utf8 = bool(record.flags & GeneralPurposeFlag.UTF8)
        entry = Entry(
            file_name=_decode_buffer(record.filename, is_utf8, self.options.decode_strings),
            version_made_by=record.version_made_by,
            version_needed=record.version_needed,
            flags=record.flags,
            compression_method=record.compression,
            mod_time=record.mod_time,
            mod_date=record.mod_date,
            crc32=record.crc32,
            compressed_size=record.compressed_size,
            uncompressed_size=record.uncompressed_size,
            internal_attr=record.internal_attr,
            external_attr=record.external_attr,
            local_header_offset=record.local_header_offset,
            extra_fields=parse_extra_fields(record.extra),
            file_comment=_decode_buffer(record.comment, is_utf8, self.options.decode_strings),
        )

        self.read_entry_cursor += record.total_size
        self.entries_read += 1

        self._apply_zip64_extra(entry)
        if self.options.decode_strings:
            self._apply_unicode_path_extra(entry, record.filename)

        if self.options.validate_entry_sizes and entry.compression_method == Compression.STORED:
            expected_compressed_size = entry.uncompressed_size
            if entry.is_encrypted():
                expected_compressed_size += _ENCRYPTION_HEADER_SIZE
            if entry.compressed_size != expected_compressed_size:
                raise FormatError(
                    f"compressed/uncompressed size mismatch for stored file: "
                    f"{entry.compressed_size} != {entry.uncompressed_size}"
                )

        if self.options.decode_strings:
            assert isinstance(entry.file_name, str)
            if not self.options.strict_file_names:
                entry.file_name = entry.file_name.replace("\\", "/")
            error_message = validate_file_name(entry.file_name)
            if error_message is not None:
                raise FormatError(error_message)

        return entry

    @staticmethod
    def _apply_zip64_extra(entry: Entry) -> None:
        need_uncompressed = entry.uncompressed_size == ZIP64_LIMIT
        need_compressed = entry.compressed_size == ZIP64_LIMIT
        need_offset = entry.local_header_offset == ZIP64_LIMIT
        if not (need_uncompressed or need_compressed or need_offset):
            return

        for extra in entry.extra_fields:
            if extra.id == ZIP64_EXTRA_ID:
                break
        else:
            raise FormatError("expected zip64 extended information extra field")

        info = Zip64ExtendedInfo.from_extra(extra.data, need_uncompressed, need_compressed, need_offset)
        if info.uncompressed_size is not None:
            entry.uncompressed_size = info.uncompressed_size
        if info.compressed_size is not None:
            entry.compressed_size = info.compressed_size
        if info.local_header_offset is not None:
            entry.local_header_offset = info.local_header_offset

    @staticmethod
    def _apply_unicode_path_extra(entry: Entry, raw_file_name: bytes) -> None:
        for extra in entry.extra_fields:
            if extra.id != UNICODE_PATH_EXTRA_ID:
                continue
            if len(extra.data) < 6:
                # too short to be meaningful
                continue
            if extra.data[0] != 1:
                # unknown version
                continue
            (name_crc32,) = struct.unpack_from("<I", extra.data, 1)
            if crc32_from_table(raw_file_name) != name_crc32:
                # the name was changed after the extra field was written
                continue
            try:
                entry.file_name = extra.data[5:].decode("utf-8")
            except UnicodeDecodeError as e:
                raise FormatError(f"invalid UTF-8 in unicode path extra field: {e}") from e
            break

    def open_read_stream(
        self,
        entry: Entry,
        *,
        decompress: bool | None = None,
        decrypt: bool | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> EntryStream:
        """
        Open a stream over an entry's data.

        Args:
            entry: An entry read from this archive.
            decompress: For compressed entries, False yields the raw DEFLATE
                bytes. Only valid for compressed entries.
            decrypt: Only ``False`` is supported, for encrypted entries, and
                yields the raw encrypted bytes.
            start: First byte of the raw data to read; requires raw access.
            end: End (exclusive) of the raw data to read; requires raw access.

        Returns:
            A readable binary stream. Fully decoded streams verify byte
            count and CRC-32 at the end of the data.

        Raises:
            ValueError: If the options are inconsistent with the entry.
            ZipCodecError: If the reader is closed.
            FormatError: If the entry is encrypted, uses an unsupported
                compression method or has a corrupt local file header.
            BoundsError: If the entry's data runs past the end of the file.
        """
        relative_start = 0
        relative_end = entry.compressed_size

        if decrypt is not None:
            if not entry.is_encrypted():
                raise ValueError("decrypt can only be specified for encrypted entries")
            if decrypt is not False:
                raise ValueError(f"invalid decrypt value: {decrypt!r}")
            if entry.is_compressed() and decompress is not False:
                raise ValueError("entry is encrypted and compressed, and decompress is not False")
        if decompress is not None:
            if not entry.is_compressed():
                raise ValueError("decompress can only be specified for compressed entries")
            if not isinstance(decompress, bool):
                raise ValueError(f"invalid decompress value: {decompress!r}")
        if start is not None or end is not None:
            if entry.is_compressed() and decompress is not False:
                raise ValueError("start/end range not allowed for compressed entry without decompress=False")
            if entry.is_encrypted() and decrypt is not False:
                raise ValueError("start/end range not allowed for encrypted entry without decrypt=False")
        if start is not None:
            relative_start = start
            if relative_start < 0:
                raise ValueError("start < 0")
            if relative_start > entry.compressed_size:
                raise ValueError("start > entry.compressed_size")
        if end is not None:
            relative_end = end
            if relative_end < 0:
                raise ValueError("end < 0")
            if relative_end > entry.compressed_size:
                raise ValueError("end > entry.compressed_size")
            if relative_end < relative_start:
                raise ValueError("end < start")

        if not self.is_open:
            raise ZipCodecError("closed")
        if entry.is_encrypted() and decrypt is not False:
            raise FormatError("entry is encrypted, and decrypt is not False")

        # Keep the descriptor open while the local file header is read.
        with self._shared.acquire():
            fixed = self._shared.read_exact_at(LocalFileHeader.FIXED_SIZE, entry.local_header_offset)
            # validates the signature
            LocalFileHeader.from_bytes(fixed)
            local_file_header_end = (
                entry.local_header_offset
                + LocalFileHeader.FIXED_SIZE
                + LocalFileHeader.variable_length(fixed)
            )

            if entry.compression_method == Compression.STORED:
                do_decompress = False
            elif entry.compression_method == Compression.DEFLATED:
                do_decompress = True if decompress is None else decompress
            else:
                raise FormatError(
                    f"unsupported compression method: {entry.compression_method}"
                )
            file_data_start = local_file_header_end
            file_data_end = file_data_start + entry.compressed_size
            if entry.compressed_size != 0 and file_data_end > self.file_size:
                raise BoundsError(
                    f"file data overflows file bounds: {file_data_start} + "
                    f"{entry.compressed_size} > {self.file_size}"
                )

            source = self._shared.create_read_stream(
                file_data_start + relative_start, file_data_start + relative_end
            )

        return self._build_stream(entry, source, do_decompress, partial=start is not None or end is not None)

    def _build_stream(
        self, entry: Entry, source: RangeReader, decompress: bool, partial: bool
    ) -> EntryStream:
        queue = ChunkQueue()
        stages: list[Stage] = [decompressor_for(decompress)]
        full_content = not partial and not entry.is_encrypted() and (
            decompress or not entry.is_compressed()
        )
        if decompress and self.options.validate_entry_sizes:
            stages.append(AssertByteCount(entry.uncompressed_size))
        crc_watcher = None
        if full_content:
            crc_watcher = Crc32Watcher()
            stages.append(crc_watcher)
        head = chain(*stages, queue)
        return EntryStream(
            source,
            head,
            queue,
            crc_watcher=crc_watcher,
            expected_crc=entry.crc32,
            name=entry.file_name,
        )

    def close(self) -> None:
        """Release the reader's reference; open entry streams keep the file open."""
        if not self.is_open:
            return
        self.is_open = False
        self._shared.unref()

    def __enter__(self) -> ZipReader:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()


def _decode_buffer(buffer: bytes, is_utf8: bool, decode_strings: bool) -> str | bytes:
    if not decode_strings:
        return bytes(buffer)
    if is_utf8:
        try:
            return buffer.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"invalid UTF-8 in entry name or comment: {e}") from e
    return cp437.decode(buffer)
