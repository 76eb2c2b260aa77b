"""Streaming ZIP archive writer."""

from __future__ import annotations

import logging
import stat as stat_module
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import BinaryIO, Callable

from . import cp437
from .crc32 import crc32
from .exceptions import ConsistencyError, ZipCodecError
from .pipeline import (
    ByteCounter,
    Crc32Watcher,
    FunctionSink,
    chain,
    compressor_for,
    pump,
)
from .structures import (
    EOCDR_SIGNATURE_BYTES,
    ZIP64_COUNT_LIMIT,
    ZIP64_LIMIT,
    CentralDirectoryHeader,
    Compression,
    DataDescriptor,
    EndOfCentralDirectory,
    GeneralPurposeFlag,
    LocalFileHeader,
    VERSION_NEEDED_UTF8,
    VERSION_NEEDED_ZIP64,
    Zip64EndOfCentralDirectory,
    Zip64EndOfCentralDirectoryLocator,
    Zip64ExtendedInfo,
)
from .utils import dos_datetime, validate_metadata_path

logger = logging.getLogger(__name__)

# Largest in-memory buffer accepted by add_buffer
MAX_BUFFER_LENGTH = 0x3FFFFFFF

# Returned by calculate_final_size when compression makes the size unpredictable
FINAL_SIZE_UNKNOWN = -1

# Largest value that still fits a 32-bit field without the ZIP64 placeholder
_MAX_32 = ZIP64_LIMIT - 1

# Local header ZIP64 extra: tag, size, uncompressed size, compressed size
_LOCAL_ZIP64_EXTRA_SIZE = 20

DEFAULT_FILE_MODE = 0o100664
DEFAULT_DIRECTORY_MODE = 0o40775


class EntryState(IntEnum):
    """Where an entry is in the write sequence."""

    WAITING_FOR_METADATA = 0
    READY_TO_PUMP_FILE_DATA = 1
    FILE_DATA_IN_PROGRESS = 2
    FILE_DATA_DONE = 3


class Entry:
    """An archive member being written.

    CRC-32 and sizes are filled in as the data is pumped. When they are not
    known by the time the local file header is written, the header carries
    zeroes, general purpose bit 3 is set and a data descriptor follows the
    data.
    """

    def __init__(
        self,
        metadata_path: str,
        is_directory: bool = False,
        *,
        mtime: float | datetime | None = None,
        mode: int | None = None,
        compress: bool = True,
        force_zip64: bool = False,
        file_comment: str | bytes | None = None,
    ) -> None:
        self.metadata_path = metadata_path
        self.utf8_file_name = metadata_path.encode("utf-8")
        self.is_directory = is_directory
        self.state = EntryState.WAITING_FOR_METADATA

        self.crc_and_file_size_known = is_directory
        self.crc32 = 0
        self.uncompressed_size: int | None = 0 if is_directory else None
        self.compressed_size: int | None = 0 if is_directory else None
        self.compress = compress and not is_directory
        self.force_zip64 = force_zip64
        self.local_header_offset = 0

        self.set_last_mod_date(mtime)
        if mode is None:
            mode = DEFAULT_DIRECTORY_MODE if is_directory else DEFAULT_FILE_MODE
        self.set_file_attributes_mode(mode)

        if isinstance(file_comment, str):
            file_comment = file_comment.encode("utf-8")
        self.file_comment = file_comment or b""
        if len(self.file_comment) > 0xFFFF:
            raise ZipCodecError("fileComment is too large")

        self._pump: Callable[[], None] | None = None

    def set_last_mod_date(self, mtime: float | datetime | None) -> None:
        self.mod_time, self.mod_date = dos_datetime(mtime)

    def set_file_attributes_mode(self, mode: int) -> None:
        if mode & 0xFFFF != mode:
            raise ValueError(f"invalid mode. expected: 0 <= {mode} <= {0xFFFF}")
        self.external_attr = mode << 16

    def set_file_data_pump_function(self, pump_function: Callable[[], None]) -> None:
        self._pump = pump_function
        self.state = EntryState.READY_TO_PUMP_FILE_DATA

    def pump(self) -> None:
        assert self._pump is not None
        self._pump()

    @property
    def compression_method(self) -> int:
        return Compression.DEFLATED if self.compress else Compression.STORED

    def use_zip64_format(self) -> bool:
        return (
            self.force_zip64
            or (self.uncompressed_size is not None and self.uncompressed_size > _MAX_32)
            or (self.compressed_size is not None and self.compressed_size > _MAX_32)
            or self.local_header_offset > _MAX_32
        )

    def _flags(self) -> int:
        flags = GeneralPurposeFlag.UTF8
        if not self.crc_and_file_size_known:
            flags |= GeneralPurposeFlag.DATA_DESCRIPTOR
        return flags

    def get_local_file_header(self) -> bytes:
        crc = compressed_size = uncompressed_size = 0
        if self.crc_and_file_size_known:
            crc = self.crc32
            compressed_size = self.compressed_size or 0
            uncompressed_size = self.uncompressed_size or 0

        if not self.use_zip64_format():
            return LocalFileHeader(
                version_needed=VERSION_NEEDED_UTF8,
                flags=self._flags(),
                compression=self.compression_method,
                mod_time=self.mod_time,
                mod_date=self.mod_date,
                crc32=crc,
                compressed_size=compressed_size,
                uncompressed_size=uncompressed_size,
                filename=self.utf8_file_name,
            ).to_bytes()

        # ZIP64 local headers must carry both sizes in the extra field.
        extra = Zip64ExtendedInfo(
            uncompressed_size=uncompressed_size,
            compressed_size=compressed_size,
        ).to_bytes()
        return LocalFileHeader(
            version_needed=VERSION_NEEDED_ZIP64,
            flags=self._flags(),
            compression=self.compression_method,
            mod_time=self.mod_time,
            mod_date=self.mod_date,
            crc32=crc,
            compressed_size=ZIP64_LIMIT,
            uncompressed_size=ZIP64_LIMIT,
            filename=self.utf8_file_name,
            extra=extra,
        ).to_bytes()

    def get_data_descriptor(self) -> bytes:
        if self.crc_and_file_size_known:
            # The Mac Archive Utility requires this not be present unless bit 3 is set
            return b""
        return DataDescriptor(
            crc32=self.crc32,
            compressed_size=self.compressed_size or 0,
            uncompressed_size=self.uncompressed_size or 0,
            zip64=self.use_zip64_format(),
        ).to_bytes()

    def get_central_directory_record(self) -> bytes:
        compressed_size = self.compressed_size or 0
        uncompressed_size = self.uncompressed_size or 0
        local_header_offset = self.local_header_offset

        if self.use_zip64_format():
            extra = Zip64ExtendedInfo(
                uncompressed_size=uncompressed_size,
                compressed_size=compressed_size,
                local_header_offset=local_header_offset,
            ).to_bytes()
            version_needed = VERSION_NEEDED_ZIP64
            compressed_size = uncompressed_size = local_header_offset = ZIP64_LIMIT
        else:
            extra = b""
            version_needed = VERSION_NEEDED_UTF8

        return CentralDirectoryHeader(
            version_needed=version_needed,
            flags=self._flags(),
            compression=self.compression_method,
            mod_time=self.mod_time,
            mod_date=self.mod_date,
            crc32=self.crc32,
            compressed_size=compressed_size,
            uncompressed_size=uncompressed_size,
            external_attr=self.external_attr,
            local_header_offset=local_header_offset,
            filename=self.utf8_file_name,
            extra=extra,
            comment=self.file_comment,
        ).to_bytes()


class ZipWriter:
    """
    Write a ZIP archive to a file or binary stream, one entry at a time.

    Entry data is streamed through a CRC/size/compression pipeline, so no
    entry is ever held in memory in full (except buffers handed to
    ``add_buffer``). ZIP64 records are emitted per entry and for the archive
    only when 32-bit fields would overflow, or when forced.

    Example:
        >>> with ZipWriter("backup.zip") as zf:
        ...     zf.add_file("notes.txt", "docs/notes.txt")
        ...     zf.add_buffer(b"Hello, world!", "hello.txt")
        ...     zf.add_empty_directory("empty")

    Attributes:
        compresslevel: DEFLATE compression level (1-9).
    """

    def __init__(
        self,
        output: str | Path | BinaryIO,
        compresslevel: int = 6,
        on_progress: Callable[[str, int, int], None] | None = None,
    ) -> None:
        """
        Initialize a ZIP writer.

        Args:
            output: Path for the archive, or a writable binary stream.
                Streams are flushed but not closed when the archive is done.
            compresslevel: DEFLATE compression level 1-9 (default 6).
            on_progress: Callback for progress updates.
                Receives (metadata_path, bytes_done, total_bytes); total is 0
                when the size is not known in advance.
        """
        if isinstance(output, (str, Path)):
            self.path: Path | None = Path(output)
            self._output: BinaryIO = self.path.open("wb")  # noqa: SIM115
            self._owns_output = True
        else:
            self.path = None
            self._output = output
            self._owns_output = False

        self.compresslevel = compresslevel
        self.on_progress = on_progress

        self.entries: list[Entry] = []
        self.output_cursor = 0
        self.ended = False
        self.all_done = False
        self.force_zip64_eocd = False
        self.comment = b""
        self.offset_of_start_of_central_directory = 0
        self._final_size_callback: Callable[[int], None] | None = None
        self._failed = False
        # Index of the first entry whose data is not yet written
        self._pump_cursor = 0

    def add_file(
        self,
        real_path: str | Path,
        metadata_path: str,
        *,
        mtime: float | datetime | None = None,
        mode: int | None = None,
        compress: bool = True,
        force_zip64: bool = False,
        file_comment: str | bytes | None = None,
    ) -> None:
        """
        Add a file from disk.

        Size, modification time and mode come from the file unless given.

        Raises:
            FileNotFoundError: If the file does not exist.
            ZipCodecError: If the path is not a regular file.
        """
        self._check_open()
        metadata_path = validate_metadata_path(metadata_path, is_directory=False)
        real_path = Path(real_path)
        entry = Entry(
            metadata_path,
            mtime=mtime,
            mode=mode,
            compress=compress,
            force_zip64=force_zip64,
            file_comment=file_comment,
        )
        self.entries.append(entry)

        try:
            stat = real_path.stat()
            if not stat_module.S_ISREG(stat.st_mode):
                raise ZipCodecError(f"not a file: {real_path}")
        except BaseException:
            self.entries.remove(entry)
            raise

        entry.uncompressed_size = stat.st_size
        if mtime is None:
            entry.set_last_mod_date(stat.st_mtime)
        if mode is None:
            entry.set_file_attributes_mode(stat.st_mode & 0xFFFF)

        def pump_file() -> None:
            entry.state = EntryState.FILE_DATA_IN_PROGRESS
            with real_path.open("rb") as f:
                self._pump_file_data_stream(entry, f)

        entry.set_file_data_pump_function(pump_file)
        logger.debug("Added file %s as %s", real_path, metadata_path)
        self._pump_entries()

    def add_stream(
        self,
        stream: BinaryIO,
        metadata_path: str,
        *,
        size: int | None = None,
        mtime: float | datetime | None = None,
        mode: int | None = None,
        compress: bool = True,
        force_zip64: bool = False,
        file_comment: str | bytes | None = None,
    ) -> None:
        """
        Add data read from a binary stream until EOF.

        Args:
            size: Expected number of bytes, if known. A stream yielding a
                different number of bytes is a fatal error.
        """
        self._check_open()
        metadata_path = validate_metadata_path(metadata_path, is_directory=False)
        entry = Entry(
            metadata_path,
            mtime=mtime,
            mode=mode,
            compress=compress,
            force_zip64=force_zip64,
            file_comment=file_comment,
        )
        entry.uncompressed_size = size
        self.entries.append(entry)

        def pump_stream() -> None:
            entry.state = EntryState.FILE_DATA_IN_PROGRESS
            self._pump_file_data_stream(entry, stream)

        entry.set_file_data_pump_function(pump_stream)
        logger.debug("Added stream as %s", metadata_path)
        self._pump_entries()

    def add_buffer(
        self,
        data: bytes,
        metadata_path: str,
        *,
        mtime: float | datetime | None = None,
        mode: int | None = None,
        compress: bool = True,
        force_zip64: bool = False,
        file_comment: str | bytes | None = None,
    ) -> None:
        """
        Add an in-memory buffer.

        CRC and sizes are computed before the local file header is written,
        so no data descriptor is needed.

        Raises:
            ZipCodecError: If the buffer exceeds MAX_BUFFER_LENGTH.
        """
        self._check_open()
        metadata_path = validate_metadata_path(metadata_path, is_directory=False)
        if len(data) > MAX_BUFFER_LENGTH:
            raise ZipCodecError(f"buffer too large: {len(data)} > {MAX_BUFFER_LENGTH}")

        entry = Entry(
            metadata_path,
            mtime=mtime,
            mode=mode,
            compress=compress,
            force_zip64=force_zip64,
            file_comment=file_comment,
        )
        entry.uncompressed_size = len(data)
        entry.crc32 = crc32(data)
        entry.crc_and_file_size_known = True
        self.entries.append(entry)

        chunks: list[bytes] = []
        head = chain(compressor_for(entry.compress, self.compresslevel), FunctionSink(chunks.append))
        head.write(data)
        head.close()
        compressed = b"".join(chunks)
        entry.compressed_size = len(compressed)

        def pump_buffer() -> None:
            entry.state = EntryState.FILE_DATA_IN_PROGRESS
            self._write_to_output(compressed)
            self._write_to_output(entry.get_data_descriptor())
            entry.state = EntryState.FILE_DATA_DONE
            self._report_progress(entry, len(data), len(data))

        entry.set_file_data_pump_function(pump_buffer)
        logger.debug("Added %d byte buffer as %s", len(data), metadata_path)
        self._pump_entries()

    def add_empty_directory(
        self,
        metadata_path: str,
        *,
        mtime: float | datetime | None = None,
        mode: int | None = None,
    ) -> None:
        """Add a directory entry; a trailing slash is appended if missing."""
        self._check_open()
        metadata_path = validate_metadata_path(metadata_path, is_directory=True)
        entry = Entry(metadata_path, is_directory=True, mtime=mtime, mode=mode)
        self.entries.append(entry)

        def pump_directory() -> None:
            self._write_to_output(entry.get_data_descriptor())
            entry.state = EntryState.FILE_DATA_DONE

        entry.set_file_data_pump_function(pump_directory)
        logger.debug("Added directory %s", metadata_path)
        self._pump_entries()

    def end(
        self,
        *,
        comment: str | bytes | None = None,
        force_zip64: bool = False,
        final_size_callback: Callable[[int], None] | None = None,
    ) -> None:
        """
        Seal the archive.

        Once every entry has been written, the central directory and end of
        central directory records follow. Calling ``end`` again is a no-op.

        Args:
            comment: Archive comment. Strings are encoded as CP437.
            force_zip64: Always write the ZIP64 end of central directory records.
            final_size_callback: Receives the final archive size as soon as
                it can be calculated (``FINAL_SIZE_UNKNOWN`` if it cannot).

        Raises:
            ZipCodecError: If the comment is too large or contains the end of
                central directory signature.
        """
        if self.ended:
            return
        if self._failed:
            raise ZipCodecError("ZipWriter failed; the archive is incomplete")

        if comment:
            encoded = cp437.encode(comment) if isinstance(comment, str) else bytes(comment)
            if len(encoded) > EndOfCentralDirectory.MAX_COMMENT_SIZE:
                raise ZipCodecError("comment is too large")
            # The format is ambiguous if the comment could be mistaken for the record.
            if EOCDR_SIGNATURE_BYTES in encoded:
                raise ZipCodecError("comment contains end of central directory record signature")
            self.comment = encoded

        self.ended = True
        self.force_zip64_eocd = force_zip64
        self._final_size_callback = final_size_callback
        self._pump_entries()

    def close(self) -> None:
        """Finalize the archive if needed and release the output."""
        if self._failed:
            if self._owns_output:
                self._output.close()
        elif not self.ended:
            self.end()
        elif self._owns_output and not self._output.closed:
            self._output.close()

    def calculate_final_size(self) -> int | None:
        """
        Predict the size of the finished archive.

        Returns:
            The size in bytes; ``None`` while some entry still waits for its
            metadata; ``FINAL_SIZE_UNKNOWN`` when an entry is compressed or
            its size cannot be known before its data is read.
        """
        pretend_output_cursor = 0
        central_directory_size = 0
        for entry in self.entries:
            # compression is too hard to predict
            if entry.compress:
                return FINAL_SIZE_UNKNOWN
            if entry.state >= EntryState.READY_TO_PUMP_FILE_DATA:
                if entry.uncompressed_size is None:
                    return FINAL_SIZE_UNKNOWN
            elif entry.uncompressed_size is None:
                # still waiting for metadata; the size may become known
                return None

            size = entry.uncompressed_size
            use_zip64 = (
                entry.force_zip64 or size > _MAX_32 or pretend_output_cursor > _MAX_32
            )

            pretend_output_cursor += LocalFileHeader.FIXED_SIZE + len(entry.utf8_file_name)
            if use_zip64:
                pretend_output_cursor += _LOCAL_ZIP64_EXTRA_SIZE
            pretend_output_cursor += size
            if not entry.crc_and_file_size_known:
                pretend_output_cursor += (
                    DataDescriptor.ZIP64_SIZE if use_zip64 else DataDescriptor.SIZE
                )

            central_directory_size += (
                CentralDirectoryHeader.FIXED_SIZE
                + len(entry.utf8_file_name)
                + len(entry.file_comment)
            )
            if use_zip64:
                central_directory_size += Zip64ExtendedInfo.FULL_SIZE

        end_of_central_directory_size = 0
        if (
            self.force_zip64_eocd
            or len(self.entries) >= ZIP64_COUNT_LIMIT
            or central_directory_size >= ZIP64_LIMIT
            or pretend_output_cursor >= ZIP64_LIMIT
        ):
            end_of_central_directory_size += (
                Zip64EndOfCentralDirectory.FIXED_SIZE + Zip64EndOfCentralDirectoryLocator.FIXED_SIZE
            )
        end_of_central_directory_size += EndOfCentralDirectory.FIXED_SIZE + len(self.comment)
        return pretend_output_cursor + central_directory_size + end_of_central_directory_size

    def _pump_file_data_stream(self, entry: Entry, stream: BinaryIO) -> None:
        """Stream *stream* through CRC, counting and compression into the output."""
        crc32_watcher = Crc32Watcher()
        uncompressed_size_counter = ByteCounter()
        compressed_size_counter = ByteCounter()
        head = chain(
            crc32_watcher,
            uncompressed_size_counter,
            compressor_for(entry.compress, self.compresslevel),
            compressed_size_counter,
            FunctionSink(self._write_to_output),
        )

        total = entry.uncompressed_size or 0

        def on_chunk(_: int) -> None:
            self._report_progress(entry, uncompressed_size_counter.byte_count, total)

        pump(stream.read, head, on_chunk=on_chunk if self.on_progress else None)

        entry.crc32 = crc32_watcher.crc32
        if entry.uncompressed_size is None:
            entry.uncompressed_size = uncompressed_size_counter.byte_count
        elif entry.uncompressed_size != uncompressed_size_counter.byte_count:
            raise ConsistencyError(
                f"file data stream has unexpected number of bytes for '{entry.metadata_path}': "
                f"expected {entry.uncompressed_size}, got {uncompressed_size_counter.byte_count}",
                entry.uncompressed_size,
                uncompressed_size_counter.byte_count,
            )
        entry.compressed_size = compressed_size_counter.byte_count
        self._write_to_output(entry.get_data_descriptor())
        entry.state = EntryState.FILE_DATA_DONE

    def _pump_entries(self) -> None:
        if self.all_done:
            return

        if self.ended and self._final_size_callback is not None:
            final_size = self.calculate_final_size()
            if final_size is not None:
                callback, self._final_size_callback = self._final_size_callback, None
                callback(final_size)

        while self._pump_cursor < len(self.entries):
            entry = self.entries[self._pump_cursor]
            if entry.state == EntryState.FILE_DATA_DONE:
                self._pump_cursor += 1
                continue
            if entry.state < EntryState.READY_TO_PUMP_FILE_DATA:
                return  # metadata not known yet
            if entry.state == EntryState.FILE_DATA_IN_PROGRESS:
                return  # we'll get there
            entry.local_header_offset = self.output_cursor
            try:
                self._write_to_output(entry.get_local_file_header())
                entry.pump()
            except BaseException:
                self._failed = True
                raise

        if self.ended:
            self._write_central_directory()

    def _write_central_directory(self) -> None:
        self.offset_of_start_of_central_directory = self.output_cursor
        for entry in self.entries:
            self._write_to_output(entry.get_central_directory_record())
        self._write_to_output(self._get_end_of_central_directory_record())

        if self._owns_output:
            self._output.close()
        else:
            self._output.flush()
        self.all_done = True
        logger.info(
            "Wrote %d entries, %d bytes%s",
            len(self.entries),
            self.output_cursor,
            f" to {self.path}" if self.path else "",
        )

    def _get_end_of_central_directory_record(self) -> bytes:
        need_zip64_format = False

        normal_entries_length = len(self.entries)
        if self.force_zip64_eocd or len(self.entries) >= ZIP64_COUNT_LIMIT:
            normal_entries_length = ZIP64_COUNT_LIMIT
            need_zip64_format = True

        size_of_central_directory = self.output_cursor - self.offset_of_start_of_central_directory
        normal_size_of_central_directory = size_of_central_directory
        if self.force_zip64_eocd or size_of_central_directory >= ZIP64_LIMIT:
            normal_size_of_central_directory = ZIP64_LIMIT
            need_zip64_format = True

        normal_offset = self.offset_of_start_of_central_directory
        if self.force_zip64_eocd or self.offset_of_start_of_central_directory >= ZIP64_LIMIT:
            normal_offset = ZIP64_LIMIT
            need_zip64_format = True

        eocdr = EndOfCentralDirectory(
            entries_on_disk=normal_entries_length,
            total_entries=normal_entries_length,
            cd_size=normal_size_of_central_directory,
            cd_offset=normal_offset,
            comment=self.comment,
        ).to_bytes()

        if not need_zip64_format:
            return eocdr

        zip64_eocdr = Zip64EndOfCentralDirectory(
            entries_on_disk=len(self.entries),
            total_entries=len(self.entries),
            cd_size=size_of_central_directory,
            cd_offset=self.offset_of_start_of_central_directory,
        ).to_bytes()
        # The ZIP64 record starts at the current cursor.
        zip64_locator = Zip64EndOfCentralDirectoryLocator(
            zip64_eocd_offset=self.output_cursor,
        ).to_bytes()
        return zip64_eocdr + zip64_locator + eocdr

    def _write_to_output(self, data: bytes) -> None:
        if not data:
            return
        self._output.write(data)
        self.output_cursor += len(data)

    def _report_progress(self, entry: Entry, done: int, total: int) -> None:
        if self.on_progress:
            self.on_progress(entry.metadata_path, done, total)

    def _check_open(self) -> None:
        """Raise if the archive no longer accepts entries."""
        if self.ended:
            raise ZipCodecError("ZipWriter has ended; no more entries can be added")
        if self._failed:
            raise ZipCodecError("ZipWriter failed; the archive is incomplete")

    def __enter__(self) -> ZipWriter:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        if exc_type is not None:
            # Error path: release the output without writing the central directory
            self._failed = True
            if self._owns_output:
                self._output.close()
        else:
            self.close()
