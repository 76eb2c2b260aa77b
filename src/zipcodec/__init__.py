"""
zipcodec - Read and write standard ZIP archives, streaming.

Archives are written entry by entry without ever holding an entry in
memory, with ZIP64 records added only where 32-bit fields overflow. They
read back with any standard tool.

Example:
    >>> import zipcodec
    >>>
    >>> # Pack a list of files
    >>> zipcodec.pack("hello.zip", [zipcodec.File("hello.txt", contents="Hello, world!")])
    >>>
    >>> # Stream entries for more control
    >>> with zipcodec.ZipWriter("backup.zip") as zf:
    ...     zf.add_file("notes.txt", "docs/notes.txt")
    ...     zf.add_empty_directory("empty")
    ...     zf.end(comment="nightly backup")
    >>>
    >>> # Read them back
    >>> with zipcodec.ZipReader.open("backup.zip") as zf:
    ...     for entry in zf:
    ...         print(entry.file_name, entry.uncompressed_size)
    >>>
    >>> zipcodec.extract("backup.zip", "restored/")
"""

from __future__ import annotations

from .archive import ExtractOptions, File, extract, pack
from .cancellation import CancellationToken, CancellationTokenSource
from .exceptions import (
    BoundsError,
    CancelledError,
    ConsistencyError,
    EncodingError,
    ExtractError,
    ExtractErrorType,
    FileError,
    FileOperationErrorType,
    FormatError,
    IntegrityError,
    ResourceError,
    UnsafePathError,
    ZipCodecError,
)
from .files import ZIP_EXTS, is_file_of_type, is_zip, read_files, unzip, zip_path
from .reader import Entry, EntryStream, ReaderOptions, ZipReader
from .structures import Compression
from .utils import format_size
from .writer import FINAL_SIZE_UNKNOWN, MAX_BUFFER_LENGTH, ZipWriter

__version__ = "0.1.0"
__all__ = [
    # Main classes
    "ZipWriter",
    "ZipReader",
    "ReaderOptions",
    "Entry",
    "EntryStream",
    # Convenience functions
    "pack",
    "extract",
    "File",
    "ExtractOptions",
    # File operations
    "zip_path",
    "unzip",
    "read_files",
    "is_file_of_type",
    "is_zip",
    "ZIP_EXTS",
    # Cancellation
    "CancellationToken",
    "CancellationTokenSource",
    # Constants
    "Compression",
    "STORED",
    "DEFLATED",
    "FINAL_SIZE_UNKNOWN",
    "MAX_BUFFER_LENGTH",
    # Utilities
    "format_size",
    # Exceptions
    "ZipCodecError",
    "FormatError",
    "BoundsError",
    "EncodingError",
    "ResourceError",
    "ConsistencyError",
    "IntegrityError",
    "UnsafePathError",
    "CancelledError",
    "ExtractError",
    "ExtractErrorType",
    "FileError",
    "FileOperationErrorType",
]

# Convenience aliases
STORED = Compression.STORED
DEFLATED = Compression.DEFLATED
