"""Pack a list of files into an archive and extract archives to disk."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from .cancellation import CancellationToken
from .exceptions import (
    CancelledError,
    ExtractError,
    ExtractErrorType,
    FormatError,
    UnsafePathError,
    ZipCodecError,
)
from .pipeline import CHUNK_SIZE
from .reader import Entry, ZipReader
from .writer import ZipWriter

logger = logging.getLogger(__name__)

# Permissions for extracted files whose entry carries no Unix mode
DEFAULT_FILE_MODE = 0o755


@dataclass
class File:
    """
    One file to pack.

    Attributes:
        path: Name of the entry inside the archive.
        contents: Data to store; strings are encoded as UTF-8.
        local_path: File on disk to read the data from.
    """

    path: str
    contents: bytes | str | None = None
    local_path: str | Path | None = None

    def __post_init__(self) -> None:
        if (self.contents is None) == (self.local_path is None):
            raise ValueError(f"exactly one of contents or local_path is required: {self.path!r}")


@dataclass
class ExtractOptions:
    """
    Attributes:
        overwrite: Remove the target directory before extracting.
        source_path: Only extract entries below this prefix, with the prefix
            stripped from their names.
    """

    overwrite: bool = False
    source_path: str | None = None


def pack(
    destination: str | Path,
    files: list[File],
    token: CancellationToken | None = None,
) -> None:
    """
    Write *files* into a new archive at *destination*, in list order.

    Raises:
        CancelledError: If *token* is cancelled between entries. The
            destination is left incomplete.
    """
    with ZipWriter(destination) as zf:
        for file in files:
            if token is not None:
                token.raise_if_cancellation_requested()
            if file.contents is not None:
                data = file.contents.encode("utf-8") if isinstance(file.contents, str) else file.contents
                zf.add_buffer(data, file.path)
            else:
                assert file.local_path is not None
                zf.add_file(file.local_path, file.path)
    logger.info("Packed %d file(s) into %s", len(files), destination)


def extract(
    archive_path: str | Path,
    target_directory: str | Path,
    options: ExtractOptions | None = None,
    token: CancellationToken | None = None,
) -> None:
    """
    Extract the archive at *archive_path* into *target_directory*.

    Directory entries become directories, file entries become files with
    their stored Unix permissions. Entries whose name would land outside
    the target directory are rejected.

    Raises:
        ExtractError: If the archive is corrupt (``CORRUPT_ZIP``), an entry
            cannot be extracted (``INCOMPLETE``) or anything else goes wrong.
        CancelledError: If *token* is cancelled. The file being written at
            that moment is removed.
    """
    options = options or ExtractOptions()
    token = token or CancellationToken()
    target = Path(target_directory)

    try:
        if options.overwrite and target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True, exist_ok=True)
        count = _extract_all(ZipReader.open(archive_path), target.resolve(), options, token)
    except (ExtractError, CancelledError):
        raise
    except (ZipCodecError, OSError) as e:
        raise _to_extract_error(e) from e

    logger.info("Extracted %d entries from %s to %s", count, archive_path, target)


def _to_extract_error(error: BaseException) -> ExtractError:
    if isinstance(error, FormatError):
        return ExtractError(ExtractErrorType.CORRUPT_ZIP, error)
    return ExtractError(ExtractErrorType.UNDEFINED, error)


def _extract_all(
    reader: ZipReader,
    target: Path,
    options: ExtractOptions,
    token: CancellationToken,
) -> int:
    prefix = options.source_path or ""
    count = 0
    with reader:
        entries = iter(reader)
        while True:
            token.raise_if_cancellation_requested()
            try:
                entry = next(entries, None)
            except ZipCodecError as e:
                raise ExtractError(ExtractErrorType.CORRUPT_ZIP, e) from e
            if entry is None:
                break

            assert isinstance(entry.file_name, str)
            if not entry.file_name.startswith(prefix):
                continue
            name = entry.file_name[len(prefix) :]
            if not name:
                continue

            path = _target_path(target, name)
            if entry.is_directory:
                path.mkdir(parents=True, exist_ok=True)
            else:
                _extract_entry(reader, entry, path, token)
            count += 1
    return count


def _target_path(target: Path, name: str) -> Path:
    path = (target / name).resolve()
    if path != target and target not in path.parents:
        raise UnsafePathError(name, "invalid file path")
    return path


def _extract_entry(reader: ZipReader, entry: Entry, path: Path, token: CancellationToken) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = entry.mode & 0o777 or DEFAULT_FILE_MODE

    stream = reader.open_read_stream(entry)
    # Closing the stream from another thread stops the copy loop below.
    dispose = token.on_cancellation_requested(stream.close)
    try:
        with stream, path.open("wb") as out:
            while True:
                token.raise_if_cancellation_requested()
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
    except CancelledError:
        path.unlink(missing_ok=True)
        raise
    except OSError:
        path.unlink(missing_ok=True)
        raise
    except (ZipCodecError, ValueError) as e:
        path.unlink(missing_ok=True)
        if token.is_cancellation_requested:
            raise CancelledError() from e
        raise ExtractError(ExtractErrorType.INCOMPLETE, e) from e
    finally:
        dispose()

    os.chmod(path, mode)
    logger.debug("Extracted %s (%d bytes)", path, entry.uncompressed_size)
