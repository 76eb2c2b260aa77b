"""File-level helpers around :mod:`zipcodec.archive`.

These check their inputs before any archive work starts and report
problems as :class:`FileError`.
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Literal, Sequence

from .archive import ExtractOptions, File, extract, pack
from .cancellation import CancellationToken
from .exceptions import CancelledError, FileError, FileOperationErrorType

logger = logging.getLogger(__name__)

ZIP_EXTS = (".zip",)

__all__ = [
    "FileError",
    "FileOperationErrorType",
    "ZIP_EXTS",
    "is_file_of_type",
    "is_zip",
    "read_files",
    "unzip",
    "zip_path",
]


def is_file_of_type(
    path: str | Path,
    type: Literal["file", "directory"],
    extensions: str | Sequence[str] | None = None,
) -> bool:
    """
    Check whether *path* is a file or directory, optionally with a given extension.

    Args:
        path: Path to check. It must exist.
        type: ``"file"`` or ``"directory"``.
        extensions: For files, one extension or a list of accepted ones.

    Raises:
        FileNotFoundError: If *path* does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"No such file or directory: '{path}'")
    stat_is_file = path.is_file()

    if type == "directory":
        return path.is_dir()
    if type != "file":
        return False
    if extensions is None:
        return stat_is_file
    if isinstance(extensions, str):
        extensions = [extensions]
    return stat_is_file and any(str(path).endswith(ext) for ext in extensions)


def is_zip(path: str | Path) -> bool:
    return is_file_of_type(path, "file", ZIP_EXTS)


def read_files(directory: str | Path) -> list[File]:
    """
    List every regular file below *directory*, recursively.

    Entry names are relative to *directory* with forward slashes. Symlinks
    are skipped with a warning.
    """
    directory = Path(directory)
    files = []
    for item in sorted(directory.rglob("*")):
        if item.is_symlink():
            warnings.warn(f"Skipping symlink: '{item}'", stacklevel=2)
            continue
        if item.is_file():
            files.append(File(path=item.relative_to(directory).as_posix(), local_path=item))
    return files


def zip_path(
    source: str | Path,
    destination: str | Path,
    token: CancellationToken | None = None,
) -> None:
    """
    Pack a file or a directory tree into a new archive.

    A single file is stored under its base name; a directory's files are
    stored relative to the directory. If *token* is cancelled, the partial
    archive is removed.

    Raises:
        FileError: If *source* does not exist.
        CancelledError: If *token* is cancelled.
    """
    source = Path(source)
    destination = Path(destination)
    if not source.exists():
        raise FileError(FileOperationErrorType.NOT_FOUND, FileNotFoundError(f"file path: {source}"))

    if source.is_file():
        files = [File(path=source.name, local_path=source)]
    else:
        files = read_files(source)

    try:
        pack(destination, files, token=token)
    except CancelledError:
        destination.unlink(missing_ok=True)
        logger.info("Packing cancelled; removed %s", destination)
        raise


def unzip(
    archive: str | Path,
    target: str | Path,
    options: ExtractOptions | None = None,
    token: CancellationToken | None = None,
) -> None:
    """
    Extract an archive after checking that it is an existing ``.zip`` file.

    Raises:
        FileError: If *archive* does not exist (``NOT_FOUND``), is not a
            file (``TYPE_NOT_MATCH``) or lacks a ZIP extension
            (``EXT_NOT_MATCH``).
        ExtractError: If extraction fails.
    """
    archive = Path(archive)
    if not archive.exists():
        raise FileError(FileOperationErrorType.NOT_FOUND, FileNotFoundError(f"file path: {archive}"))
    if not is_file_of_type(archive, "file"):
        raise FileError(
            FileOperationErrorType.TYPE_NOT_MATCH,
            IsADirectoryError(f"expected a file but got a directory: {archive}"),
        )
    if not is_zip(archive):
        raise FileError(
            FileOperationErrorType.EXT_NOT_MATCH,
            ValueError(f"incorrect file extension {archive.suffix!r}"),
        )

    extract(archive, target, options or ExtractOptions(), token)
