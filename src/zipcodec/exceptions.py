"""Custom exceptions for zipcodec."""

from __future__ import annotations

from enum import Enum


class ZipCodecError(Exception):
    """Base exception for all zipcodec errors."""


class FormatError(ZipCodecError):
    """Malformed or unsupported archive structure."""


class BoundsError(FormatError):
    """A declared length or range does not fit the data that holds it."""


class EncodingError(ZipCodecError, ValueError):
    """Text cannot be represented in the requested code page."""


class ResourceError(ZipCodecError, RuntimeError):
    """Misuse of a shared resource, such as releasing it too often."""


class ConsistencyError(ZipCodecError):
    """A byte count disagrees with the declared metadata."""

    def __init__(self, message: str, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class IntegrityError(ZipCodecError):
    """CRC mismatch or corrupted data."""

    def __init__(self, expected: int, actual: int, filename: str) -> None:
        self.expected = expected
        self.actual = actual
        self.filename = filename
        super().__init__(
            f"CRC32 mismatch for '{filename}': expected {expected:08x}, got {actual:08x}"
        )


class UnsafePathError(ZipCodecError, ValueError):
    """Archive path is empty, absolute or escapes its root."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{reason}: {path!r}")


class CancelledError(ZipCodecError):
    """The operation was cancelled through its cancellation token."""

    def __init__(self) -> None:
        super().__init__("Canceled")


class ExtractErrorType(Enum):
    UNDEFINED = "Undefined"
    CORRUPT_ZIP = "CorruptZip"
    INCOMPLETE = "Incomplete"


class ExtractError(ZipCodecError):
    """Extraction failed; ``cause`` holds the underlying error."""

    def __init__(self, type: ExtractErrorType | None, cause: BaseException) -> None:
        message = str(cause)
        if type == ExtractErrorType.CORRUPT_ZIP:
            message = f"Corrupt ZIP: {message}"
        self.type = type or ExtractErrorType.UNDEFINED
        self.cause = cause
        super().__init__(message)


class FileOperationErrorType(Enum):
    NOT_FOUND = "NotFound"
    EXT_NOT_MATCH = "ExtNotMatch"
    TYPE_NOT_MATCH = "TypeNotMatch"


class FileError(ZipCodecError):
    """A path handed to a file operation is missing or of the wrong kind."""

    def __init__(self, type: FileOperationErrorType | None, cause: BaseException) -> None:
        message = str(cause)
        if type == FileOperationErrorType.NOT_FOUND:
            message = f"File not found: {message}"
        elif type == FileOperationErrorType.EXT_NOT_MATCH:
            message = f"File extension does not match: {message}"
        elif type == FileOperationErrorType.TYPE_NOT_MATCH:
            message = f"File type does not match: {message}"
        self.type = type
        self.cause = cause
        super().__init__(message)
