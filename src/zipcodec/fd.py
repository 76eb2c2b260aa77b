"""Reference-counted access to one shared file descriptor.

Every consumer of the file (the archive handle itself, each open entry
stream, each in-flight header read) holds a reference. The descriptor is
closed when the last reference is released. Positioned reads and writes are
serialized through a lock so consumers never race on the shared file
position.
"""

from __future__ import annotations

import io
import logging
import os
import threading
from contextlib import contextmanager
from typing import BinaryIO, Callable, Iterator

from .exceptions import FormatError, ResourceError

logger = logging.getLogger(__name__)


class SharedFile:
    """
    A file object shared by several logical consumers.

    Example:
        >>> shared = SharedFile(open("archive.zip", "rb"))
        >>> with shared.acquire():
        ...     header = shared.read_exact_at(30, 0)

    Attributes:
        auto_close: Close the underlying file when the count drops to zero.
    """

    def __init__(self, fileobj: BinaryIO, auto_close: bool = True) -> None:
        self._file = fileobj
        self.auto_close = auto_close
        self._ref_count = 0
        self._closed = False
        # Single-concurrency queue for OS-level reads and writes
        self._io_lock = threading.Lock()
        self._ref_lock = threading.RLock()
        self._close_callbacks: list[Callable[[], None]] = []

    @classmethod
    def open(cls, path: str | os.PathLike[str], mode: str = "rb") -> SharedFile:
        return cls(open(path, mode), auto_close=True)  # noqa: SIM115

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def closed(self) -> bool:
        return self._closed

    def size(self) -> int:
        """Total size of the underlying file in bytes."""
        with self._io_lock:
            if _has_fileno(self._file):
                return os.fstat(self._file.fileno()).st_size
            return self._file.seek(0, io.SEEK_END)

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register *callback* to run once the descriptor is closed."""
        self._close_callbacks.append(callback)

    def ref(self) -> None:
        with self._ref_lock:
            if self._closed:
                raise ResourceError("file descriptor already closed")
            self._ref_count += 1

    def unref(self) -> None:
        with self._ref_lock:
            self._ref_count -= 1
            if self._ref_count > 0:
                return
            if self._ref_count < 0:
                self._ref_count = 0
                raise ResourceError("invalid unref")
            if not self.auto_close:
                return
            self._close()

    @contextmanager
    def acquire(self) -> Iterator[SharedFile]:
        """Hold a reference for the duration of a ``with`` block."""
        self.ref()
        try:
            yield self
        finally:
            self.unref()

    def read_at(self, size: int, position: int) -> bytes:
        """Read up to *size* bytes at *position*."""
        with self._io_lock:
            self._check_open()
            self._file.seek(position)
            return self._file.read(size)

    def read_exact_at(self, size: int, position: int) -> bytes:
        """Read exactly *size* bytes at *position*.

        Raises:
            FormatError: If the file ends first.
        """
        if size == 0:
            return b""
        data = self.read_at(size, position)
        if len(data) < size:
            raise FormatError("unexpected EOF")
        return data

    def write_at(self, data: bytes, position: int) -> int:
        """Write *data* at *position* and return the number of bytes written."""
        with self._io_lock:
            self._check_open()
            self._file.seek(position)
            written = self._file.write(data)
            return len(data) if written is None else written

    def create_read_stream(self, start: int, end: int) -> RangeReader:
        """Open a stream over the byte range ``[start, end)``."""
        return RangeReader(self, start, end)

    def _check_open(self) -> None:
        if self._closed:
            raise ResourceError("file descriptor already closed")

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._file.close()
        logger.debug("Closed shared file %s", getattr(self._file, "name", self._file))
        for callback in self._close_callbacks:
            callback()


def _has_fileno(fileobj: BinaryIO) -> bool:
    try:
        fileobj.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        return False
    return True


class RangeReader(io.RawIOBase):
    """
    Readable stream over ``[start, end)`` of a :class:`SharedFile`.

    Holds one reference from construction until the range is exhausted or
    the stream is closed, whichever comes first. Reading past the end of the
    underlying file before ``end`` is reached raises.
    """

    def __init__(self, shared: SharedFile, start: int, end: int) -> None:
        super().__init__()
        if end < start:
            raise ValueError(f"end < start: {end} < {start}")
        self._shared = shared
        self.start = start
        self.end = end
        self.pos = start
        self._released = False
        shared.ref()
        if start == end:
            self._release()

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        remaining = self.end - self.pos
        if size is None or size < 0:
            size = remaining
        size = min(size, remaining)
        if size <= 0:
            self._release()
            return b""
        data = self._shared.read_at(size, self.pos)
        if not data:
            self._release()
            raise FormatError(
                f"unexpected EOF at {self.pos}, expected data up to {self.end}"
            )
        self.pos += len(data)
        if self.pos >= self.end:
            self._release()
        return data

    def readinto(self, buffer) -> int:
        data = self.read(len(buffer))
        buffer[: len(data)] = data
        return len(data)

    def close(self) -> None:
        self._release()
        super().close()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self._shared.unref()
