"""Push-based byte stream stages.

Each stage receives chunks through ``write()``, transforms or inspects them,
and pushes the result into its ``sink``. ``close()`` flushes whatever the
stage still holds and closes the sink, so closing the head of a chain
finishes the whole chain.

Writing an entry::

    crc = Crc32Watcher()
    uncompressed = ByteCounter()
    compressed = ByteCounter()
    head = chain(crc, uncompressed, compressor_for(True), compressed, FunctionSink(out.write))
    pump(source.read, head)
"""

from __future__ import annotations

import zlib
from collections import deque
from typing import Callable, Protocol

from .crc32 import crc32
from .exceptions import ConsistencyError, FormatError

# Default chunk size for reading sources
CHUNK_SIZE = 64 * 1024  # 64 KB


class Sink(Protocol):
    def write(self, chunk: bytes) -> None: ...

    def close(self) -> None: ...


class FunctionSink:
    """Terminal sink that hands every chunk to a callable."""

    def __init__(self, write: Callable[[bytes], object]) -> None:
        self._write = write
        self.closed = False

    def write(self, chunk: bytes) -> None:
        self._write(chunk)

    def close(self) -> None:
        self.closed = True


class ChunkQueue:
    """Terminal sink that buffers chunks for a pull-style consumer."""

    def __init__(self) -> None:
        self._chunks: deque[bytes] = deque()
        self.closed = False

    def write(self, chunk: bytes) -> None:
        if chunk:
            self._chunks.append(chunk)

    def close(self) -> None:
        self.closed = True

    def __len__(self) -> int:
        return len(self._chunks)

    def pop(self, size: int) -> bytes:
        """Remove and return up to *size* bytes from the front."""
        chunk = self._chunks.popleft()
        if len(chunk) > size:
            self._chunks.appendleft(chunk[size:])
            chunk = chunk[:size]
        return chunk


class Stage:
    """Base stage: passes chunks through unchanged."""

    def __init__(self, sink: Sink | None = None) -> None:
        self.sink = sink

    def transform(self, chunk: bytes) -> bytes:
        return chunk

    def finish(self) -> bytes:
        return b""

    def write(self, chunk: bytes) -> None:
        out = self.transform(chunk)
        if out:
            self._push(out)

    def close(self) -> None:
        tail = self.finish()
        if tail:
            self._push(tail)
        if self.sink is not None:
            self.sink.close()

    def _push(self, chunk: bytes) -> None:
        if self.sink is not None:
            self.sink.write(chunk)


class Identity(Stage):
    """Passthrough used in place of a (de)compressor for stored entries."""


class Crc32Watcher(Stage):
    """Accumulates the running CRC-32 of everything that passes through."""

    def __init__(self, sink: Sink | None = None) -> None:
        super().__init__(sink)
        self.crc32 = 0

    def transform(self, chunk: bytes) -> bytes:
        self.crc32 = crc32(chunk, self.crc32)
        return chunk


class ByteCounter(Stage):
    """Counts the bytes that pass through."""

    def __init__(self, sink: Sink | None = None) -> None:
        super().__init__(sink)
        self.byte_count = 0

    def transform(self, chunk: bytes) -> bytes:
        self.byte_count += len(chunk)
        return chunk


class DeflateCompressor(Stage):
    """Raw DEFLATE (no zlib or gzip wrapper)."""

    def __init__(self, level: int = 6, sink: Sink | None = None) -> None:
        super().__init__(sink)
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, -zlib.MAX_WBITS)

    def transform(self, chunk: bytes) -> bytes:
        return self._compressor.compress(chunk)

    def finish(self) -> bytes:
        return self._compressor.flush()


class InflateDecompressor(Stage):
    """Raw DEFLATE decoder that emits at most ``CHUNK_SIZE`` bytes at a time."""

    def __init__(self, sink: Sink | None = None) -> None:
        super().__init__(sink)
        self._decompressor = zlib.decompressobj(-zlib.MAX_WBITS)

    def write(self, chunk: bytes) -> None:
        data = chunk
        while data:
            try:
                out = self._decompressor.decompress(data, CHUNK_SIZE)
            except zlib.error as e:
                raise FormatError(f"invalid deflate data: {e}") from e
            if out:
                self._push(out)
            data = self._decompressor.unconsumed_tail

    def finish(self) -> bytes:
        try:
            tail = self._decompressor.flush()
        except zlib.error as e:
            raise FormatError(f"invalid deflate data: {e}") from e
        if not self._decompressor.eof:
            raise FormatError("unexpected end of deflate stream")
        return tail


class AssertByteCount(Stage):
    """Fails unless exactly ``expected`` bytes pass through."""

    def __init__(self, expected: int, sink: Sink | None = None) -> None:
        super().__init__(sink)
        self.expected = expected
        self.actual = 0

    def transform(self, chunk: bytes) -> bytes:
        self.actual += len(chunk)
        if self.actual > self.expected:
            raise ConsistencyError(
                f"too many bytes in the stream. expected {self.expected}. "
                f"got at least {self.actual}",
                self.expected,
                self.actual,
            )
        return chunk

    def finish(self) -> bytes:
        if self.actual < self.expected:
            raise ConsistencyError(
                f"not enough bytes in the stream. expected {self.expected}. "
                f"got only {self.actual}",
                self.expected,
                self.actual,
            )
        return b""


def compressor_for(compress: bool, level: int = 6) -> Stage:
    """Pick the compression stage for an entry, once."""
    return DeflateCompressor(level) if compress else Identity()


def decompressor_for(decompress: bool) -> Stage:
    """Pick the decompression stage for an entry, once."""
    return InflateDecompressor() if decompress else Identity()


def chain(*stages: Stage | Sink) -> Stage:
    """Connect *stages* in order and return the head.

    The last element may be a plain sink.
    """
    for upstream, downstream in zip(stages, stages[1:]):
        upstream.sink = downstream  # type: ignore[union-attr]
    return stages[0]  # type: ignore[return-value]


def pump(
    read: Callable[[int], bytes],
    head: Sink,
    chunk_size: int = CHUNK_SIZE,
    on_chunk: Callable[[int], None] | None = None,
) -> None:
    """Drive *read* to exhaustion through *head*, then close it."""
    while True:
        chunk = read(chunk_size)
        if not chunk:
            break
        head.write(chunk)
        if on_chunk:
            on_chunk(len(chunk))
    head.close()
