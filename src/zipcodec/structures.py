"""ZIP file format data structures.

Based on PKWARE's APPNOTE.TXT specification.
https://pkware.cachefly.net/webdocs/casestudies/APPNOTE.TXT
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar

from .exceptions import BoundsError, FormatError


class Compression(IntEnum):
    """Compression methods supported by ZIP."""

    STORED = 0  # No compression
    DEFLATED = 8  # DEFLATE compression


class GeneralPurposeFlag(IntEnum):
    """General purpose bit flags."""

    ENCRYPTED = 1 << 0
    # Bits 1-2: compression options (for DEFLATE: 0=normal, 1=max, 2=fast, 3=super fast)
    DATA_DESCRIPTOR = 1 << 3  # CRC and sizes in data descriptor after file data
    ENHANCED_DEFLATE = 1 << 4
    COMPRESSED_PATCHED = 1 << 5
    STRONG_ENCRYPTION = 1 << 6
    UTF8 = 1 << 11  # Filename and comment are UTF-8 encoded
    ENHANCED_COMPRESSION = 1 << 12
    MASKED_HEADERS = 1 << 13


# Signatures
LOCAL_FILE_HEADER_SIG = 0x04034B50
DATA_DESCRIPTOR_SIG = 0x08074B50
CENTRAL_DIR_HEADER_SIG = 0x02014B50
END_OF_CENTRAL_DIR_SIG = 0x06054B50
ZIP64_END_OF_CENTRAL_DIR_SIG = 0x06064B50
ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIG = 0x07064B50

EOCDR_SIGNATURE_BYTES = struct.pack("<I", END_OF_CENTRAL_DIR_SIG)

# Extra field tags
ZIP64_EXTRA_ID = 0x0001
UNICODE_PATH_EXTRA_ID = 0x7075

# Versions
VERSION_NEEDED_UTF8 = 20
VERSION_NEEDED_ZIP64 = 45
# 3 = unix. 63 = APPNOTE version 6.3
VERSION_MADE_BY = (3 << 8) | 63

# 32-bit placeholders that defer to ZIP64 fields
ZIP64_LIMIT = 0xFFFFFFFF
ZIP64_COUNT_LIMIT = 0xFFFF


def read_uint64_le(data: bytes, offset: int = 0) -> int:
    """Read a 64-bit little-endian integer as two 32-bit halves."""
    low, high = struct.unpack_from("<II", data, offset)
    return high * 0x1_0000_0000 + low


def write_uint64_le(value: int) -> bytes:
    """Encode a 64-bit little-endian integer as two 32-bit halves."""
    return struct.pack("<II", value % 0x1_0000_0000, value // 0x1_0000_0000)


def _check_size(data: bytes, size: int, name: str) -> None:
    if len(data) < size:
        raise FormatError(f"Data too short for {name}: {len(data)} < {size}")


def _check_signature(sig: int, expected: int, name: str) -> None:
    if sig != expected:
        raise FormatError(f"Invalid {name} signature: {sig:#010x}")


@dataclass
class ExtraField:
    """One tagged block of an extra field."""

    id: int
    data: bytes

    def to_bytes(self) -> bytes:
        return struct.pack("<HH", self.id, len(self.data)) + self.data


def parse_extra_fields(data: bytes) -> list[ExtraField]:
    """Split an extra field into its tagged blocks.

    Raises:
        BoundsError: If a block declares more data than is present.
    """
    fields = []
    i = 0
    while i < len(data) - 3:
        header_id, data_size = struct.unpack_from("<HH", data, i)
        data_start = i + 4
        data_end = data_start + data_size
        if data_end > len(data):
            raise BoundsError("extra field length exceeds extra field buffer size")
        fields.append(ExtraField(header_id, bytes(data[data_start:data_end])))
        i = data_end
    return fields


@dataclass
class LocalFileHeader:
    """Local file header structure (precedes each file's data)."""

    SIGNATURE: ClassVar[int] = LOCAL_FILE_HEADER_SIG
    STRUCT_FORMAT: ClassVar[str] = "<IHHHHHIIIHH"
    FIXED_SIZE: ClassVar[int] = 30  # Size without filename and extra

    version_needed: int = VERSION_NEEDED_UTF8
    flags: int = 0
    compression: int = Compression.DEFLATED
    mod_time: int = 0
    mod_date: int = 0
    crc32: int = 0
    compressed_size: int = 0
    uncompressed_size: int = 0
    filename: bytes = b""
    extra: bytes = b""

    def to_bytes(self) -> bytes:
        """Serialize to bytes."""
        header = struct.pack(
            self.STRUCT_FORMAT,
            self.SIGNATURE,
            self.version_needed,
            self.flags,
            self.compression,
            self.mod_time,
            self.mod_date,
            self.crc32,
            self.compressed_size,
            self.uncompressed_size,
            len(self.filename),
            len(self.extra),
        )
        return header + self.filename + self.extra

    @classmethod
    def from_bytes(cls, data: bytes) -> "LocalFileHeader":
        """Deserialize from bytes.

        Only the fixed part is required; the filename and extra field are
        taken from whatever follows it.
        """
        _check_size(data, cls.FIXED_SIZE, "LocalFileHeader")

        (
            sig,
            version_needed,
            flags,
            compression,
            mod_time,
            mod_date,
            crc32,
            compressed_size,
            uncompressed_size,
            filename_len,
            extra_len,
        ) = struct.unpack(cls.STRUCT_FORMAT, data[: cls.FIXED_SIZE])

        _check_signature(sig, cls.SIGNATURE, "local file header")

        filename = data[cls.FIXED_SIZE : cls.FIXED_SIZE + filename_len]
        extra = data[cls.FIXED_SIZE + filename_len : cls.FIXED_SIZE + filename_len + extra_len]

        return cls(
            version_needed=version_needed,
            flags=flags,
            compression=compression,
            mod_time=mod_time,
            mod_date=mod_date,
            crc32=crc32,
            compressed_size=compressed_size,
            uncompressed_size=uncompressed_size,
            filename=filename,
            extra=extra,
        )

    @staticmethod
    def variable_length(fixed: bytes) -> int:
        """Length of filename and extra field declared by a fixed part."""
        filename_len, extra_len = struct.unpack_from("<HH", fixed, 26)
        return filename_len + extra_len

    @property
    def total_size(self) -> int:
        """Total size of header including variable fields."""
        return self.FIXED_SIZE + len(self.filename) + len(self.extra)


@dataclass
class DataDescriptor:
    """Data descriptor (follows file data when sizes are unknown upfront)."""

    SIGNATURE: ClassVar[int] = DATA_DESCRIPTOR_SIG
    STRUCT_FORMAT: ClassVar[str] = "<IIII"
    SIZE: ClassVar[int] = 16
    ZIP64_SIZE: ClassVar[int] = 24

    crc32: int = 0
    compressed_size: int = 0
    uncompressed_size: int = 0
    zip64: bool = False

    def to_bytes(self) -> bytes:
        """Serialize to bytes, always with the optional signature."""
        if not self.zip64:
            return struct.pack(
                self.STRUCT_FORMAT,
                self.SIGNATURE,
                self.crc32,
                self.compressed_size,
                self.uncompressed_size,
            )
        return (
            struct.pack("<II", self.SIGNATURE, self.crc32)
            + write_uint64_le(self.compressed_size)
            + write_uint64_le(self.uncompressed_size)
        )


@dataclass
class Zip64ExtendedInfo:
    """ZIP64 extended information extra field (tag 0x0001).

    Only the fields whose 32-bit counterparts hold the 0xFFFFFFFF placeholder
    are present, always in the order uncompressed, compressed, offset.
    """

    TAG: ClassVar[int] = ZIP64_EXTRA_ID
    FULL_SIZE: ClassVar[int] = 28

    uncompressed_size: int | None = None
    compressed_size: int | None = None
    local_header_offset: int | None = None

    def to_bytes(self) -> bytes:
        data = b""
        for value in (self.uncompressed_size, self.compressed_size, self.local_header_offset):
            if value is not None:
                data += write_uint64_le(value)
        return ExtraField(self.TAG, data).to_bytes()

    @classmethod
    def from_extra(
        cls,
        data: bytes,
        need_uncompressed: bool,
        need_compressed: bool,
        need_offset: bool,
    ) -> "Zip64ExtendedInfo":
        """Decode the fields required by the placeholders of a central record.

        Raises:
            BoundsError: If the block is too short for a required field.
        """
        info = cls()
        index = 0
        for needed, attr, label in (
            (need_uncompressed, "uncompressed_size", "uncompressed size"),
            (need_compressed, "compressed_size", "compressed size"),
            (need_offset, "local_header_offset", "relative header offset"),
        ):
            if not needed:
                continue
            if index + 8 > len(data):
                raise BoundsError(
                    f"zip64 extended information extra field does not include {label}"
                )
            setattr(info, attr, read_uint64_le(data, index))
            index += 8
        return info


@dataclass
class CentralDirectoryHeader:
    """Central directory file header."""

    SIGNATURE: ClassVar[int] = CENTRAL_DIR_HEADER_SIG
    STRUCT_FORMAT: ClassVar[str] = "<IHHHHHHIIIHHHHHII"
    FIXED_SIZE: ClassVar[int] = 46

    version_made_by: int = VERSION_MADE_BY
    version_needed: int = VERSION_NEEDED_UTF8
    flags: int = 0
    compression: int = Compression.DEFLATED
    mod_time: int = 0
    mod_date: int = 0
    crc32: int = 0
    compressed_size: int = 0
    uncompressed_size: int = 0
    disk_number_start: int = 0
    internal_attr: int = 0
    external_attr: int = 0
    local_header_offset: int = 0
    filename: bytes = b""
    extra: bytes = b""
    comment: bytes = b""

    def to_bytes(self) -> bytes:
        """Serialize to bytes."""
        header = struct.pack(
            self.STRUCT_FORMAT,
            self.SIGNATURE,
            self.version_made_by,
            self.version_needed,
            self.flags,
            self.compression,
            self.mod_time,
            self.mod_date,
            self.crc32,
            self.compressed_size,
            self.uncompressed_size,
            len(self.filename),
            len(self.extra),
            len(self.comment),
            self.disk_number_start,
            self.internal_attr,
            self.external_attr,
            self.local_header_offset,
        )
        return header + self.filename + self.extra + self.comment

    @staticmethod
    def variable_length(fixed: bytes) -> int:
        """Length of name, extra and comment declared by a fixed part."""
        filename_len, extra_len, comment_len = struct.unpack_from("<HHH", fixed, 28)
        return filename_len + extra_len + comment_len

    @classmethod
    def from_bytes(cls, data: bytes) -> "CentralDirectoryHeader":
        """Deserialize from bytes."""
        _check_size(data, cls.FIXED_SIZE, "CentralDirectoryHeader")

        (
            sig,
            version_made_by,
            version_needed,
            flags,
            compression,
            mod_time,
            mod_date,
            crc32,
            compressed_size,
            uncompressed_size,
            filename_len,
            extra_len,
            comment_len,
            disk_number_start,
            internal_attr,
            external_attr,
            local_header_offset,
        ) = struct.unpack(cls.STRUCT_FORMAT, data[: cls.FIXED_SIZE])

        _check_signature(sig, cls.SIGNATURE, "central directory file header")
        _check_size(data, cls.FIXED_SIZE + filename_len + extra_len + comment_len,
                    "CentralDirectoryHeader variable fields")

        offset = cls.FIXED_SIZE
        filename = data[offset : offset + filename_len]
        offset += filename_len
        extra = data[offset : offset + extra_len]
        offset += extra_len
        comment = data[offset : offset + comment_len]

        return cls(
            version_made_by=version_made_by,
            version_needed=version_needed,
            flags=flags,
            compression=compression,
            mod_time=mod_time,
            mod_date=mod_date,
            crc32=crc32,
            compressed_size=compressed_size,
            uncompressed_size=uncompressed_size,
            disk_number_start=disk_number_start,
            internal_attr=internal_attr,
            external_attr=external_attr,
            local_header_offset=local_header_offset,
            filename=filename,
            extra=extra,
            comment=comment,
        )

    @property
    def total_size(self) -> int:
        """Total size of header including variable fields."""
        return self.FIXED_SIZE + len(self.filename) + len(self.extra) + len(self.comment)


@dataclass
class EndOfCentralDirectory:
    """End of central directory record."""

    SIGNATURE: ClassVar[int] = END_OF_CENTRAL_DIR_SIG
    STRUCT_FORMAT: ClassVar[str] = "<IHHHHIIH"
    FIXED_SIZE: ClassVar[int] = 22
    MAX_COMMENT_SIZE: ClassVar[int] = 0xFFFF

    disk_number: int = 0  # Number of this disk
    disk_with_cd_start: int = 0  # Disk where central directory starts
    entries_on_disk: int = 0  # Entries in central directory on this disk
    total_entries: int = 0  # Total entries in central directory
    cd_size: int = 0  # Size of central directory
    cd_offset: int = 0  # Offset of central directory on starting disk
    comment: bytes = b""
    comment_length: int = field(default=0, repr=False, compare=False)

    def to_bytes(self) -> bytes:
        """Serialize to bytes."""
        return struct.pack(
            self.STRUCT_FORMAT,
            self.SIGNATURE,
            self.disk_number,
            self.disk_with_cd_start,
            self.entries_on_disk,
            self.total_entries,
            self.cd_size,
            self.cd_offset,
            len(self.comment),
        ) + self.comment

    @classmethod
    def from_bytes(cls, data: bytes) -> "EndOfCentralDirectory":
        """Deserialize from bytes.

        ``comment`` is everything after the fixed part; ``comment_length``
        is the declared length so callers can check the two agree.
        """
        _check_size(data, cls.FIXED_SIZE, "EndOfCentralDirectory")

        (
            sig,
            disk_number,
            disk_with_cd_start,
            entries_on_disk,
            total_entries,
            cd_size,
            cd_offset,
            comment_len,
        ) = struct.unpack(cls.STRUCT_FORMAT, data[: cls.FIXED_SIZE])

        _check_signature(sig, cls.SIGNATURE, "end of central directory")

        return cls(
            disk_number=disk_number,
            disk_with_cd_start=disk_with_cd_start,
            entries_on_disk=entries_on_disk,
            total_entries=total_entries,
            cd_size=cd_size,
            cd_offset=cd_offset,
            comment=data[cls.FIXED_SIZE :],
            comment_length=comment_len,
        )

    @property
    def total_size(self) -> int:
        """Total size of record including comment."""
        return self.FIXED_SIZE + len(self.comment)


@dataclass
class Zip64EndOfCentralDirectory:
    """ZIP64 end of central directory record."""

    SIGNATURE: ClassVar[int] = ZIP64_END_OF_CENTRAL_DIR_SIG
    FIXED_SIZE: ClassVar[int] = 56

    version_made_by: int = VERSION_MADE_BY
    version_needed: int = VERSION_NEEDED_ZIP64
    disk_number: int = 0
    disk_with_cd_start: int = 0
    entries_on_disk: int = 0
    total_entries: int = 0
    cd_size: int = 0
    cd_offset: int = 0

    def to_bytes(self) -> bytes:
        """Serialize to bytes, with an empty extensible data sector."""
        return (
            struct.pack("<I", self.SIGNATURE)
            # size of the record not counting the leading 12 bytes
            + write_uint64_le(self.FIXED_SIZE - 12)
            + struct.pack(
                "<HHII",
                self.version_made_by,
                self.version_needed,
                self.disk_number,
                self.disk_with_cd_start,
            )
            + write_uint64_le(self.entries_on_disk)
            + write_uint64_le(self.total_entries)
            + write_uint64_le(self.cd_size)
            + write_uint64_le(self.cd_offset)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Zip64EndOfCentralDirectory":
        """Deserialize from bytes."""
        _check_size(data, cls.FIXED_SIZE, "Zip64EndOfCentralDirectory")
        (sig,) = struct.unpack_from("<I", data, 0)
        _check_signature(sig, cls.SIGNATURE, "zip64 end of central directory record")
        version_made_by, version_needed, disk_number, disk_with_cd_start = struct.unpack_from(
            "<HHII", data, 12
        )
        return cls(
            version_made_by=version_made_by,
            version_needed=version_needed,
            disk_number=disk_number,
            disk_with_cd_start=disk_with_cd_start,
            entries_on_disk=read_uint64_le(data, 24),
            total_entries=read_uint64_le(data, 32),
            cd_size=read_uint64_le(data, 40),
            cd_offset=read_uint64_le(data, 48),
        )


@dataclass
class Zip64EndOfCentralDirectoryLocator:
    """ZIP64 end of central directory locator (immediately precedes the EOCDR)."""

    SIGNATURE: ClassVar[int] = ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIG
    FIXED_SIZE: ClassVar[int] = 20

    disk_with_zip64_eocd: int = 0
    zip64_eocd_offset: int = 0
    total_disks: int = 1

    def to_bytes(self) -> bytes:
        """Serialize to bytes."""
        return (
            struct.pack("<II", self.SIGNATURE, self.disk_with_zip64_eocd)
            + write_uint64_le(self.zip64_eocd_offset)
            + struct.pack("<I", self.total_disks)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Zip64EndOfCentralDirectoryLocator":
        """Deserialize from bytes."""
        _check_size(data, cls.FIXED_SIZE, "Zip64EndOfCentralDirectoryLocator")
        sig, disk = struct.unpack_from("<II", data, 0)
        _check_signature(sig, cls.SIGNATURE, "zip64 end of central directory locator")
        (total_disks,) = struct.unpack_from("<I", data, 16)
        return cls(
            disk_with_zip64_eocd=disk,
            zip64_eocd_offset=read_uint64_le(data, 8),
            total_disks=total_disks,
        )
