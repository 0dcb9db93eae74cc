"""Reading and writing of "newc" (070701) cpio archives."""

from __future__ import annotations

import re
import stat
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO

HEADER_SIZE = 110
MAGIC_LEN = 6
MAGIC_NEWASCII = b"070701"
MAGIC_CRCASCII = b"070702"
MAGIC_OLDASCII = b"070707"
TRAILER_NAME = "TRAILER!!!"
BLOCK_SIZE = 512

MINORBITS = 20
MINORMASK = (1 << MINORBITS) - 1

_HEADER_STRUCT = struct.Struct("6x" + "8s" * 13)
_HEX_PREFIX = re.compile(rb"\s*([0-9A-Fa-f]*)")
_NAME_ONLY_TYPES = frozenset(
    {stat.S_IFBLK, stat.S_IFCHR, stat.S_IFDIR, stat.S_IFIFO, stat.S_IFSOCK}
)


class CpioError(Exception):
    """Raised when an archive cannot be parsed."""


class CpioType(IntEnum):
    UNKNOWN = 0
    ARCHIVE = 1
    BOOTCONFIG = 2


def _name_align(length: int) -> int:
    return ((length + 1) & ~3) + 2


def _parse_hex(value: bytes) -> int:
    digits = _HEX_PREFIX.match(value).group(1)
    return int(digits, 16) if digits else 0


def _encode_name(name: str) -> bytes:
    return name.encode("utf-8", "surrogateescape")


def encode_dev(major: int, minor: int) -> int:
    """Encode a device number the way the kernel's new_encode_dev does."""
    dev = (major << MINORBITS) | minor
    ma = (dev >> MINORBITS) & 0xFFFFFFFF
    mi = dev & MINORMASK
    return ((mi & 0xFF) | (ma << 8) | ((mi & ~0xFF) << 12)) & 0xFFFFFFFF


@dataclass
class CpioHeader:
    """One entry of a newc cpio archive."""

    name: str = ""
    body: bytes = b""
    ino: int = 0
    mode: int = 0
    uid: int = 0
    gid: int = 0
    nlink: int = 0
    mtime: int = 0
    body_len: int = 0
    major: int = 0
    minor: int = 0
    rmajor: int = 0
    rminor: int = 0
    name_len: int = 0

    @property
    def rdev(self) -> int:
        return encode_dev(self.rmajor, self.rminor)


@dataclass
class CpioArchive:
    """A cpio archive (or bootconfig blob) found inside an initramfs."""

    raw: bytes
    type: CpioType = CpioType.ARCHIVE
    compress: str | None = None
    size: int | None = None
    headers: list[CpioHeader] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.size is None:
            self.size = len(self.raw)


def parse_header(data, offset: int = 0) -> CpioHeader:
    """Parse the entry header that starts at ``offset`` in ``data``."""
    try:
        fields = [_parse_hex(f) for f in _HEADER_STRUCT.unpack_from(data, offset)]
    except struct.error as exc:
        raise CpioError("truncated cpio header") from exc

    (ino, mode, uid, gid, nlink, mtime, body_len,
     major, minor, rmajor, rminor, name_len, _checksum) = fields

    name_start = offset + HEADER_SIZE
    raw_name = bytes(data[name_start:name_start + name_len])
    name = raw_name.split(b"\0", 1)[0].decode("utf-8", "surrogateescape")
    body_start = name_start + _name_align(name_len)
    body = bytes(data[body_start:body_start + body_len])

    return CpioHeader(
        name=name,
        body=body,
        ino=ino,
        mode=mode,
        uid=uid,
        gid=gid,
        nlink=nlink,
        mtime=mtime,
        body_len=body_len,
        major=major,
        minor=minor,
        rmajor=rmajor,
        rminor=rminor,
        name_len=name_len,
    )


def read_cpio(archive: CpioArchive) -> int:
    """Parse entries into ``archive.headers``; return the bytes consumed."""
    raw = archive.raw
    size = archive.size
    offset = 0

    while offset < size:
        if size < MAGIC_LEN + HEADER_SIZE:
            raise CpioError("archive less than header")

        magic = bytes(raw[offset:offset + MAGIC_LEN])
        if magic == MAGIC_OLDASCII:
            raise CpioError("incorrect cpio method used: use -H newc option")
        if magic != MAGIC_NEWASCII:
            raise CpioError("no cpio magic")

        header = parse_header(raw, offset)
        offset += HEADER_SIZE + _name_align(header.name_len) + header.body_len
        offset = (offset + 3) & ~3

        if header.name.startswith(TRAILER_NAME):
            offset = -(-offset // BLOCK_SIZE) * BLOCK_SIZE
            break

        archive.headers.append(header)

    return offset


def _format_header(*values: int) -> bytes:
    return MAGIC_NEWASCII + "".join(f"{v:08X}" for v in values).encode("ascii")


def _push_pad(offset: int, output: BinaryIO) -> int:
    pad = -offset % 4
    output.write(b"\0" * pad)
    return offset + pad


def _push_string(name: bytes, offset: int, output: BinaryIO) -> int:
    output.write(name + b"\0")
    return offset + len(name) + 1


def _push_rest(name: bytes, offset: int, output: BinaryIO) -> int:
    name_len = len(name) + 1
    output.write(name + b"\0")
    pad = -(name_len + HEADER_SIZE) % 4
    output.write(b"\0" * pad)
    return offset + name_len + pad


def write_cpio(header: CpioHeader, offset: int, output: BinaryIO) -> int:
    """Write one entry to ``output``; return the new offset."""
    output.write(
        _format_header(
            header.ino,
            header.mode,
            header.uid,
            header.gid,
            header.nlink,
            header.mtime,
            header.body_len,
            header.major,
            header.minor,
            header.rmajor,
            header.rminor,
            header.name_len,
            0,
        )
    )
    offset += HEADER_SIZE
    name = _encode_name(header.name)

    if stat.S_IFMT(header.mode) in _NAME_ONLY_TYPES:
        return _push_rest(name, offset, output)

    offset = _push_string(name, offset, output)
    offset = _push_pad(offset, output)

    if header.body_len:
        output.write(bytes(header.body[:header.body_len]).ljust(header.body_len, b"\0"))
        offset += header.body_len
        offset = _push_pad(offset, output)

    return offset


def write_trailer(offset: int, output: BinaryIO) -> int:
    """Write the end-of-archive entry and pad to a 512-byte block."""
    name = _encode_name(TRAILER_NAME)
    output.write(_format_header(0, 0, 0, 0, 1, 0, 0, 0, 0, 0, 0, len(name) + 1, 0))
    offset += HEADER_SIZE
    offset = _push_rest(name, offset, output)
    pad = -offset % BLOCK_SIZE
    output.write(b"\0" * pad)
    return offset + pad