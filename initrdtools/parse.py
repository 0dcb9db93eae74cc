"""Splitting an initramfs image into its cpio archives and bootconfig."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from .cpio import CpioArchive, CpioType, read_cpio
from .decompress import DecompressError, decompress_method

PACKAGE_VERSION = "1.0.0"

BOOTCONFIG_MAGIC = b"#BOOTCONFIG\n"
# Boot loaders may align the image size to 4, so the magic may be
# followed by up to three padding bytes.
_BOOTCONFIG_ALIGN = 4
_BOOTCONFIG_HDR = struct.Struct("<II")


class ParseError(Exception):
    """Raised when an initramfs image cannot be split into its parts."""


@dataclass
class ParseResult:
    """All decoded streams and all parts found in an initramfs image."""

    streams: list[bytes] = field(default_factory=list)
    cpios: list[CpioArchive] = field(default_factory=list)

    @property
    def archives(self) -> list[CpioArchive]:
        """The parts that are cpio archives, in image order."""
        return [part for part in self.cpios if part.type is CpioType.ARCHIVE]


def find_bootconfig(data) -> tuple[int, int] | None:
    """Locate a bootconfig blob appended to ``data``.

    Return ``(start, size)`` of the blob, or None when there is none.
    Everything before ``start`` belongs to the initramfs proper.
    """
    magic_len = len(BOOTCONFIG_MAGIC)
    last = len(data) - magic_len
    for pos in range(last, last - _BOOTCONFIG_ALIGN, -1):
        if pos < _BOOTCONFIG_HDR.size:
            break
        if bytes(data[pos:pos + magic_len]) != BOOTCONFIG_MAGIC:
            continue
        hdr = pos - _BOOTCONFIG_HDR.size
        size, _checksum = _BOOTCONFIG_HDR.unpack_from(data, hdr)
        if size > len(data):
            raise ParseError(
                f"bootconfig size {size} is greater than initrd size {len(data)}"
            )
        start = hdr - size
        if start < 0:
            raise ParseError(f"bootconfig size {size} does not fit in the initrd")
        return start, size
    return None


def _read_stream(view: memoryview, compress: str, result: ParseResult, top: bool) -> None:
    end = len(view)
    bootconfig: CpioArchive | None = None

    if top:
        found = find_bootconfig(view)
        if found is not None:
            start, size = found
            bootconfig = CpioArchive(
                raw=bytes(view[start:start + size]),
                type=CpioType.BOOTCONFIG,
                compress=None,
                size=size,
            )
            end = start

    offset = 0
    while offset < end:
        chunk = view[offset:end]
        fmt = decompress_method(chunk)
        if fmt is not None and fmt.decompressor is not None:
            try:
                unpacked, consumed = fmt.decompressor(chunk)
            except DecompressError as exc:
                raise ParseError(f"decompressor failed: {exc}") from exc
            result.streams.append(unpacked)
            _read_stream(memoryview(unpacked), fmt.name, result, False)
            offset += consumed
            continue

        archive = CpioArchive(raw=bytes(chunk), type=CpioType.ARCHIVE, compress=compress)
        result.cpios.append(archive)
        offset += read_cpio(archive)

    if bootconfig is not None:
        result.cpios.append(bootconfig)


def read_initrd(data) -> ParseResult:
    """Split a whole initramfs image into archives, decompressing as needed."""
    raw = bytes(data)
    result = ParseResult(streams=[raw])
    _read_stream(memoryview(raw), "raw", result, True)
    return result