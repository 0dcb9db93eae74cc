"""Detection and decompression of compressed initramfs streams."""

from __future__ import annotations

import bz2
import lzma
import zlib
from dataclasses import dataclass
from typing import Callable, Optional

import zstandard

Decompressor = Callable[[bytes], "tuple[bytes, int]"]

_CHUNK = 0x4000


class DecompressError(Exception):
    """Raised when a compressed stream cannot be decoded."""


def gunzip(data: bytes) -> tuple[bytes, int]:
    """Inflate one gzip/zlib stream; return the output and bytes consumed."""
    decoder = zlib.decompressobj(zlib.MAX_WBITS | 32)
    try:
        out = decoder.decompress(bytes(data))
    except zlib.error as exc:
        raise DecompressError(f"gzip: {exc}") from exc
    if not decoder.eof:
        raise DecompressError("gzip: unexpected end of stream")
    return out, len(data) - len(decoder.unused_data)


def bunzip2(data: bytes) -> tuple[bytes, int]:
    """Decompress one bzip2 stream; return the output and bytes consumed."""
    decoder = bz2.BZ2Decompressor()
    try:
        out = decoder.decompress(bytes(data))
    except (OSError, ValueError) as exc:
        raise DecompressError(f"bzip2: {exc}") from exc
    if not decoder.eof:
        raise DecompressError("bzip2: unexpected end of stream")
    return out, len(data) - len(decoder.unused_data)


def unlzma(data: bytes) -> tuple[bytes, int]:
    """Decompress one xz stream; return the output and bytes consumed."""
    decoder = lzma.LZMADecompressor(format=lzma.FORMAT_XZ)
    try:
        out = decoder.decompress(bytes(data))
    except lzma.LZMAError as exc:
        raise DecompressError(f"xz: {exc}") from exc
    if not decoder.eof:
        raise DecompressError("xz: unexpected end of stream")
    return out, len(data) - len(decoder.unused_data)


def unzstd(data: bytes) -> tuple[bytes, int]:
    """Decompress all zstd frames in ``data``; the whole input is consumed."""
    reader = zstandard.ZstdDecompressor().stream_reader(
        bytes(data), read_across_frames=True
    )
    try:
        with reader:
            out = b"".join(iter(lambda: reader.read(_CHUNK), b""))
    except zstandard.ZstdError as exc:
        raise DecompressError(f"zstd: {exc}") from exc
    return out, len(data)


@dataclass(frozen=True)
class CompressFormat:
    """A compression method recognised by its two magic bytes."""

    magic: bytes
    name: str
    decompressor: Optional[Decompressor]


FORMATS: tuple[CompressFormat, ...] = (
    CompressFormat(b"\x1f\x8b", "gzip", gunzip),
    CompressFormat(b"\x1f\x9e", "gzip", gunzip),
    CompressFormat(b"\x42\x5a", "bzip2", bunzip2),
    CompressFormat(b"\x5d\x00", "lzma", None),
    CompressFormat(b"\xfd\x37", "xz", unlzma),
    CompressFormat(b"\x28\xb5", "zstd", unzstd),
    CompressFormat(b"\x89\x4c", "lzo", None),
    CompressFormat(b"\x02\x21", "lz4", None),
)


def decompress_method(data: bytes) -> CompressFormat | None:
    """Return the format whose magic starts ``data``, or None if none does."""
    if len(data) < 2:
        return None
    head = bytes(data[:2])
    fmt = next((f for f in FORMATS if f.magic == head), None)
    if fmt is not None and fmt.decompressor is None:
        print(f"Decompression of '{fmt.name}' is not supported")
    return fmt