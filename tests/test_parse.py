import gzip
import io
import struct

import pytest

from initrdtools.cpio import CpioError, CpioHeader, CpioType, write_cpio, write_trailer
from initrdtools.parse import (
    BOOTCONFIG_MAGIC,
    ParseError,
    find_bootconfig,
    read_initrd,
)


def _entry(name, mode, body=b""):
    return CpioHeader(
        name=name,
        body=body,
        mode=mode,
        nlink=1,
        body_len=len(body),
        name_len=len(name.encode()) + 1,
    )


def _archive(entries):
    buf = io.BytesIO()
    offset = 0
    for entry in entries:
        offset = write_cpio(entry, offset, buf)
    write_trailer(offset, buf)
    return buf.getvalue()


def _bootconfig(body, padding=b""):
    return body + struct.pack("<II", len(body), 0) + BOOTCONFIG_MAGIC + padding


FIRST = [_entry("dev", 0o40755), _entry("init", 0o100755, b"#!/bin/sh\n")]
SECOND = [_entry("etc", 0o40755), _entry("etc/hostname", 0o100644, b"box\n")]


def test_single_raw_archive():
    data = _archive(FIRST)
    result = read_initrd(data)
    assert len(result.cpios) == 1
    part = result.cpios[0]
    assert part.type is CpioType.ARCHIVE
    assert part.compress == "raw"
    assert [h.name for h in part.headers] == ["dev", "init"]
    assert part.headers[1].body == b"#!/bin/sh\n"
    assert result.streams == [data]


def test_gzip_archive_is_unpacked():
    raw = _archive(FIRST)
    result = read_initrd(gzip.compress(raw))
    assert [p.compress for p in result.cpios] == ["gzip"]
    assert len(result.streams) == 2
    assert result.streams[1] == raw
    assert [h.name for h in result.cpios[0].headers] == ["dev", "init"]


def test_raw_followed_by_gzip():
    data = _archive(FIRST) + gzip.compress(_archive(SECOND))
    result = read_initrd(data)
    assert [p.compress for p in result.cpios] == ["raw", "gzip"]
    assert [h.name for h in result.cpios[1].headers] == ["etc", "etc/hostname"]
    assert result.archives == result.cpios


@pytest.mark.parametrize("padding", [b"", b"\0", b"\0\0\0"])
def test_find_bootconfig(padding):
    archive = _archive(FIRST)
    body = b"kernel.foo = bar\n"
    found = find_bootconfig(archive + _bootconfig(body, padding))
    assert found == (len(archive), len(body))


def test_find_bootconfig_absent():
    assert find_bootconfig(_archive(FIRST)) is None


def test_find_bootconfig_too_far_from_end():
    data = _archive(FIRST) + _bootconfig(b"x = y\n", b"\0\0\0\0")
    assert find_bootconfig(data) is None


def test_bootconfig_size_too_large():
    data = _archive(FIRST) + struct.pack("<II", 10**9, 0) + BOOTCONFIG_MAGIC
    with pytest.raises(ParseError):
        find_bootconfig(data)


def test_read_initrd_with_bootconfig():
    body = b"kernel.foo = bar\n"
    result = read_initrd(_archive(FIRST) + _bootconfig(body))
    assert [p.type for p in result.cpios] == [CpioType.ARCHIVE, CpioType.BOOTCONFIG]
    config = result.cpios[-1]
    assert config.raw == body
    assert config.size == len(body)
    assert config.compress is None
    assert [h.name for h in result.cpios[0].headers] == ["dev", "init"]
    assert result.archives == result.cpios[:1]


def test_garbage_is_rejected():
    with pytest.raises(CpioError):
        read_initrd(b"x" * 600)


def test_old_ascii_cpio_is_rejected():
    with pytest.raises(CpioError):
        read_initrd(b"070707" + b"0" * 600)


def test_broken_gzip_stream():
    packed = gzip.compress(_archive(FIRST))
    with pytest.raises(ParseError):
        read_initrd(packed[: len(packed) // 2])