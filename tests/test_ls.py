import gzip
import io
import stat
import struct

import pytest

from initrdtools.cpio import CpioHeader, write_cpio, write_trailer
from initrdtools.ls import (
    HeaderFormatter,
    ShowFlags,
    file_type_char,
    list_initrd,
    main,
    mode_string,
)
from initrdtools.parse import BOOTCONFIG_MAGIC, read_initrd


def _entry(name, mode, body=b"", **extra):
    return CpioHeader(
        name=name,
        body=body,
        mode=mode,
        nlink=1,
        body_len=len(body),
        name_len=len(name.encode()) + 1,
        **extra,
    )


def _archive(entries):
    buf = io.BytesIO()
    offset = 0
    for entry in entries:
        offset = write_cpio(entry, offset, buf)
    write_trailer(offset, buf)
    return buf.getvalue()


FIRST = [_entry("dev", 0o40755), _entry("dev/console", stat.S_IFCHR | 0o600, rmajor=5, rminor=1)]
SECOND = [_entry("bin", 0o40755), _entry("bin/sh", 0o100755, b"\x7fELF")]


@pytest.mark.parametrize(
    "mode,char",
    [
        (stat.S_IFDIR, "d"),
        (stat.S_IFREG, "-"),
        (stat.S_IFLNK, "l"),
        (stat.S_IFCHR, "c"),
        (stat.S_IFBLK, "b"),
        (stat.S_IFIFO, "p"),
        (stat.S_IFSOCK, "s"),
        (0, "?"),
    ],
)
def test_file_type_char(mode, char):
    assert file_type_char(mode) == char


@pytest.mark.parametrize(
    "mode",
    [0o100755, 0o100644, 0o40700, 0o120777, 0o20600, 0o10640, 0o140000],
)
def test_mode_string_plain_modes(mode):
    assert mode_string(mode) == stat.filemode(mode)


def test_mode_string_special_bits():
    assert mode_string(stat.S_IFREG | 0o4755)[3] == "S"
    assert mode_string(stat.S_IFREG | 0o2755)[6] == "S"
    assert mode_string(stat.S_IFDIR | 0o1777)[9] == "t"
    assert mode_string(stat.S_IFREG | 0o1644)[9] == "T"


def test_columns_are_aligned():
    formatter = HeaderFormatter(ShowFlags.NO_MTIME)
    small = _entry("a", 0o100644, b"x")
    large = _entry("b", 0o100644, b"x" * 12345)
    for header in (small, large):
        formatter.preformat(header)
    first = formatter.format_header(small)
    second = formatter.format_header(large)
    assert len(first) == len(second)
    assert first.startswith(stat.filemode(0o100644) + " ")
    assert first.endswith(" a")
    assert " 12345 b" in second


def test_device_numbers():
    formatter = HeaderFormatter(ShowFlags.NO_MTIME)
    console = _entry("dev/console", stat.S_IFCHR | 0o600, rmajor=5, rminor=1)
    big = _entry("dev/big", stat.S_IFBLK | 0o600, rmajor=5, rminor=300)
    for header in (console, big):
        formatter.preformat(header)
    assert "5,1 dev/console" in formatter.format_header(console)
    assert "5,300 dev/big" in formatter.format_header(big)


def test_symlink_target():
    formatter = HeaderFormatter(ShowFlags.NO_MTIME)
    link = _entry("sbin/init", stat.S_IFLNK | 0o777, b"../bin/sh\0")
    formatter.preformat(link)
    assert formatter.format_header(link).endswith("sbin/init -> ../bin/sh")


def test_list_names_only():
    result = read_initrd(_archive(FIRST))
    lines = list(list_initrd(result, ShowFlags.NAME_ONLY))
    assert lines == ["1 dev", "1 dev/console"]


def test_list_numbers_each_archive():
    result = read_initrd(_archive(FIRST) + gzip.compress(_archive(SECOND)))
    lines = list(list_initrd(result, ShowFlags.NAME_ONLY))
    assert lines == ["1 dev", "1 dev/console", "2 bin", "2 bin/sh"]


def test_list_with_compression():
    result = read_initrd(_archive(FIRST) + gzip.compress(_archive(SECOND)))
    lines = list(list_initrd(result, ShowFlags.NAME_ONLY | ShowFlags.COMPRESSION))
    assert [line.split() for line in lines] == [
        ["1", "raw", "dev"],
        ["1", "raw", "dev/console"],
        ["2", "gzip", "bin"],
        ["2", "gzip", "bin/sh"],
    ]
    assert len({line.index(line.split()[2]) for line in lines}) == 1


def test_list_brief():
    body = b"key = value\n"
    data = (
        _archive(FIRST)
        + gzip.compress(_archive(SECOND))
        + body
        + struct.pack("<II", len(body), 0)
        + BOOTCONFIG_MAGIC
    )
    result = read_initrd(data)
    lines = list(list_initrd(result, ShowFlags.BRIEF))
    assert lines == [
        f"1\tcpio archive, size {result.cpios[0].size} bytes",
        f"2\tgzip compressed cpio archive, size {result.cpios[1].size} bytes",
        f"3\tbootconfig, size {len(body)} bytes",
    ]


def test_main_lists_names(tmp_path, capsys):
    image = tmp_path / "initrd.img"
    image.write_bytes(_archive(SECOND))
    assert main(["-n", str(image)]) == 0
    assert capsys.readouterr().out.splitlines() == ["1 bin", "1 bin/sh"]


def test_main_full_listing(tmp_path, capsys):
    image = tmp_path / "initrd.img"
    image.write_bytes(_archive(SECOND))
    assert main(["--no-mtime", str(image)]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("1 " + stat.filemode(0o100755))
    assert lines[1].endswith(" bin/sh")


def test_main_missing_file(tmp_path, capsys):
    assert main([str(tmp_path / "absent.img")]) == 1
    assert "does not exist" in capsys.readouterr().err


def test_main_requires_file(capsys):
    assert main([]) == 1
    assert "Missing initrd file" in capsys.readouterr().err


def test_main_bad_image(tmp_path, capsys):
    image = tmp_path / "bad.img"
    image.write_bytes(b"z" * 700)
    assert main([str(image)]) == 1
    assert "no cpio magic" in capsys.readouterr().err