"""Listing the contents of an initramfs image in an ls-like format."""

from __future__ import annotations

import argparse
import enum
import stat
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .cpio import CpioArchive, CpioError, CpioHeader, CpioType
from .parse import PACKAGE_VERSION, ParseError, ParseResult, read_initrd


class ShowFlags(enum.IntFlag):
    NONE = 0
    COMPRESSION = 1 << 1
    NAME_ONLY = 1 << 2
    NO_MTIME = 1 << 3
    BRIEF = 1 << 4


_TYPE_CHARS = {
    stat.S_IFBLK: "b",
    stat.S_IFCHR: "c",
    stat.S_IFDIR: "d",
    stat.S_IFIFO: "p",
    stat.S_IFLNK: "l",
    stat.S_IFSOCK: "s",
    stat.S_IFREG: "-",
}


def file_type_char(mode: int) -> str:
    """The ls type letter for ``mode``, or '?' for an unknown type."""
    return _TYPE_CHARS.get(stat.S_IFMT(mode), "?")


def mode_string(mode: int) -> str:
    """Ten-character permission string, as shown by the listing."""

    def flag(mask: int, char: str) -> str:
        return char if mode & mask else "-"

    if mode & stat.S_ISVTX:
        other_exec = "t" if stat.S_ISDIR(mode) else "T"
    else:
        other_exec = flag(stat.S_IXOTH, "x")

    return "".join((
        file_type_char(mode),
        flag(stat.S_IRUSR, "r"),
        flag(stat.S_IWUSR, "w"),
        "S" if mode & stat.S_ISUID else flag(stat.S_IXUSR, "x"),
        flag(stat.S_IRGRP, "r"),
        flag(stat.S_IWGRP, "w"),
        "S" if mode & stat.S_ISGID else flag(stat.S_IXGRP, "x"),
        flag(stat.S_IROTH, "r"),
        flag(stat.S_IWOTH, "w"),
        other_exec,
    ))


def _dev_major(rdev: int) -> int:
    return ((rdev >> 8) & 0xFFF) | ((rdev >> 32) & ~0xFFF)


def _dev_minor(rdev: int) -> int:
    return (rdev & 0xFF) | ((rdev >> 12) & ~0xFF)


def _is_device(mode: int) -> bool:
    return stat.S_ISCHR(mode) or stat.S_ISBLK(mode)


@dataclass
class HeaderFormatter:
    """Formats entries with column widths shared by the whole listing."""

    flags: ShowFlags = ShowFlags.NONE
    nlink_width: int = 1
    size_width: int = 1
    uid_width: int = 1
    gid_width: int = 1
    minor_width: int = 1
    major_width: int = 1

    def preformat(self, header: CpioHeader) -> None:
        """Widen the columns so that ``header`` fits."""
        self.nlink_width = max(self.nlink_width, len(str(header.nlink)))
        self.uid_width = max(self.uid_width, len(str(header.uid)))
        self.gid_width = max(self.gid_width, len(str(header.gid)))
        if _is_device(header.mode):
            self.major_width = max(self.major_width, len(str(_dev_major(header.rdev))))
            self.minor_width = max(self.minor_width, len(str(_dev_minor(header.rdev))))
            self.size_width = max(self.size_width, self.major_width + self.minor_width + 1)
        else:
            self.size_width = max(self.size_width, len(str(header.body_len)))

    def format_header(self, header: CpioHeader) -> str:
        """One listing line for ``header``, without the line break."""
        if self.flags & ShowFlags.NO_MTIME:
            mtime = ""
        else:
            mtime = time.strftime("%b %d %H:%M:%S %Y ", time.localtime(header.mtime))

        if _is_device(header.mode):
            major_width = max(self.size_width - self.major_width - self.minor_width, 0)
            size = (
                f"{_dev_major(header.rdev):>{major_width}},"
                f"{_dev_minor(header.rdev):>{self.minor_width}}"
            )
        else:
            size = f"{header.body_len:>{self.size_width}}"

        line = (
            f"{mode_string(header.mode)}"
            f" {header.nlink:>{self.nlink_width}}"
            f" {header.uid:>{self.uid_width}}"
            f" {header.gid:>{self.gid_width}}"
            f" {size} {mtime}{header.name}"
        )
        if stat.S_ISLNK(header.mode):
            target = bytes(header.body).split(b"\0", 1)[0]
            line += f" -> {target.decode('utf-8', 'surrogateescape')}"
        return line


def _describe(part: CpioArchive) -> str:
    if part.type is CpioType.ARCHIVE:
        prefix = "" if part.compress == "raw" else f"{part.compress} compressed "
        return prefix + "cpio archive"
    if part.type is CpioType.BOOTCONFIG:
        return "bootconfig"
    return "unknown"


def list_initrd(result: ParseResult, flags: ShowFlags = ShowFlags.NONE) -> Iterator[str]:
    """Yield the listing lines for a parsed image."""
    flags = ShowFlags(flags)
    formatter = HeaderFormatter(flags)
    compress_width = 3

    for part in result.cpios:
        if flags & ShowFlags.BRIEF or part.type is not CpioType.ARCHIVE:
            continue
        if flags & ShowFlags.COMPRESSION:
            compress_width = max(compress_width, len(str(part.compress)))
        for header in part.headers:
            formatter.preformat(header)

    number_width = len(str(len(result.cpios)))
    number = 1
    for part in result.cpios:
        if flags & ShowFlags.BRIEF:
            yield f"{number}\t{_describe(part)}, size {part.size} bytes"
            number += 1
            continue
        if part.type is not CpioType.ARCHIVE:
            continue
        if flags & ShowFlags.COMPRESSION:
            prefix = f"{number:>{number_width}} {str(part.compress):>{compress_width}} "
        else:
            prefix = f"{number:>{number_width}} "
        for header in part.headers:
            if flags & ShowFlags.NAME_ONLY:
                yield prefix + header.name
            else:
                yield prefix + formatter.format_header(header)
        number += 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="initrd-ls",
        description=(
            "Displays initramfs contents in a format similar to ls command. "
            "If initramfs contains more than one cpio archive, all of them are shown. "
            "Compressed archives are looked into."
        ),
    )
    parser.add_argument("--no-mtime", action="count", default=0,
                        help="hide modification time")
    parser.add_argument("-b", "--brief", action="count", default=0,
                        help="show only brief information about archive parts")
    parser.add_argument("-n", "--name", action="count", default=0,
                        help="show only filenames")
    parser.add_argument("-C", "--compression", action="count", default=0,
                        help="show compression method for each archive")
    parser.add_argument("-V", "--version", action="version",
                        version=f"%(prog)s version {PACKAGE_VERSION}")
    parser.add_argument("initrd", nargs="*", help="initramfs image")
    return parser


def _fail(prog: str, message: str) -> int:
    print(f"{prog}: {message}", file=sys.stderr)
    return 1


def main(argv=None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    flags = ShowFlags.NONE
    for count, flag in (
        (args.no_mtime, ShowFlags.NO_MTIME),
        (args.brief, ShowFlags.BRIEF),
        (args.name, ShowFlags.NAME_ONLY),
        (args.compression, ShowFlags.COMPRESSION),
    ):
        if count % 2:
            flags |= flag

    if not args.initrd:
        return _fail(parser.prog, "ERROR: Missing initrd file")

    path = Path(args.initrd[0])
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        return _fail(parser.prog, f"ERROR: initrd does not exist: {path}")
    except OSError as exc:
        return _fail(parser.prog, f"ERROR: open: {path}: {exc.strerror}")

    try:
        result = read_initrd(data)
    except (ParseError, CpioError) as exc:
        return _fail(parser.prog, f"ERROR: {exc}")

    for line in list_initrd(result, flags):
        print(line)
    return 0