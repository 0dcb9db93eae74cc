"""Extracting cpio archives from an initramfs image into one archive."""

from __future__ import annotations

import argparse
import re
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import BinaryIO

from .cpio import CpioError, CpioType, write_cpio, write_trailer
from .parse import PACKAGE_VERSION, ParseError, ParseResult, read_initrd

_NUMBER = re.compile(r"\s*[+-]?[0-9]+")


def extract(result: ParseResult, output: BinaryIO, archive: int = 0) -> int:
    """Write the entries of archive number ``archive`` (all if 0) as one cpio.

    Parts are numbered from 1 in image order, bootconfig included.
    Return the number of bytes written.
    """
    offset = 0
    for number, part in enumerate(result.cpios, start=1):
        if part.type is not CpioType.ARCHIVE:
            continue
        if archive and number != archive:
            continue
        for header in part.headers:
            offset = write_cpio(header, offset, output)
    return write_trailer(offset, output)


def _parse_archive_number(value: str) -> int:
    if not _NUMBER.fullmatch(value):
        raise ValueError(value)
    number = int(value)
    if number <= 0:
        raise ValueError(value)
    return number


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="initrd-extract",
                                     description="Extracts part of initramfs")
    parser.add_argument("-a", "--archive", metavar="NUM",
                        help="extract only specified initramfs")
    parser.add_argument("-o", "--output", metavar="FILE",
                        help="write output to FILE instead of stdout")
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

    archive = 0
    if args.archive is not None:
        try:
            archive = _parse_archive_number(args.archive)
        except ValueError:
            return _fail(parser.prog, f'invalid value for "archive" option: {args.archive}')

    with ExitStack() as stack:
        if args.output:
            try:
                output = stack.enter_context(open(args.output, "wb"))
            except OSError as exc:
                return _fail(parser.prog, f"ERROR: fopen: {args.output}: {exc.strerror}")
        else:
            output = sys.stdout.buffer

        if not args.initrd:
            return _fail(parser.prog, "Missing initrd file")

        path = Path(args.initrd[0])
        try:
            data = path.read_bytes()
        except OSError as exc:
            return _fail(parser.prog, f"ERROR: stat: {path}: {exc.strerror}")

        try:
            result = read_initrd(data)
        except (ParseError, CpioError) as exc:
            return _fail(parser.prog, f"ERROR: {exc}")

        extract(result, output, archive)
        output.flush()

    return 0