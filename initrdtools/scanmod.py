"""Finding kernel modules that match rule files."""

from __future__ import annotations

import argparse
import logging
import os
import stat
import struct
import sys
from dataclasses import dataclass, field
from functools import cached_property
from typing import Iterable, Iterator, Optional

from .decompress import DecompressError, decompress_method
from .elf import ELFCLASS64, SHN_UNDEF, ElfError, ElfFile, is_elf
from .parse import PACKAGE_VERSION
from .scanmod_rules import Rule, RulesError, RuleType, Ruleset, parse_rules

log = logging.getLogger(__name__)

_KSYMTAB_PREFIX = "__ksymtab_"


def _strings(data: bytes) -> list[str]:
    return [s.decode("utf-8", "surrogateescape") for s in data.split(b"\0") if s]


@dataclass
class KernelModule:
    """A kernel module file; its ELF contents are decoded on first use."""

    path: str
    raw: bytes = field(repr=False)

    @property
    def name(self) -> str:
        """Module name derived from the file name."""
        return os.path.basename(self.path).split(".", 1)[0].replace("-", "_")

    @cached_property
    def elf(self) -> ElfFile:
        data = self.raw
        if not is_elf(data):
            fmt = decompress_method(data)
            if fmt is None or fmt.decompressor is None:
                raise ElfError("not an ELF file")
            try:
                data, _ = fmt.decompressor(data)
            except DecompressError as exc:
                raise ElfError(str(exc)) from exc
        return ElfFile.from_bytes(data)

    @cached_property
    def info(self) -> list[tuple[str, Optional[str]]]:
        """The key/value pairs of the .modinfo section."""
        section = self.elf.section(".modinfo")
        if section is None:
            raise ElfError("no .modinfo section")
        pairs = []
        for entry in _strings(self.elf.section_data(section)):
            key, sep, value = entry.partition("=")
            pairs.append((key, value if sep else None))
        return pairs

    def _symtab(self) -> list[tuple[str, int]]:
        elf = self.elf
        symtab = elf.section(".symtab")
        if symtab is None:
            return []
        if symtab.link >= len(elf.sections):
            raise ElfError(f"bad string table index {symtab.link}")
        names = elf.section_data(elf.sections[symtab.link])
        data = elf.section_data(symtab)
        if elf.elf_class == ELFCLASS64:
            entry, shndx_field = struct.Struct(elf.byteorder + "IBBHQQ"), 3
        else:
            entry, shndx_field = struct.Struct(elf.byteorder + "IIIBBH"), 5
        usable = len(data) - len(data) % entry.size
        result = []
        for fields in entry.iter_unpack(data[:usable]):
            offset = fields[0]
            name = names[offset:].split(b"\0", 1)[0] if offset < len(names) else b""
            result.append((name.decode("utf-8", "surrogateescape"), fields[shndx_field]))
        return result

    @cached_property
    def symbols(self) -> list[str]:
        """Symbols the module exports."""
        section = self.elf.section("__ksymtab_strings")
        if section is not None:
            return _strings(self.elf.section_data(section))
        return [name[len(_KSYMTAB_PREFIX):] for name, _ in self._symtab()
                if name.startswith(_KSYMTAB_PREFIX)]

    @cached_property
    def dependency_symbols(self) -> list[str]:
        """Undefined symbols the module needs from elsewhere."""
        return [name for name, shndx in self._symtab() if name and shndx == SHN_UNDEF]


def read_module(path) -> KernelModule:
    """Read the module file at ``path``."""
    with open(path, "rb") as handle:
        data = handle.read()
    return KernelModule(os.path.abspath(os.fspath(path)), data)


def match_filename(filename: str, rules: Iterable[Rule]) -> int:
    """-1 if a negative rule matches, 1 if a positive one does, else 0."""
    result = 0
    for rule in rules:
        if rule.matches(filename):
            if rule.type is RuleType.NOT_MATCH:
                return -1
            result = 1
    return result


def match_entries(entries, rules: Iterable[Rule], use_key: bool) -> int:
    """Match ``(key, value)`` pairs like :func:`match_filename`.

    With ``use_key`` a rule only looks at entries whose key is its keyword.
    """
    entries = list(entries)
    result = 0
    for rule in rules:
        for key, value in entries:
            if use_key and (key is None or key != rule.keyword.value):
                continue
            if value is None or not rule.matches(value):
                continue
            if rule.type is RuleType.NOT_MATCH:
                return -1
            result = 1
    return result


def _match_ruleset(module: KernelModule, ruleset: Ruleset) -> bool:
    matched = False

    if ruleset.has_paths:
        rc = match_filename(module.path, ruleset.paths)
        if rc < 0:
            return False
        matched = matched or rc > 0

    if ruleset.has_info:
        try:
            info = module.info
        except ElfError as exc:
            log.warning("Could not get information from '%s': %s", module.name, exc)
            return False
        rc = match_entries(info, ruleset.info, True)
        if rc < 0:
            return False
        matched = matched or rc > 0

    if ruleset.has_symbols:
        for what, attr in (("symbols", "symbols"),
                           ("dependency symbols", "dependency_symbols")):
            try:
                symbols = getattr(module, attr)
            except ElfError as exc:
                log.warning("Could not get %s from '%s': %s", what, module.name, exc)
                return False
            rc = match_entries(((None, s) for s in symbols), ruleset.symbols, False)
            if rc < 0:
                return False
            matched = matched or rc > 0

    return matched


def process_module(module: KernelModule, rulesets: Iterable[Ruleset]) -> bool:
    """True if some ruleset selects ``module``."""
    return any(_match_ruleset(module, ruleset) for ruleset in rulesets)


def is_kernel_modname(filename) -> bool:
    """True for names ending in .ko, .ko.gz or .ko.xz."""
    name = os.fspath(filename)
    if len(name) < 3:
        return False
    if name.endswith(".ko"):
        return True
    if len(name) <= 6:
        return False
    return name.endswith((".ko.gz", ".ko.xz"))


def _walk(path: str) -> Iterator[str]:
    info = os.lstat(path)
    if not stat.S_ISDIR(info.st_mode):
        if stat.S_ISREG(info.st_mode) or stat.S_ISLNK(info.st_mode):
            yield path
        return
    with os.scandir(path) as scan:
        entries = list(scan)
    entries.sort(key=lambda e: (e.is_dir(follow_symlinks=False), os.fsencode(e.name)))
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk(entry.path)
        elif entry.is_symlink() or entry.is_file(follow_symlinks=False):
            yield entry.path


def find_modules(kerneldir, rulesets: Iterable[Ruleset]) -> Iterator[str]:
    """Yield the paths of modules under ``kerneldir`` selected by ``rulesets``.

    Files come before subdirectories, each in name order.
    """
    rulesets = list(rulesets)
    for path in _walk(os.fspath(kerneldir)):
        if not is_kernel_modname(path):
            continue
        try:
            module = read_module(path)
        except OSError as exc:
            log.warning("%s: %s", path, exc.strerror)
            continue
        if process_module(module, rulesets):
            yield module.path


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        self.print_usage(sys.stderr)
        sys.stderr.write(f"{self.prog}: error: {message}\n")
        raise SystemExit(1)


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="initrd-scanmod",
                     usage="%(prog)s [options] [--] rules-file [rules-file ...]")
    parser.add_argument("-k", "--set-version", metavar="VERSION",
                        help="use VERSION instead of `uname -r`")
    parser.add_argument("-b", "--base-dir", metavar="DIR",
                        help="use DIR as filesystem root for /lib/modules")
    parser.add_argument("-V", "--version", action="version",
                        version=f"%(prog)s version {PACKAGE_VERSION}")
    parser.add_argument("rules", nargs="*", help="rules file")
    return parser


def main(argv=None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    prog = parser.prog
    logging.basicConfig(format=f"{prog}: %(message)s")

    if not args.rules:
        print(f"{prog}: rules file required", file=sys.stderr)
        parser.print_help(sys.stderr)
        return 1

    basedir = args.base_dir or ""
    kversion = args.set_version or os.uname().release
    kerneldir = f"{basedir}/lib/modules/{kversion}"

    try:
        rulesets = parse_rules(args.rules)
    except RulesError as exc:
        print(f"{prog}: {exc}", file=sys.stderr)
        return 1

    try:
        for path in find_modules(kerneldir, rulesets):
            print(path)
    except OSError as exc:
        print(f"{prog}: {exc.filename}: fts_read: {exc.strerror}", file=sys.stderr)
        return 1
    return 0