"""Minimal ELF reader: enough to walk section headers and spot dynamic objects."""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

ELFMAG = b"\x7fELF"
EI_NIDENT = 16

ELFCLASS32 = 1
ELFCLASS64 = 2
ELFDATA2LSB = 1
ELFDATA2MSB = 2

SHN_UNDEF = 0
SHN_XINDEX = 0xFFFF

SHT_STRTAB = 3
SHT_DYNAMIC = 6
SHT_NOBITS = 8

_LAYOUTS = {
    ELFCLASS32: ("HHIIIIIHHHHHH", "IIIIIIIIII"),
    ELFCLASS64: ("HHIQQQIHHHHHH", "IIQQQQIIQQ"),
}
_BYTE_ORDERS = {ELFDATA2LSB: "<", ELFDATA2MSB: ">"}


class ElfError(Exception):
    """Raised when data is not a well-formed ELF object."""


@dataclass(frozen=True)
class Section:
    """One entry of the section header table."""

    name: str
    type: int
    flags: int
    addr: int
    offset: int
    size: int
    link: int
    info: int
    addralign: int
    entsize: int


def is_elf(data: bytes) -> bool:
    """True if ``data`` starts with the ELF magic."""
    return bytes(data[:len(ELFMAG)]) == ELFMAG


@dataclass
class ElfFile:
    """An ELF object and its sections."""

    data: bytes
    elf_class: int
    byteorder: str
    type: int
    machine: int
    sections: list[Section] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data) -> "ElfFile":
        """Parse the ELF header and the section header table of ``data``."""
        data = bytes(data)
        if len(data) < EI_NIDENT or not is_elf(data):
            raise ElfError("not an ELF file")

        layout = _LAYOUTS.get(data[4])
        if layout is None:
            raise ElfError(f"unknown ELF class {data[4]}")
        order = _BYTE_ORDERS.get(data[5])
        if order is None:
            raise ElfError(f"unknown ELF data encoding {data[5]}")

        header_struct = struct.Struct(order + layout[0])
        section_struct = struct.Struct(order + layout[1])
        try:
            (e_type, e_machine, _version, _entry, _phoff, e_shoff, _flags,
             _ehsize, _phentsize, _phnum, e_shentsize, e_shnum,
             e_shstrndx) = header_struct.unpack_from(data, EI_NIDENT)
        except struct.error as exc:
            raise ElfError("truncated ELF header") from exc

        elf = cls(data=data, elf_class=data[4], byteorder=order,
                  type=e_type, machine=e_machine)
        if e_shoff == 0:
            return elf

        if e_shentsize < section_struct.size:
            raise ElfError(f"bad section header size {e_shentsize}")

        def raw_section(index: int) -> tuple:
            try:
                return section_struct.unpack_from(data, e_shoff + index * e_shentsize)
            except struct.error as exc:
                raise ElfError("truncated section header table") from exc

        first = raw_section(0)
        count = e_shnum if e_shnum else first[5]
        strndx = first[6] if e_shstrndx == SHN_XINDEX else e_shstrndx

        raw = [first, *(raw_section(i) for i in range(1, count))]
        if strndx != SHN_UNDEF and strndx >= len(raw):
            raise ElfError(f"section name string table index {strndx} out of range")

        unnamed = [Section("", *fields[1:]) for fields in raw]
        names = b""
        if strndx != SHN_UNDEF:
            names = elf.section_data(unnamed[strndx])

        elf.sections = [
            Section(_string_at(names, fields[0]), *fields[1:]) for fields in raw
        ]
        return elf

    def section(self, name: str) -> Section | None:
        """The first section called ``name``, or None."""
        return next((s for s in self.sections if s.name == name), None)

    def section_data(self, section: Section) -> bytes:
        """The file contents of ``section`` (empty for SHT_NOBITS)."""
        if section.type == SHT_NOBITS:
            return b""
        end = section.offset + section.size
        if end > len(self.data):
            raise ElfError(f"section {section.name!r} extends past end of file")
        return self.data[section.offset:end]

    @property
    def is_dynamic(self) -> bool:
        """True if the object has a dynamic section."""
        return any(s.type == SHT_DYNAMIC for s in self.sections)


def _string_at(table: bytes, offset: int) -> str:
    if offset >= len(table):
        return ""
    return table[offset:].split(b"\0", 1)[0].decode("utf-8", "replace")


def is_dynamic_elf(path) -> bool:
    """True if the file at ``path`` is an ELF object with a dynamic section."""
    with open(path, "rb") as handle:
        data = handle.read()
    if not is_elf(data):
        return False
    try:
        return ElfFile.from_bytes(data).is_dynamic
    except ElfError as exc:
        log.warning("%s: %s", os.fspath(path), exc)
        return False