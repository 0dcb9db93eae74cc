import struct

import pytest

from initrdtools.elf import ElfError, ElfFile, is_dynamic_elf, is_elf


def build_elf(sections, elf_class=2, order="<"):
    """Build an ELF image holding ``sections`` given as (name, type, payload)."""
    shstr = b"\0"
    name_offsets = []
    for name, _type, _payload in sections:
        name_offsets.append(len(shstr))
        shstr += name.encode() + b"\0"
    shstr_name = len(shstr)
    shstr += b".shstrtab\0"

    ehsize = 64 if elf_class == 2 else 52
    body = b""
    offsets = []
    for _name, _type, payload in sections:
        offsets.append(ehsize + len(body))
        body += payload
    shstr_offset = ehsize + len(body)
    body += shstr
    shoff = ehsize + len(body)

    shfmt = order + ("IIQQQQIIQQ" if elf_class == 2 else "IIIIIIIIII")
    table = struct.pack(shfmt, *([0] * 10))
    for (name, sh_type, payload), noff, off in zip(sections, name_offsets, offsets):
        table += struct.pack(shfmt, noff, sh_type, 0, 0, off, len(payload), 0, 0, 1, 0)
    table += struct.pack(shfmt, shstr_name, 3, 0, 0, shstr_offset, len(shstr), 0, 0, 1, 0)

    shnum = len(sections) + 2
    hdrfmt = order + ("HHIQQQIHHHHHH" if elf_class == 2 else "HHIIIIIHHHHHH")
    ident = b"\x7fELF" + bytes([elf_class, 1 if order == "<" else 2, 1]) + bytes(9)
    header = ident + struct.pack(hdrfmt, 3, 62, 1, 0, 0, shoff, 0, ehsize, 0, 0,
                                 struct.calcsize(shfmt), shnum, shnum - 1)
    return header + body + table


@pytest.mark.parametrize(
    "data, expected",
    [(b"\x7fELF\x02\x01", True), (b"#!/bin/sh\n", False), (b"\x7fEL", False), (b"", False)],
)
def test_is_elf(data, expected):
    assert is_elf(data) is expected


def test_section_names_and_data_round_trip():
    image = build_elf([(".text", 1, b"\x90\x90"), (".dynamic", 6, b"dyn!")])
    elf = ElfFile.from_bytes(image)
    assert [s.name for s in elf.sections] == ["", ".text", ".dynamic", ".shstrtab"]
    assert elf.section_data(elf.section(".text")) == b"\x90\x90"
    assert elf.section_data(elf.section(".dynamic")) == b"dyn!"
    assert elf.section(".missing") is None


def test_dynamic_detection():
    assert ElfFile.from_bytes(build_elf([(".dynamic", 6, b"x")])).is_dynamic is True
    assert ElfFile.from_bytes(build_elf([(".text", 1, b"x")])).is_dynamic is False


def test_32bit_big_endian():
    image = build_elf([(".dynamic", 6, b"abcd")], elf_class=1, order=">")
    elf = ElfFile.from_bytes(image)
    assert elf.elf_class == 1
    assert elf.byteorder == ">"
    assert elf.section(".dynamic").size == 4
    assert elf.is_dynamic


def test_nobits_section_has_no_data():
    image = build_elf([(".bss", 8, b"")])
    elf = ElfFile.from_bytes(image)
    assert elf.section_data(elf.section(".bss")) == b""


def test_not_elf_raises():
    with pytest.raises(ElfError):
        ElfFile.from_bytes(b"not an elf file at all")


def test_truncated_header_raises():
    image = build_elf([(".text", 1, b"x")])
    with pytest.raises(ElfError):
        ElfFile.from_bytes(image[:40])


def test_truncated_section_table_raises():
    image = build_elf([(".text", 1, b"x")])
    with pytest.raises(ElfError):
        ElfFile.from_bytes(image[:-10])


def test_bad_class_raises():
    image = bytearray(build_elf([]))
    image[4] = 9
    with pytest.raises(ElfError):
        ElfFile.from_bytes(bytes(image))


def test_is_dynamic_elf_on_files(tmp_path):
    dynamic = tmp_path / "dyn"
    dynamic.write_bytes(build_elf([(".dynamic", 6, b"x")]))
    static = tmp_path / "static"
    static.write_bytes(build_elf([(".text", 1, b"x")]))
    script = tmp_path / "script"
    script.write_bytes(b"#!/bin/sh\necho hi\n")
    broken = tmp_path / "broken"
    broken.write_bytes(build_elf([(".dynamic", 6, b"x")])[:30])

    assert is_dynamic_elf(dynamic) is True
    assert is_dynamic_elf(static) is False
    assert is_dynamic_elf(script) is False
    assert is_dynamic_elf(broken) is False