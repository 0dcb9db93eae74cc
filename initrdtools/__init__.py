"""Tools for inspecting, extracting and populating initramfs images and selecting kernel modules."""

__version__ = "0.1.0"

__all__ = [
    "cpio",
    "decompress",
    "parse",
    "ls",
    "extract",
    "elf",
    "put_resolve",
    "put_install",
    "scanmod_rules",
    "scanmod",
]