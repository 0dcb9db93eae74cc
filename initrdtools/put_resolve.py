"""Collecting files and their dependencies to be copied into an image."""

from __future__ import annotations

import errno
import logging
import os
import subprocess
from dataclasses import dataclass
from stat import S_ISDIR, S_ISLNK, S_ISREG

from .elf import ELFMAG, is_dynamic_elf

log = logging.getLogger(__name__)

MAXSYMLINKS = 40
LINE_MAX = 2048


@dataclass(eq=False)
class FileEntry:
    """A path to be installed, with what is known about it."""

    src: str
    dst: str | None = None
    stat: os.stat_result | None = None
    symlink: str | None = None
    recursive: bool = False
    installed: bool = False


def suffix_requires_dir_check(end: str) -> bool:
    """True if appending ``end`` to a name needs the name to be a searchable dir.

    ``end`` is empty or starts with a slash.
    """
    i, length = 0, len(end)
    while i < length and end[i] == "/":
        while i < length and end[i] == "/":
            i += 1
        if i == length:
            return True
        char = end[i]
        i += 1
        if char != ".":
            return False
        if i == length or (end[i] == "." and (i + 1 == length or end[i + 1] == "/")):
            return True
    return False


def _dir_check(path: str) -> bool:
    try:
        os.stat(path + "/./")
    except OSError as exc:
        return exc.errno == errno.EOVERFLOW
    return True


def parse_ldd_line(line: str) -> str | None:
    """The absolute library path named by one line of ldd output, or None."""
    line = line.rstrip("\n")
    paren = line.find("(0x")
    if paren < 0:
        return None
    head = line[:paren].rstrip()
    arrow = head.find(" => ")
    path = head[arrow + 4:] if arrow >= 0 else head
    path = path.lstrip()
    return path if path.startswith("/") else None


def strip_prefix(path: str, prefix: str | None) -> str:
    """The destination path of ``path`` once ``prefix`` is removed."""
    if not prefix:
        return path
    plen = len(prefix)
    if len(path) > plen and path[plen] == "/" and path[:plen - 1] == prefix[:plen - 1]:
        return path[plen:]
    if path == prefix:
        return ""
    return path


def _joined(parts: list[str]) -> str:
    return "/" + "/".join(parts)


class Collector:
    """Gathers paths, following symlinks, directories, interpreters and libraries."""

    def __init__(self, prefix: str | None = None, verbose: int = 0) -> None:
        self.prefix = prefix
        self.verbose = verbose
        self.files: dict[str, FileEntry] = {}
        self.pending: list[FileEntry] = []

    def _note(self, level: int, message: str, *args) -> None:
        if self.verbose >= level:
            log.warning(message, *args)

    @property
    def entries(self) -> list[FileEntry]:
        """Accepted entries, ordered by source path."""
        return sorted(self.files.values(), key=lambda e: os.fsencode(e.src))

    def is_added(self, path: str) -> bool:
        """True if ``path`` has already been accepted."""
        return path in self.files

    def enqueue(self, path: str) -> FileEntry:
        """Queue ``path`` for processing and return its entry."""
        entry = FileEntry(src=path)
        self._note(2, "add to list: %s", path)
        self.pending.append(entry)
        return entry

    def enqueue_parent_directory(self, path: str) -> None:
        """Queue the directory holding ``path``, unless it is the root or the prefix."""
        if not path or (self.prefix and path == self.prefix):
            return
        slash = path.rfind("/")
        if slash <= 0:
            return
        self.enqueue(path[:slash])

    def _walk(self, path: str):
        try:
            info = os.lstat(path)
        except OSError as exc:
            log.warning("fts_read: %s: %s", path, exc.strerror)
            return
        yield path, info
        if not S_ISDIR(info.st_mode):
            return
        try:
            names = sorted(os.listdir(path))
        except OSError as exc:
            log.warning("fts_read: %s: %s", path, exc.strerror)
            return
        for name in names:
            yield from self._walk(os.path.join(path, name))

    def enqueue_directory(self, path: str) -> None:
        """Queue ``path`` and everything below it, without following symlinks."""
        self._note(1, "processing: %s", path)
        for found, info in self._walk(path):
            if self.is_added(found):
                continue
            self.enqueue(found).stat = info

    def enqueue_canonicalized_path(self, name: str, recursive: bool) -> FileEntry | None:
        """Resolve ``name`` like realpath, queueing every symlink met on the way.

        The resolved path is queued too and its entry returned; None if a
        component cannot be resolved.
        """
        if name is None:
            raise ValueError("path is None")
        if not name:
            raise ValueError("path is an empty string")

        parts = [] if name.startswith("/") else [p for p in os.getcwd().split("/") if p]
        rest = name
        links = 0

        while rest:
            stripped = rest.lstrip("/")
            if not stripped:
                break
            slash = stripped.find("/")
            if slash < 0:
                component, rest = stripped, ""
            else:
                component, rest = stripped[:slash], stripped[slash:]

            if component == ".":
                continue
            if component == "..":
                if parts:
                    parts.pop()
                continue

            parts.append(component)
            current = _joined(parts)
            try:
                target = os.readlink(current)
            except OSError as exc:
                if suffix_requires_dir_check(rest):
                    ok = _dir_check(current)
                else:
                    ok = exc.errno == errno.EINVAL
                if not ok:
                    log.warning("unable to process component of path: %s: %s",
                                current, exc.strerror)
                    return None
                continue

            links += 1
            if links > MAXSYMLINKS:
                log.warning("unable to process component of path: %s: %s",
                            current, os.strerror(errno.ELOOP))
                return None

            self._note(2, "symlink '%s' points to '%s'", current, target)
            self.enqueue(current)
            rest = target + rest
            if target.startswith("/"):
                parts = []
            else:
                parts.pop()

        resolved = _joined(parts)
        self._note(1, "symlink '%s' points to '%s'", name, resolved)
        entry = self.enqueue(resolved)
        entry.recursive = recursive
        return entry

    def enqueue_regular_file(self, filename: str) -> None:
        """Queue the interpreter of a script or the libraries of a dynamic ELF.

        Raises OSError when the file cannot be read; unreadable files for
        lack of permission are reported and skipped.
        """
        try:
            fd = os.open(filename, os.O_RDONLY | os.O_NOFOLLOW | os.O_CLOEXEC)
        except OSError as exc:
            log.warning("open: %s: %s", filename, exc.strerror)
            if exc.errno in (errno.EACCES, errno.EPERM):
                return
            raise
        try:
            head = os.pread(fd, LINE_MAX, 0)
        finally:
            os.close(fd)

        head = head[:LINE_MAX - 1].split(b"\0", 1)[0]

        if os.access(filename, os.X_OK) and head.startswith(b"#!"):
            text = head[2:].decode("utf-8", "surrogateescape")
            tokens = text.split(None, 1)
            interpreter = tokens[0] if tokens else ""
            self._note(2, "shell script '%s' uses the '%s' interpreter",
                       filename, interpreter)
            if interpreter and not self.is_added(interpreter):
                self.enqueue(interpreter)
            return

        if head.startswith(ELFMAG) and is_dynamic_elf(filename):
            self.enqueue_shared_libraries(filename)

    def enqueue_shared_libraries(self, filename: str) -> None:
        """Queue the shared libraries that ldd reports for ``filename``."""
        try:
            proc = subprocess.run(
                ["ldd", filename],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="surrogateescape",
                check=False,
            )
        except OSError as exc:
            log.warning("popen(ldd): %s: %s", filename, exc.strerror)
            raise

        for line in proc.stdout.splitlines():
            library = parse_ldd_line(line)
            if library is None:
                continue
            self._note(2, "shared object '%s' depends on '%s'", filename, library)
            if self.is_added(library):
                continue
            self.enqueue(library)

    def enqueue_path(self, entry: FileEntry) -> None:
        """Queue whatever an accepted entry depends on."""
        if not self.is_added(entry.src):
            return

        if entry.stat is None:
            entry.stat = os.lstat(entry.src)

        self.enqueue_parent_directory(entry.src)
        mode = entry.stat.st_mode

        if S_ISDIR(mode):
            if entry.recursive:
                self.enqueue_directory(entry.src)
            return

        if S_ISLNK(mode):
            try:
                entry.symlink = os.readlink(entry.src)
            except OSError as exc:
                log.warning("readlink: %s: %s", entry.src, exc.strerror)
            self.enqueue_canonicalized_path(entry.src, False)
            return

        if S_ISREG(mode):
            try:
                self.enqueue_regular_file(entry.src)
            except OSError:
                log.warning("failed to read regular file: %s", entry.src)

    def run(self, destdir, force: bool = False) -> list[FileEntry]:
        """Process the queue until it is empty; return the accepted entries.

        Unless ``force`` is set, paths that already exist in ``destdir`` as
        anything but a directory are dropped.
        """
        destdir = os.fspath(destdir)
        while self.pending:
            batch = self.pending[::-1]
            self.pending = []
            for entry in batch:
                entry.dst = strip_prefix(entry.src, self.prefix)

                if not force:
                    try:
                        existing = os.lstat(destdir + entry.dst)
                    except FileNotFoundError:
                        pass
                    else:
                        if not S_ISDIR(existing.st_mode):
                            self._note(2, "'%s' is already in the destdir", entry.src)
                            continue

                if self.is_added(entry.src):
                    self._note(2, "'%s' has already been processed so skip it", entry.src)
                    continue

                self.files[entry.src] = entry
                self.enqueue_path(entry)
        return self.entries