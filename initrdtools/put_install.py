"""Installing collected files into a destination directory."""

from __future__ import annotations

import argparse
import errno
import logging
import os
import socket
import stat
import sys
from typing import Callable, Iterable

from .parse import PACKAGE_VERSION
from .put_resolve import Collector, FileEntry

log = logging.getLogger(__name__)

EX_USAGE = 64
EX_NOINPUT = 66
EX_OSERR = 71
EX_CANTCREAT = 73
EX_IOERR = 74

BUFSIZ = 8192
_SOCKADDR_UN_SIZE = 110

_TYPE_LETTERS = {
    stat.S_IFBLK: "b",
    stat.S_IFCHR: "c",
    stat.S_IFDIR: "d",
    stat.S_IFIFO: "p",
    stat.S_IFLNK: "l",
    stat.S_IFREG: "f",
    stat.S_IFSOCK: "s",
}

_TYPE_NAMES = {
    stat.S_IFBLK: "block device",
    stat.S_IFCHR: "character device",
    stat.S_IFDIR: "directory",
    stat.S_IFIFO: "FIFO/pipe",
    stat.S_IFLNK: "symlink",
    stat.S_IFREG: "regular file",
    stat.S_IFSOCK: "socket",
}


class InstallError(Exception):
    """Raised when a file cannot be installed; ``code`` is the exit status."""

    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.code = code


def file_type_letter(mode: int) -> str:
    """The one-letter file type used in the log, '?' if unknown."""
    return _TYPE_LETTERS.get(stat.S_IFMT(mode), "?")


def _destination(entry: FileEntry) -> str:
    return entry.dst if entry.dst is not None else entry.src


def format_entry(entry: FileEntry, destdir: str) -> str:
    """One log line: type, source, destination and symlink target."""
    return "\t".join((
        file_type_letter(entry.stat.st_mode),
        entry.src,
        destdir + _destination(entry),
        entry.symlink or "",
    ))


def make_socket(path: str) -> None:
    """Create a Unix socket file at ``path``."""
    if len(os.fsencode(path)) >= _SOCKADDR_UN_SIZE:
        raise OSError(errno.EINVAL, os.strerror(errno.EINVAL), path)
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.bind(path)


def _remove(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        os.rmdir(path)
    else:
        os.unlink(path)


class Installer:
    """Creates entries below ``destdir``, copying regular files."""

    def __init__(self, destdir: str, force: bool = False, verbose: int = 0) -> None:
        self.destdir = os.fspath(destdir)
        self.force = force
        self.verbose = verbose
        self.installed = 0
        self._use_copy_file_range = hasattr(os, "copy_file_range")
        self._use_sendfile = hasattr(os, "sendfile")
        self._creators: dict[int, tuple[str, str, Callable[[FileEntry, str], None]]] = {
            stat.S_IFDIR: ("mkdir", "a directory", lambda e, p: os.mkdir(p, 0o755)),
            stat.S_IFBLK: ("mknod", "a special file", self._mknod),
            stat.S_IFCHR: ("mknod", "a special file", self._mknod),
            stat.S_IFLNK: ("symlink", "a symlink file", self._symlink),
            stat.S_IFIFO: ("mkfifo", "a fifo file",
                           lambda e, p: os.mkfifo(p, stat.S_IMODE(e.stat.st_mode))),
            stat.S_IFSOCK: ("mksock", "a socket file", lambda e, p: make_socket(p)),
        }

    def _note(self, level: int, message: str, *args) -> None:
        if self.verbose >= level:
            log.warning(message, *args)

    @staticmethod
    def _mknod(entry: FileEntry, path: str) -> None:
        os.mknod(path, entry.stat.st_mode, entry.stat.st_dev)

    @staticmethod
    def _symlink(entry: FileEntry, path: str) -> None:
        if entry.symlink is None:
            raise InstallError(f"symlink: {path}: link target is unknown", EX_CANTCREAT)
        os.symlink(entry.symlink, path)

    def install(self, entry: FileEntry) -> bool:
        """Create ``entry`` in the destination.

        Return False when its parent directory does not exist yet, so that
        it can be retried later; True once it is installed or skipped.
        """
        if entry.installed:
            return True

        mode = entry.stat.st_mode
        kind = stat.S_IFMT(mode)
        ftype = _TYPE_NAMES.get(kind, "unknown")
        path = self.destdir + _destination(entry)
        op = "install"

        if self.force and kind != stat.S_IFDIR:
            try:
                _remove(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise InstallError(f"remove: {path}: {exc.strerror}") from exc

        if kind == stat.S_IFREG:
            if os.access(path, os.X_OK):
                op = "skip"
            elif not self._install_regular(entry, path):
                return False
        else:
            creator = self._creators.get(kind)
            if creator is None:
                raise InstallError(
                    f"unsupported file type (mode={mode:o}): {_destination(entry)}"
                )
            call, what, create = creator
            self._note(3, "create %s: %s", what, path)
            try:
                create(entry, path)
            except FileExistsError:
                op = "skip"
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise InstallError(f"{call}: {path}: {exc.strerror}", EX_CANTCREAT) from exc

        self._note(1, "%s (%s): %s", op, ftype, path)
        entry.installed = True
        self.installed += 1
        return True

    def _install_regular(self, entry: FileEntry, path: str) -> bool:
        self._note(3, "create a regular file: %s", path)
        try:
            dst_fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
                             stat.S_IMODE(entry.stat.st_mode))
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise InstallError(f"creat: {path}: {exc.strerror}", EX_CANTCREAT) from exc

        try:
            try:
                src_fd = os.open(entry.src, os.O_RDONLY)
            except OSError as exc:
                raise InstallError(f"open: {entry.src}: {exc.strerror}", EX_NOINPUT) from exc
            try:
                self._copy(entry, src_fd, dst_fd)
            finally:
                os.close(src_fd)
        finally:
            os.close(dst_fd)
        return True

    def _copy(self, entry: FileEntry, src_fd: int, dst_fd: int) -> None:
        size = entry.stat.st_size
        if hasattr(os, "posix_fadvise"):
            try:
                os.posix_fadvise(src_fd, 0, size, os.POSIX_FADV_SEQUENTIAL)
            except OSError:
                pass
        if hasattr(os, "posix_fallocate") and size > 0:
            try:
                os.posix_fallocate(dst_fd, 0, size)
            except OSError:
                pass

        if self._use_copy_file_range:
            try:
                self._copy_loop(lambda n: os.copy_file_range(src_fd, dst_fd, n), size)
                return
            except OSError as exc:
                if exc.errno not in (errno.EXDEV, errno.ENOSYS, errno.EINVAL,
                                     errno.EOPNOTSUPP):
                    raise InstallError(
                        f"copy_file_range: {entry.src} -> {entry.dst}: {exc.strerror}",
                        EX_IOERR,
                    ) from exc
                self._use_copy_file_range = False
                self._note(3, "copy_file_range not supported")

        if self._use_sendfile:
            os.lseek(src_fd, 0, os.SEEK_SET)
            os.lseek(dst_fd, 0, os.SEEK_SET)
            try:
                self._copy_loop(lambda n: os.sendfile(dst_fd, src_fd, None, n), size)
                return
            except OSError as exc:
                if exc.errno not in (errno.EINVAL, errno.ENOSYS):
                    raise InstallError(
                        f"sendfile: {entry.src} -> {entry.dst}: {exc.strerror}", EX_IOERR
                    ) from exc
                self._use_sendfile = False
                self._note(3, "sendfile not supported")

        os.lseek(src_fd, 0, os.SEEK_SET)
        os.lseek(dst_fd, 0, os.SEEK_SET)
        remaining = size
        while remaining > 0:
            try:
                chunk = os.read(src_fd, BUFSIZ)
            except OSError as exc:
                raise InstallError(f"read: {entry.src}: {exc.strerror}", EX_IOERR) from exc
            if not chunk:
                break
            try:
                view = memoryview(chunk)
                while view:
                    view = view[os.write(dst_fd, view):]
            except OSError as exc:
                raise InstallError(f"write: {entry.dst}: {exc.strerror}", EX_IOERR) from exc
            remaining -= len(chunk)

    @staticmethod
    def _copy_loop(step: Callable[[int], int], size: int) -> None:
        remaining = size
        while remaining > 0:
            copied = step(remaining)
            if copied <= 0:
                break
            remaining -= copied

    def install_all(self, entries: Iterable[FileEntry]) -> list[FileEntry]:
        """Install in repeated passes until nothing more can be created.

        Return the entries that could not be installed.
        """
        entries = list(entries)
        while True:
            before = self.installed
            for entry in entries:
                self.install(entry)
            if self.installed == before:
                break
        return [entry for entry in entries if not entry.installed]

    def apply_permissions(self, entry: FileEntry) -> None:
        """Give the installed copy the owner, group and mode of the source."""
        path = self.destdir + _destination(entry)
        info = entry.stat
        try:
            os.lchown(path, info.st_uid, info.st_gid)
        except OSError as exc:
            if exc.errno != errno.EPERM or self.verbose > 2:
                log.warning("unable to change owner and group to uid=%d and gid=%d of `%s': %s",
                            info.st_uid, info.st_gid, path, exc.strerror)
            if exc.errno != errno.EPERM:
                raise InstallError(
                    f"unable to change owner and group of `{path}': {exc.strerror}"
                ) from exc

        if not stat.S_ISLNK(info.st_mode):
            try:
                os.chmod(path, stat.S_IMODE(info.st_mode))
            except OSError as exc:
                raise InstallError(
                    f"change file mode of `{path}' to {info.st_mode:o}: {exc.strerror}"
                ) from exc


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        sys.stderr.write(f"{self.prog}: {message}\n"
                         f"Try '{self.prog} --help' for more information.\n")
        raise SystemExit(EX_USAGE)


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="initrd-put",
        usage="%(prog)s [<options>] <destdir> file|directory [file|directory ...]",
        description=(
            "Copy files and directories along with their dependencies into a "
            "destination directory. Symbolic links and binary dependencies are "
            "followed and copied along with the specified files."
        ),
    )
    parser.add_argument("-n", "--dry-run", action="store_true", help="do nothing")
    parser.add_argument("-f", "--force", action="store_true",
                        help="overwrite destination file if exists")
    parser.add_argument("-l", "--log", metavar="FILE",
                        help="write a log about what was copied")
    parser.add_argument("-r", "--remove-prefix", metavar="PATH",
                        help="ignore prefix in path")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="print a message for each action")
    parser.add_argument("-V", "--version", action="version",
                        version=f"%(prog)s version {PACKAGE_VERSION}")
    parser.add_argument("destdir", nargs="?")
    parser.add_argument("paths", nargs="*")
    return parser


def _fail(prog: str, message: str, code: int) -> int:
    print(f"{prog}: {message}", file=sys.stderr)
    return code


def main(argv=None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    prog = parser.prog
    logging.basicConfig(format=f"{prog}: %(message)s")

    if args.destdir is None:
        return _fail(prog, "more arguments required", EX_USAGE)
    try:
        destdir = os.path.realpath(args.destdir, strict=True)
    except OSError:
        return _fail(prog, f"bad destination directory: {args.destdir}", EX_USAGE)
    if not args.paths:
        return _fail(prog, "more arguments required", EX_USAGE)

    collector = Collector(prefix=args.remove_prefix, verbose=args.verbose)
    try:
        for path in args.paths:
            collector.enqueue_canonicalized_path(path, True)
        entries = collector.run(destdir, force=args.force)
    except ValueError as exc:
        return _fail(prog, str(exc), 1)
    except OSError as exc:
        return _fail(prog, f"{exc.filename}: {exc.strerror}", EX_OSERR)

    try:
        if args.dry_run:
            if args.verbose > 1:
                log.warning("dry run only ...")
            for entry in entries:
                print(format_entry(entry, destdir))
        else:
            if args.verbose > 1:
                log.warning("copying files ...")
            installer = Installer(destdir, force=args.force, verbose=args.verbose)
            old_umask = os.umask(0)
            try:
                remaining = installer.install_all(entries)
                if remaining:
                    for entry in entries:
                        print(format_entry(entry, destdir))
                    return _fail(prog, "unable to create the files listed above", 1)
                for entry in entries:
                    installer.apply_permissions(entry)
            finally:
                os.umask(old_umask)
    except InstallError as exc:
        return _fail(prog, str(exc), exc.code)

    if args.log:
        try:
            with open(args.log, "a", encoding="utf-8", errors="surrogateescape") as logout:
                for entry in entries:
                    logout.write(format_entry(entry, destdir) + "\n")
        except OSError as exc:
            return _fail(prog, f"open: {args.log}: {exc.strerror}", EX_CANTCREAT)

    return 0