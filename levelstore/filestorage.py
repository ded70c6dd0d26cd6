"""Storage backed by a directory of the file system."""

from __future__ import annotations

import errno
import io
import os
import re
import threading
from datetime import datetime
from typing import Any, BinaryIO, List, Optional

from .storage import (
    ClosedError,
    CorruptedError,
    FileDesc,
    FileType,
    InvalidFileError,
    LockedError,
    Locker,
    Storage,
    StorageError,
    file_desc_ok,
)

try:
    import fcntl
except ImportError:  # pragma: no cover - not available on Windows
    fcntl = None  # type: ignore[assignment]

try:
    import msvcrt
except ImportError:
    msvcrt = None  # type: ignore[assignment]

_LOG_SIZE_THRESHOLD = 1024 * 1024
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_NUMBERED_NAME = re.compile(r"([+-]?\d+)\.(\S+)")
_MANIFEST_NAME = re.compile(r"MANIFEST-([+-]?\d+)(.*)", re.DOTALL)
_PENDING_NUM = re.compile(r"[+-]?\d+")
_BINARY = getattr(os, "O_BINARY", 0)


class ReadOnlyError(StorageError):
    """The storage was opened read-only."""

    def __init__(self, message: str = "storage: storage is read-only") -> None:
        super().__init__(message)


def gen_name(fd: FileDesc) -> str:
    """Return the file name of a descriptor."""
    value = int(fd.type)
    if value == FileType.MANIFEST:
        return f"MANIFEST-{fd.num:06d}"
    if value == FileType.JOURNAL:
        return f"{fd.num:06d}.log"
    if value == FileType.TABLE:
        return f"{fd.num:06d}.ldb"
    if value == FileType.TEMP:
        return f"{fd.num:06d}.tmp"
    raise ValueError("invalid file type")


def has_old_name(fd: FileDesc) -> bool:
    """Report whether files of this type may carry a legacy name."""
    return int(fd.type) == FileType.TABLE


def gen_old_name(fd: FileDesc) -> str:
    """Return the legacy file name of a descriptor."""
    if int(fd.type) == FileType.TABLE:
        return f"{fd.num:06d}.sst"
    return gen_name(fd)


def _int64(text: str) -> Optional[int]:
    value = int(text)
    if _INT64_MIN <= value <= _INT64_MAX:
        return value
    return None


def parse_name(name: str) -> Optional[FileDesc]:
    """Parse a file name into a descriptor, or return None if it is not one."""
    match = _NUMBERED_NAME.match(name)
    if match:
        num = _int64(match.group(1))
        if num is not None:
            tail = match.group(2)
            if tail == "log":
                return FileDesc(FileType.JOURNAL, num)
            if tail in ("ldb", "sst"):
                return FileDesc(FileType.TABLE, num)
            if tail == "tmp":
                return FileDesc(FileType.TEMP, num)
            return None
    match = _MANIFEST_NAME.match(name)
    if match:
        num = _int64(match.group(1))
        if num is not None and not match.group(2).strip():
            return FileDesc(FileType.MANIFEST, num)
    return None


def _rename(old_path: str, new_path: str) -> None:
    os.replace(old_path, new_path)


def _sync_dir(path: str) -> None:
    if os.name == "nt":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    except OSError as exc:
        if exc.errno != errno.EINVAL:
            raise
    finally:
        os.close(fd)


def _set_file_lock(fd: int, read_only: bool, lock: bool) -> None:
    if fcntl is not None:
        if not lock:
            how = fcntl.LOCK_UN
        elif read_only:
            how = fcntl.LOCK_SH
        else:
            how = fcntl.LOCK_EX
        fcntl.flock(fd, how | fcntl.LOCK_NB)
    elif msvcrt is not None and not read_only:
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_NBLCK if lock else msvcrt.LK_UNLCK, 1)


class _FileLock:
    """Process-level lock on the LOCK file of a database directory."""

    def __init__(self, path: str, read_only: bool) -> None:
        flags = (os.O_RDONLY if read_only else os.O_RDWR) | _BINARY
        try:
            fd = os.open(path, flags)
        except FileNotFoundError:
            fd = os.open(path, flags | os.O_CREAT, 0o644)
        try:
            _set_file_lock(fd, read_only, True)
        except OSError:
            os.close(fd)
            raise
        self._fd = fd
        self._read_only = read_only

    def release(self) -> None:
        try:
            _set_file_lock(self._fd, self._read_only, False)
        finally:
            os.close(self._fd)


class _FileStorageLock(Locker):
    def __init__(self, storage: Optional["FileStorage"]) -> None:
        self._storage = storage

    def unlock(self) -> None:
        if self._storage is not None:
            self._storage._release_lock(self)


class _FileWrap:
    """An open file of a file storage."""

    def __init__(self, storage: "FileStorage", file: BinaryIO, fd: FileDesc) -> None:
        self._storage = storage
        self._file = file
        self.fd = fd
        self._closed = False

    def close(self) -> None:
        with self._storage._mu:
            if self._closed:
                raise ClosedError()
            self._closed = True
            self._storage._open -= 1
            try:
                self._file.close()
            except OSError as exc:
                self._storage._log(f"close {self.fd}: {exc}")
                raise

    def __enter__(self) -> "_FileWrap":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class _FileReader(_FileWrap):
    """Read-only file of a file storage."""

    def __init__(self, storage: "FileStorage", file: BinaryIO, fd: FileDesc) -> None:
        super().__init__(storage, file, fd)
        self._io_lock = threading.Lock()

    def read(self, size: int = -1) -> bytes:
        with self._io_lock:
            return self._file.read(size)

    def read_at(self, offset: int, size: int) -> bytes:
        with self._io_lock:
            position = self._file.tell()
            self._file.seek(offset)
            data = self._file.read(size)
            self._file.seek(position)
            return data

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        with self._io_lock:
            return self._file.seek(offset, whence)

    def tell(self) -> int:
        return self._file.tell()

    def readable(self) -> bool:
        return True


class _FileWriter(_FileWrap):
    """Write-only file of a file storage."""

    def write(self, data: bytes) -> int:
        return self._file.write(data)

    def writable(self) -> bool:
        return True

    def flush(self) -> None:
        self._file.flush()

    def sync(self) -> None:
        self._file.flush()
        os.fsync(self._file.fileno())
        if int(self.fd.type) == FileType.MANIFEST:
            # The directory entry of a manifest must be durable as well.
            try:
                _sync_dir(self._storage.path)
            except OSError as exc:
                self._storage._log(f"syncDir: {exc}")
                raise


def _open_log(path: str) -> BinaryIO:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | _BINARY, 0o644)
    return os.fdopen(fd, "wb", buffering=0)


class FileStorage(Storage):
    """A storage kept in a directory; use open_file to obtain one."""

    def __init__(self, path: str, read_only: bool, flock: _FileLock,
                 log_file: Optional[BinaryIO], log_size: int) -> None:
        self.path = path
        self.read_only = read_only
        self._mu = threading.Lock()
        self._flock = flock
        self._slock: Optional[_FileStorageLock] = None
        self._log_file = log_file
        self._log_size = log_size
        # Number of open files; negative once the storage is closed.
        self._open = 0
        self._day = 0

    def _join(self, name: str) -> str:
        return os.path.join(self.path, name)

    def _check_open(self) -> None:
        if self._open < 0:
            raise ClosedError()

    def _release_lock(self, lock: _FileStorageLock) -> None:
        with self._mu:
            if self._slock is lock:
                self._slock = None

    def lock(self) -> Locker:
        with self._mu:
            self._check_open()
            if self.read_only:
                return _FileStorageLock(None)
            if self._slock is not None:
                raise LockedError()
            self._slock = _FileStorageLock(self)
            return self._slock

    def _print_day(self, now: datetime) -> None:
        if self._day == now.day:
            return
        self._day = now.day
        header = (f"=============== {_MONTHS[now.month - 1]} {now.day}, {now.year} "
                  f"({now.tzname()}) ===============\n")
        self._write_log(header.encode())

    def _write_log(self, data: bytes) -> None:
        assert self._log_file is not None
        try:
            self._log_file.write(data)
        except OSError:
            return
        self._log_size += len(data)

    def _do_log(self, now: datetime, message: str) -> None:
        log_path = self._join("LOG")
        if self._log_size > _LOG_SIZE_THRESHOLD:
            if self._log_file is not None:
                self._log_file.close()
            self._log_file = None
            self._log_size = 0
            try:
                _rename(log_path, self._join("LOG.old"))
            except OSError:
                pass
        if self._log_file is None:
            try:
                self._log_file = _open_log(log_path)
            except OSError:
                return
            self._day = 0
        self._print_day(now)
        line = f"{now:%H:%M:%S}.{now.microsecond:06d} {message}\n"
        self._write_log(line.encode(errors="replace"))

    def _log(self, message: str) -> None:
        if not self.read_only:
            self._do_log(datetime.now().astimezone(), message)

    def log(self, message: str) -> None:
        if self.read_only:
            return
        now = datetime.now().astimezone()
        with self._mu:
            if self._open < 0:
                return
            self._do_log(now, message)

    def set_meta(self, fd: FileDesc) -> None:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        if self.read_only:
            raise ReadOnlyError()
        with self._mu:
            self._check_open()
            try:
                self._write_meta(fd)
            except OSError as exc:
                self._log(f"CURRENT: {exc}")
                raise

    def _write_meta(self, fd: FileDesc) -> None:
        pending = self._join(f"CURRENT.{fd.num}")
        with open(pending, "wb") as out:
            out.write((gen_name(fd) + "\n").encode())
            out.flush()
            os.fsync(out.fileno())
        try:
            _rename(pending, self._join("CURRENT"))
        except OSError as exc:
            self._log(f"rename CURRENT.{fd.num}: {exc}")
            raise
        try:
            _sync_dir(self.path)
        except OSError as exc:
            self._log(f"syncDir: {exc}")
            raise

    def get_meta(self) -> FileDesc:
        with self._mu:
            self._check_open()
            names = os.listdir(self.path)
            found = FileDesc()
            pending = False
            obsolete: List[str] = []
            corrupted: Optional[CorruptedError] = None
            for name in names:
                if not name.startswith("CURRENT"):
                    continue
                is_pending = len(name) > 7
                pending_num = 0
                if is_pending:
                    if name[7] != "." or len(name) < 9:
                        self._log(f"skipping {name}: invalid file name")
                        continue
                    num_text = name[8:]
                    parsed = _int64(num_text) if _PENDING_NUM.fullmatch(num_text) else None
                    if parsed is None:
                        self._log(f"skipping {name}: invalid file num")
                        continue
                    pending_num = parsed
                with open(self._join(name), "rb") as current:
                    content = current.read()
                target = None
                if content.endswith(b"\n"):
                    target = parse_name(content[:-1].decode(errors="replace"))
                if target is None:
                    self._log(f"skipping {name}: corrupted or incomplete")
                    if is_pending:
                        obsolete.append(name)
                    if not is_pending or corrupted is None:
                        corrupted = CorruptedError(
                            parse_name(name) or FileDesc(),
                            "storage: corrupted or incomplete meta file",
                        )
                elif is_pending and pending_num != target.num:
                    self._log(f"skipping {name}: inconsistent pending-file num: "
                              f"{pending_num} vs {target.num}")
                    obsolete.append(name)
                elif target.num < found.num:
                    self._log(f"skipping {name}: obsolete")
                    if is_pending:
                        obsolete.append(name)
                else:
                    found = target
                    pending = is_pending
            if found.is_zero():
                if corrupted is not None:
                    raise corrupted
                raise FileNotFoundError(errno.ENOENT, "no valid CURRENT file", self.path)
            if not self.read_only:
                if pending:
                    try:
                        _rename(self._join(f"CURRENT.{found.num}"), self._join("CURRENT"))
                    except OSError as exc:
                        self._log(f"CURRENT.{found.num} -> CURRENT: {exc}")
                for name in obsolete:
                    try:
                        os.remove(self._join(name))
                    except OSError as exc:
                        self._log(f"remove {name}: {exc}")
            return found

    def list(self, file_type: int) -> List[FileDesc]:
        with self._mu:
            self._check_open()
            names = os.listdir(self.path)
        found = []
        for name in names:
            fd = parse_name(name)
            if fd is not None and int(fd.type) & int(file_type):
                found.append(fd)
        return sorted(found, key=lambda fd: (fd.num, int(fd.type)))

    def open(self, fd: FileDesc) -> _FileReader:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            self._check_open()
            try:
                file = open(self._join(gen_name(fd)), "rb")
            except FileNotFoundError:
                if not has_old_name(fd):
                    raise
                file = open(self._join(gen_old_name(fd)), "rb")
            self._open += 1
            return _FileReader(self, file, fd)

    def create(self, fd: FileDesc) -> _FileWriter:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        if self.read_only:
            raise ReadOnlyError()
        with self._mu:
            self._check_open()
            file = open(self._join(gen_name(fd)), "wb")
            self._open += 1
            return _FileWriter(self, file, fd)

    def remove(self, fd: FileDesc) -> None:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        if self.read_only:
            raise ReadOnlyError()
        with self._mu:
            self._check_open()
            try:
                os.remove(self._join(gen_name(fd)))
            except FileNotFoundError as missing:
                if not has_old_name(fd):
                    self._log(f"remove {fd}: {missing}")
                    raise
                try:
                    os.remove(self._join(gen_old_name(fd)))
                except FileNotFoundError:
                    raise missing from None
                except OSError as exc:
                    self._log(f"remove {fd}: {exc} (old name)")
                    raise
            except OSError as exc:
                self._log(f"remove {fd}: {exc}")
                raise

    def rename(self, old_fd: FileDesc, new_fd: FileDesc) -> None:
        if not file_desc_ok(old_fd) or not file_desc_ok(new_fd):
            raise InvalidFileError()
        if old_fd == new_fd:
            return
        if self.read_only:
            raise ReadOnlyError()
        with self._mu:
            self._check_open()
            _rename(self._join(gen_name(old_fd)), self._join(gen_name(new_fd)))

    def close(self) -> None:
        with self._mu:
            self._check_open()
            if self._open > 0:
                self._log(f"close: warning, {self._open} files still open")
            self._open = -1
            if self._log_file is not None:
                self._log_file.close()
                self._log_file = None
            self._flock.release()


def open_file(path: "os.PathLike[str] | str", read_only: bool = False) -> FileStorage:
    """Open a storage in the given directory and take its file lock.

    The directory is created unless the storage is read-only. A second
    attempt to open the same directory fails while the lock is held.
    """
    path = os.fspath(path)
    try:
        info = os.stat(path)
    except FileNotFoundError:
        if read_only:
            raise
        os.makedirs(path, 0o755, exist_ok=True)
    else:
        import stat

        if not stat.S_ISDIR(info.st_mode):
            raise NotADirectoryError(f"storage: open {path}: not a directory")

    flock = _FileLock(os.path.join(path, "LOCK"), read_only)
    log_file: Optional[BinaryIO] = None
    log_size = 0
    if not read_only:
        try:
            log_file = _open_log(os.path.join(path, "LOG"))
            log_size = log_file.seek(0, io.SEEK_END)
        except OSError:
            if log_file is not None:
                log_file.close()
            flock.release()
            raise
    return FileStorage(path, read_only, flock, log_file, log_size)