"""Memory-backed storage."""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .storage import (
    ClosedError,
    FileDesc,
    InvalidFileError,
    LockedError,
    Locker,
    Storage,
    StorageError,
    file_desc_ok,
)


class FileOpenError(StorageError):
    """The file is still open."""

    def __init__(self, message: str = "storage: file still open") -> None:
        super().__init__(message)


@dataclass
class _MemFile:
    data: bytearray = field(default_factory=bytearray)
    open: bool = False


class _MemLock(Locker):
    def __init__(self, storage: "MemStorage") -> None:
        self._storage = storage

    def unlock(self) -> None:
        self._storage._release_lock(self)


class _MemReader:
    """Read-only view of a memory file."""

    def __init__(self, storage: "MemStorage", file: _MemFile) -> None:
        self._storage = storage
        self._file = file
        self._buffer = io.BytesIO(bytes(file.data))
        self._closed = False

    def read(self, size: int = -1) -> bytes:
        return self._buffer.read(size)

    def read_at(self, offset: int, size: int) -> bytes:
        return self._buffer.getvalue()[offset:offset + size]

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        return self._buffer.seek(offset, whence)

    def tell(self) -> int:
        return self._buffer.tell()

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        with self._storage._mu:
            if self._closed:
                raise ClosedError()
            self._closed = True
            self._file.open = False

    def __enter__(self) -> "_MemReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class _MemWriter:
    """Write-only handle of a memory file."""

    def __init__(self, storage: "MemStorage", file: _MemFile) -> None:
        self._storage = storage
        self._file = file
        self._closed = False

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ClosedError()
        self._file.data.extend(data)
        return len(data)

    def writable(self) -> bool:
        return True

    def sync(self) -> None:
        if self._closed:
            raise ClosedError()

    def flush(self) -> None:
        self.sync()

    def close(self) -> None:
        with self._storage._mu:
            if self._closed:
                raise ClosedError()
            self._closed = True
            self._file.open = False

    def __enter__(self) -> "_MemWriter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class MemStorage(Storage):
    """A storage that keeps every file in memory."""

    def __init__(self) -> None:
        self._mu = threading.Lock()
        self._slock: Optional[_MemLock] = None
        self._files: Dict[FileDesc, _MemFile] = {}
        self._meta = FileDesc()
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise ClosedError()

    def _release_lock(self, lock: _MemLock) -> None:
        with self._mu:
            if self._slock is lock:
                self._slock = None

    def lock(self) -> Locker:
        with self._mu:
            self._check_open()
            if self._slock is not None:
                raise LockedError()
            self._slock = _MemLock(self)
            return self._slock

    def log(self, message: str) -> None:
        """Discard the message; memory storage keeps no log."""

    def set_meta(self, fd: FileDesc) -> None:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            self._check_open()
            self._meta = fd

    def get_meta(self) -> FileDesc:
        with self._mu:
            self._check_open()
            if self._meta.is_zero():
                raise FileNotFoundError("no meta file descriptor stored")
            return self._meta

    def list(self, file_type: int) -> List[FileDesc]:
        with self._mu:
            self._check_open()
            found = [fd for fd in self._files if int(fd.type) & int(file_type)]
        return sorted(found, key=lambda fd: (fd.num, int(fd.type)))

    def open(self, fd: FileDesc) -> _MemReader:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            self._check_open()
            file = self._files.get(fd)
            if file is None:
                raise FileNotFoundError(str(fd))
            if file.open:
                raise FileOpenError()
            file.open = True
            return _MemReader(self, file)

    def create(self, fd: FileDesc) -> _MemWriter:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            self._check_open()
            file = self._files.get(fd)
            if file is None:
                file = _MemFile()
                self._files[fd] = file
            else:
                if file.open:
                    raise FileOpenError()
                file.data.clear()
            file.open = True
            return _MemWriter(self, file)

    def remove(self, fd: FileDesc) -> None:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            self._check_open()
            if self._files.pop(fd, None) is None:
                raise FileNotFoundError(str(fd))

    def rename(self, old_fd: FileDesc, new_fd: FileDesc) -> None:
        if not file_desc_ok(old_fd) or not file_desc_ok(new_fd):
            raise InvalidFileError()
        if old_fd == new_fd:
            return
        with self._mu:
            self._check_open()
            old = self._files.get(old_fd)
            if old is None:
                raise FileNotFoundError(str(old_fd))
            new = self._files.get(new_fd)
            if (new is not None and new.open) or old.open:
                raise FileOpenError()
            del self._files[old_fd]
            self._files[new_fd] = old

    def close(self) -> None:
        with self._mu:
            self._closed = True