"""Storage abstraction: file types, file descriptors, errors and interfaces."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from enum import IntFlag
from typing import Any, List, Optional, Union


class FileType(IntFlag):
    """Kind of a file kept by a storage; values may be OR'ed for listing."""

    MANIFEST = 1
    JOURNAL = 2
    TABLE = 4
    TEMP = 8

    ALL = 15

    def __str__(self) -> str:
        value = int(self)
        names = {1: "manifest", 2: "journal", 4: "table", 8: "temp"}
        return names.get(value, f"<unknown:{value}>")


_SINGLE_TYPES = (FileType.MANIFEST, FileType.JOURNAL, FileType.TABLE, FileType.TEMP)


@dataclass(frozen=True)
class FileDesc:
    """Identifies a file of a storage by its type and number."""

    type: int = 0
    num: int = 0

    def __str__(self) -> str:
        value = int(self.type)
        if value == FileType.MANIFEST:
            return f"MANIFEST-{self.num:06d}"
        if value == FileType.JOURNAL:
            return f"{self.num:06d}.log"
        if value == FileType.TABLE:
            return f"{self.num:06d}.ldb"
        if value == FileType.TEMP:
            return f"{self.num:06d}.tmp"
        return f"{value:#x}-{self.num}"

    def is_zero(self) -> bool:
        """Report whether this is the empty descriptor."""
        return int(self.type) == 0 and self.num == 0


def file_desc_ok(fd: FileDesc) -> bool:
    """Report whether the descriptor names a valid file."""
    return int(fd.type) in (int(t) for t in _SINGLE_TYPES) and fd.num >= 0


class StorageError(Exception):
    """Base class of storage errors."""


class InvalidFileError(StorageError):
    """A file descriptor given as argument is not valid."""

    def __init__(self, message: str = "storage: invalid file for argument") -> None:
        super().__init__(message)


class LockedError(StorageError):
    """The storage is already locked."""

    def __init__(self, message: str = "storage: already locked") -> None:
        super().__init__(message)


class ClosedError(StorageError):
    """The storage or file is closed."""

    def __init__(self, message: str = "storage: closed") -> None:
        super().__init__(message)


class CorruptedError(StorageError):
    """Corruption of a file, with the underlying cause."""

    def __init__(self, fd: Optional[FileDesc], err: Union[BaseException, str, Any]) -> None:
        self.fd = fd if fd is not None else FileDesc()
        self.err = err
        super().__init__(str(self))

    def __str__(self) -> str:
        if not self.fd.is_zero():
            return f"{self.err} [file={self.fd}]"
        return str(self.err)


class Locker(abc.ABC):
    """Lock held on a storage."""

    @abc.abstractmethod
    def unlock(self) -> None:
        """Release the lock."""


class Storage(abc.ABC):
    """A store of database files; implementations are safe for concurrent use."""

    @abc.abstractmethod
    def lock(self) -> Locker:
        """Lock the storage; a second attempt fails until the lock is released."""

    @abc.abstractmethod
    def log(self, message: str) -> None:
        """Record a log message."""

    @abc.abstractmethod
    def set_meta(self, fd: FileDesc) -> None:
        """Atomically store the descriptor of the current manifest."""

    @abc.abstractmethod
    def get_meta(self) -> FileDesc:
        """Return the stored descriptor; raise FileNotFoundError if none."""

    @abc.abstractmethod
    def list(self, file_type: int) -> List[FileDesc]:
        """Return descriptors of files whose type matches the given types."""

    @abc.abstractmethod
    def open(self, fd: FileDesc) -> Any:
        """Open a file read-only."""

    @abc.abstractmethod
    def create(self, fd: FileDesc) -> Any:
        """Create or truncate a file and open it write-only."""

    @abc.abstractmethod
    def remove(self, fd: FileDesc) -> None:
        """Remove a file."""

    @abc.abstractmethod
    def rename(self, old_fd: FileDesc, new_fd: FileDesc) -> None:
        """Rename a file."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the storage."""

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()