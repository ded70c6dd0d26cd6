"""Reader of sorted tables."""

from __future__ import annotations

import io
import struct
import threading
from typing import Any, Iterator, Optional, Tuple

from .block import Block, BlockIterator, FilterBlock, KeyRange, TableCorruptedError
from .format import (
    BLOCK_TRAILER_LEN,
    BLOCK_TYPE_NO_COMPRESSION,
    BLOCK_TYPE_SNAPPY_COMPRESSION,
    DEFAULT_COMPARER,
    FOOTER_LEN,
    MAGIC,
    BlockHandle,
    checksum,
    decode_block_handle,
    snappy_decode,
)
from .options import Options, read_strict
from .storage import CorruptedError, FileDesc, StorageError

# Strict flags that concern table reading.
_STRICT_BLOCK_CHECKSUM = 1 << 3
_STRICT_READER = 1 << 5


class NotFoundError(LookupError):
    """The table holds no matching key."""

    def __init__(self, message: str = "table: not found") -> None:
        super().__init__(message)


class ReaderReleasedError(StorageError):
    """The table reader has been released."""

    def __init__(self, message: str = "table: reader released") -> None:
        super().__init__(message)


def _iterator_released() -> StorageError:
    return StorageError("table: iterator released")


_SOI, _ON, _EOI = range(3)


class TableIterator:
    """Iterator over all entries of a table, walking index and data blocks.

    Errors stop iteration and are reported by error(). Corrupted data blocks
    are skipped unless the iterator is strict. A for loop starts from the
    first entry and raises the error, if any, at the end.
    """

    def __init__(self, reader: "TableReader", index: Optional[BlockIterator],
                 key_range: Optional[KeyRange], strict: bool,
                 err: Optional[BaseException] = None) -> None:
        self._reader = reader
        self._index = index
        self._range = key_range
        self._strict = strict
        self._data: Optional[BlockIterator] = None
        self._err = err
        self._pos = _SOI
        self._released = False

    def _unusable(self) -> bool:
        if self._err is not None:
            return True
        if self._released:
            self._err = _iterator_released()
            return True
        return False

    def _clear_data(self) -> None:
        if self._data is not None:
            self._data.release()
            self._data = None

    def _data_error(self, err: BaseException) -> bool:
        """Record a data block error; return True if iteration must stop."""
        if self._strict or not isinstance(err, CorruptedError):
            self._err = err
            return True
        return False

    def _check_data(self) -> bool:
        assert self._data is not None
        err = self._data.error()
        self._clear_data()
        return not (err is not None and self._data_error(err))

    def _index_end(self) -> bool:
        assert self._index is not None
        err = self._index.error()
        if err is not None:
            self._err = err
        return False

    def _load_data(self) -> bool:
        """Open the data block under the index; False if iteration must stop."""
        self._clear_data()
        index = self._index
        assert index is not None
        reader = self._reader
        value = index.value() or b""
        handle, n = decode_block_handle(value)
        try:
            if n == 0:
                raise reader._corrupted_bh(reader._index_handle, "bad data block handle")
            key_range = None
            if self._range is not None and (index._is_first() or index._is_last()):
                key_range = self._range
            self._data = reader._data_iterator(handle, key_range)
        except (StorageError, OSError, ValueError) as exc:
            return not self._data_error(exc)
        return True

    def _scan(self, moved: bool, forward: bool) -> bool:
        assert self._index is not None
        while True:
            if not moved:
                return self._index_end()
            if not self._load_data():
                return False
            if self._data is not None:
                if self._data.first() if forward else self._data.last():
                    return True
                if not self._check_data():
                    return False
            moved = self._index.next() if forward else self._index.prev()

    def _settle(self, found: bool, forward: bool) -> bool:
        if found:
            self._pos = _ON
        else:
            self._clear_data()
            self._pos = _EOI if forward else _SOI
        return found

    def first(self) -> bool:
        """Move to the first entry."""
        if self._unusable():
            return False
        assert self._index is not None
        self._clear_data()
        return self._settle(self._scan(self._index.first(), True), True)

    def last(self) -> bool:
        """Move to the last entry."""
        if self._unusable():
            return False
        assert self._index is not None
        self._clear_data()
        return self._settle(self._scan(self._index.last(), False), False)

    def seek(self, key: bytes) -> bool:
        """Move to the first entry whose key is >= key."""
        if self._unusable():
            return False
        assert self._index is not None
        self._clear_data()
        if not self._index.seek(key):
            return self._settle(self._index_end(), True)
        if not self._load_data():
            return self._settle(False, True)
        if self._data is not None:
            if self._data.seek(key):
                return self._settle(True, True)
            if not self._check_data():
                return self._settle(False, True)
        return self._settle(self._scan(self._index.next(), True), True)

    def next(self) -> bool:
        """Move to the next entry."""
        if self._unusable():
            return False
        if self._pos == _SOI:
            return self.first()
        if self._pos == _EOI:
            return False
        assert self._index is not None
        if self._data is not None:
            if self._data.next():
                return True
            if not self._check_data():
                return self._settle(False, True)
        return self._settle(self._scan(self._index.next(), True), True)

    def prev(self) -> bool:
        """Move to the previous entry."""
        if self._unusable():
            return False
        if self._pos == _EOI:
            return self.last()
        if self._pos == _SOI:
            return False
        assert self._index is not None
        if self._data is not None:
            if self._data.prev():
                return True
            if not self._check_data():
                return self._settle(False, False)
        return self._settle(self._scan(self._index.prev(), False), False)

    def key(self) -> Optional[bytes]:
        """Return the current key, or None if not positioned on an entry."""
        return self._data.key() if self.valid() else None

    def value(self) -> Optional[bytes]:
        """Return the current value, or None if not positioned on an entry."""
        return self._data.value() if self.valid() else None

    def valid(self) -> bool:
        return self._err is None and self._data is not None and self._data.valid()

    def error(self) -> Optional[BaseException]:
        return self._err

    def release(self) -> None:
        """Release the blocks held; later moves fail with a released error."""
        if not self._released:
            self._clear_data()
            if self._index is not None:
                self._index.release()
                self._index = None
            self._released = True

    def __iter__(self) -> Iterator[Tuple[bytes, bytes]]:
        ok = self.first()
        while ok:
            yield self.key(), self.value()  # type: ignore[misc]
            ok = self.next()
        if self._err is not None:
            raise self._err


class TableReader:
    """Reads a sorted table from a binary stream.

    The stream needs read_at(offset, size), or seek and read. Corruption
    found while opening is kept and raised by every later operation;
    I/O errors raise at once. The reader is safe for concurrent use.
    """

    def __init__(self, stream: Any, size: int, fd: Optional[FileDesc] = None,
                 options: Optional[Options] = None) -> None:
        if stream is None:
            raise ValueError("table: nil file")
        if isinstance(stream, (bytes, bytearray, memoryview)):
            stream = io.BytesIO(bytes(stream))
        if options is None:
            options = Options()
        self._lock = threading.RLock()
        self._stream = stream
        self._fd = fd if fd is not None else FileDesc()
        self._options = options
        self._comparer = options.comparer or DEFAULT_COMPARER
        self._cmp = self._comparer.compare
        self._filter: Any = None
        self._verify_checksum = options.strict_enabled(_STRICT_BLOCK_CHECKSUM)
        self._err: Optional[BaseException] = None
        self._data_end = 0
        self._meta_handle = BlockHandle()
        self._index_handle = BlockHandle()
        self._filter_handle = BlockHandle()
        self._index_block: Optional[Block] = None
        self._filter_block: Optional[FilterBlock] = None
        self._open(size)

    def _open(self, size: int) -> None:
        if size < FOOTER_LEN:
            self._err = self._corrupted(0, size, "table", "too small")
            return
        footer_pos = size - FOOTER_LEN
        footer = self._read_at(footer_pos, FOOTER_LEN)
        if footer[FOOTER_LEN - len(MAGIC):] != MAGIC:
            self._err = self._corrupted(footer_pos, FOOTER_LEN, "table-footer", "bad magic number")
            return
        self._meta_handle, n = decode_block_handle(footer)
        if n == 0:
            self._err = self._corrupted(footer_pos, FOOTER_LEN, "table-footer",
                                        "bad metaindex block handle")
            return
        self._index_handle, m = decode_block_handle(footer[n:])
        if m == 0:
            self._err = self._corrupted(footer_pos, FOOTER_LEN, "table-footer",
                                        "bad index block handle")
            return

        try:
            meta_block = self._read_block(self._meta_handle, True)
        except CorruptedError as exc:
            self._err = exc
            return
        self._data_end = self._meta_handle.offset
        self._find_filter(meta_block)

        try:
            self._index_block = self._read_block(self._index_handle, True)
        except CorruptedError as exc:
            self._err = exc
            return
        if self._filter is not None:
            try:
                self._filter_block = self._read_filter_block(self._filter_handle)
            except CorruptedError:
                # Work without the filter then.
                self._filter = None

    def _find_filter(self, meta_block: Block) -> None:
        candidates = []
        if self._options.filter is not None:
            candidates.append(self._options.filter)
        candidates.extend(getattr(self._options, "alt_filters", None) or ())
        meta = BlockIterator(meta_block, self._cmp, None, True)
        ok = meta.next()
        while ok:
            key = meta.key() or b""
            if key.startswith(b"filter."):
                name = key[7:].decode(errors="replace")
                self._filter = next(
                    (f for f in candidates if str(f.name) == name), None)
                if self._filter is not None:
                    handle, n = decode_block_handle(meta.value() or b"")
                    if n != 0:
                        self._filter_handle = handle
                        self._data_end = handle.offset
                        break
            ok = meta.next()
        meta.release()

    def _read_at(self, offset: int, size: int) -> bytes:
        read_at = getattr(self._stream, "read_at", None)
        if read_at is not None:
            return bytes(read_at(offset, size))
        self._stream.seek(offset)
        return bytes(self._stream.read(size))

    def _block_kind(self, handle: BlockHandle) -> str:
        if handle.offset == self._meta_handle.offset:
            return "meta-block"
        if handle.offset == self._index_handle.offset:
            return "index-block"
        if handle.offset == self._filter_handle.offset and self._filter_handle.length > 0:
            return "filter-block"
        return "data-block"

    def _corrupted(self, pos: int, size: int, kind: str, reason: str) -> TableCorruptedError:
        err = TableCorruptedError(reason, pos, size, kind)
        err.fd = self._fd
        return err

    def _corrupted_bh(self, handle: BlockHandle, reason: str) -> TableCorruptedError:
        return self._corrupted(handle.offset, handle.length, self._block_kind(handle), reason)

    def _read_raw_block(self, handle: BlockHandle, verify: bool) -> bytes:
        n = handle.length
        data = self._read_at(handle.offset, n + BLOCK_TRAILER_LEN)
        if len(data) < n + BLOCK_TRAILER_LEN:
            raise self._corrupted_bh(handle, "truncated block")
        if verify:
            stored = struct.unpack_from("<I", data, n + 1)[0]
            computed = checksum(data[:n + 1])
            if stored != computed:
                raise self._corrupted_bh(
                    handle, f"checksum mismatch, want={stored:#x} got={computed:#x}")
        block_type = data[n]
        if block_type == BLOCK_TYPE_NO_COMPRESSION:
            return data[:n]
        if block_type == BLOCK_TYPE_SNAPPY_COMPRESSION:
            try:
                return snappy_decode(data[:n])
            except ValueError as exc:
                raise self._corrupted_bh(handle, str(exc)) from None
        raise self._corrupted_bh(handle, f"unknown compression type {block_type:#x}")

    def _read_block(self, handle: BlockHandle, verify: bool) -> Block:
        data = self._read_raw_block(handle, verify)
        try:
            block = Block(data, handle)
        except TableCorruptedError as exc:
            raise self._corrupted_bh(handle, exc.reason) from None
        block.kind = self._block_kind(handle)
        block.fd = self._fd
        return block

    def _read_filter_block(self, handle: BlockHandle) -> FilterBlock:
        data = self._read_raw_block(handle, True)
        try:
            return FilterBlock(data)
        except TableCorruptedError as exc:
            raise self._corrupted_bh(handle, exc.reason) from None

    def _data_iterator(self, handle: BlockHandle,
                       key_range: Optional[KeyRange]) -> BlockIterator:
        with self._lock:
            if self._err is not None:
                raise self._err
            block = self._read_block(handle, self._verify_checksum)
            return BlockIterator(block, self._cmp, key_range, False)

    def _check(self) -> Block:
        if self._err is not None:
            raise self._err
        assert self._index_block is not None
        return self._index_block

    def new_iterator(self, key_range: Optional[KeyRange] = None,
                     read_options: Any = None) -> TableIterator:
        """Return an iterator over the table, limited to key_range if given."""
        with self._lock:
            if read_options is None:
                strict = self._options.strict_enabled(_STRICT_READER)
            else:
                strict = read_strict(self._options, read_options, _STRICT_READER)
            if self._err is not None:
                return TableIterator(self, None, key_range, strict, self._err)
            index = BlockIterator(self._check(), self._cmp, key_range, True)
            return TableIterator(self, index, key_range, strict)

    def _find(self, key: bytes, filtered: bool) -> Tuple[bytes, bytes]:
        with self._lock:
            index = BlockIterator(self._check(), self._cmp, None, True)
            try:
                if not index.seek(key):
                    raise index.error() or NotFoundError()
                handle, n = decode_block_handle(index.value() or b"")
                if n == 0:
                    self._err = self._corrupted_bh(self._index_handle, "bad data block handle")
                    raise self._err
                # The filter only applies to an exact match.
                if filtered and self._filter is not None and self._filter_block is not None:
                    if not self._filter_block.contains(self._filter, handle.offset, key):
                        raise NotFoundError()
                data = self._data_iterator(handle, None)
                if not data.seek(key):
                    data.release()
                    if data.error() is not None:
                        raise data.error()
                    # The nearest greater key starts the next block.
                    if not index.next():
                        raise index.error() or NotFoundError()
                    handle, n = decode_block_handle(index.value() or b"")
                    if n == 0:
                        self._err = self._corrupted_bh(self._index_handle,
                                                       "bad data block handle")
                        raise self._err
                    data = self._data_iterator(handle, None)
                    if not data.next():
                        data.release()
                        raise data.error() or NotFoundError()
                result = (bytes(data.key() or b""), bytes(data.value() or b""))
                data.release()
                return result
            finally:
                index.release()

    def find(self, key: bytes, filtered: bool = False,
             read_options: Any = None) -> Tuple[bytes, bytes]:
        """Return the first (key, value) whose key is >= key.

        With filtered, a filter that rules the key out raises NotFoundError.
        """
        return self._find(bytes(key), filtered)

    def find_key(self, key: bytes, filtered: bool = False, read_options: Any = None) -> bytes:
        """Return the first key that is >= key."""
        return self._find(bytes(key), filtered)[0]

    def get(self, key: bytes, read_options: Any = None) -> bytes:
        """Return the value stored under exactly this key."""
        key = bytes(key)
        with self._lock:
            found, value = self._find(key, False)
            if self._cmp(found, key) != 0:
                raise NotFoundError()
            return value

    def offset_of(self, key: bytes) -> int:
        """Return the approximate file offset of the given key."""
        with self._lock:
            index = BlockIterator(self._check(), self._cmp, None, True)
            try:
                if index.seek(bytes(key)):
                    handle, n = decode_block_handle(index.value() or b"")
                    if n == 0:
                        self._err = self._corrupted_bh(self._index_handle,
                                                       "bad data block handle")
                        raise self._err
                    return handle.offset
                if index.error() is not None:
                    raise index.error()
                return self._data_end
            finally:
                index.release()

    def release(self) -> None:
        """Close the stream if it can be closed; later use raises."""
        with self._lock:
            close = getattr(self._stream, "close", None)
            if close is not None:
                close()
            self._index_block = None
            self._filter_block = None
            self._stream = None
            self._err = ReaderReleasedError()