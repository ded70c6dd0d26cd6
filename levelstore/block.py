"""Blocks of a sorted table: entry decoding, iteration and filter lookup."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Iterator, List, Optional, Tuple

from .format import DEFAULT_COMPARER, BlockHandle, decode_uvarint
from .storage import CorruptedError, FileDesc, StorageError

Compare = Callable[[bytes, bytes], int]


@dataclass(frozen=True)
class KeyRange:
    """Key range [start, limit); a None bound is open."""

    start: Optional[bytes] = None
    limit: Optional[bytes] = None


class TableCorruptedError(CorruptedError):
    """Corruption found inside a table."""

    def __init__(self, reason: str, pos: int = 0, size: int = 0, kind: str = "") -> None:
        self.reason = reason
        self.pos = pos
        self.size = size
        self.kind = kind
        super().__init__(FileDesc(), reason)

    def __str__(self) -> str:
        message = f"table: corruption on {self.kind} (pos={self.pos}): {self.reason}"
        if not self.fd.is_zero():
            return f"{message} [file={self.fd}]"
        return message


class _IteratorReleasedError(StorageError):
    def __init__(self) -> None:
        super().__init__("table: iterator released")


def _resolve_compare(compare: Any) -> Compare:
    if compare is None:
        return DEFAULT_COMPARER.compare
    return getattr(compare, "compare", compare)


class Block:
    """A decoded block: entries followed by restart points."""

    def __init__(self, data: bytes, handle: Optional[BlockHandle] = None) -> None:
        self.data = bytes(data)
        self.handle = handle if handle is not None else BlockHandle()
        self.kind = "data-block"
        self.fd = FileDesc()
        if len(self.data) < 4:
            raise self._corrupted("block too short")
        self.restarts_len = struct.unpack_from("<I", self.data, len(self.data) - 4)[0]
        self.restarts_offset = len(self.data) - (self.restarts_len + 1) * 4
        if self.restarts_offset < 0:
            raise self._corrupted("invalid restarts length")

    def _corrupted(self, reason: str) -> TableCorruptedError:
        err = TableCorruptedError(reason, self.handle.offset, self.handle.length, self.kind)
        err.fd = self.fd
        return err

    def restart_offset(self, index: int) -> int:
        """Return the entry offset of the given restart point."""
        return struct.unpack_from("<I", self.data, self.restarts_offset + 4 * index)[0]

    def _restart_key(self, index: int) -> bytes:
        # A restart entry shares nothing, so its one-byte shared length is zero.
        offset = self.restart_offset(index) + 1
        key_len, n1 = decode_uvarint(self.data, offset)
        _, n2 = decode_uvarint(self.data, offset + max(n1, 0))
        if n1 <= 0 or n2 <= 0:
            raise self._corrupted("entries corrupted")
        start = offset + n1 + n2
        return self.data[start:start + key_len]

    def seek(self, compare: Any, rstart: int, rlimit: int, key: bytes) -> Tuple[int, int]:
        """Return (restart index, offset) of the last restart whose key is <= key."""
        cmp = _resolve_compare(compare)
        lo, hi = 0, rlimit - rstart
        while lo < hi:
            mid = (lo + hi) // 2
            if cmp(self._restart_key(rstart + mid), key) > 0:
                hi = mid
            else:
                lo = mid + 1
        index = max(lo + rstart - 1, rstart)
        return index, self.restart_offset(index)

    def restart_index(self, rstart: int, rlimit: int, offset: int) -> int:
        """Return the index of the restart range holding the given offset."""
        lo, hi = 0, rlimit - rstart
        while lo < hi:
            mid = (lo + hi) // 2
            if self.restart_offset(rstart + mid) > offset:
                hi = mid
            else:
                lo = mid + 1
        return lo + rstart - 1

    def entry(self, offset: int) -> Tuple[bytes, bytes, int, int]:
        """Decode the entry at offset into (key suffix, value, shared, size).

        At the end of the entries the size is 0.
        """
        if offset >= self.restarts_offset:
            if offset != self.restarts_offset:
                raise self._corrupted("entries offset not aligned")
            return b"", b"", 0, 0
        shared, n0 = decode_uvarint(self.data, offset)
        key_len, n1 = decode_uvarint(self.data, offset + max(n0, 0))
        value_len, n2 = decode_uvarint(self.data, offset + max(n0, 0) + max(n1, 0))
        if n0 <= 0 or n1 <= 0 or n2 <= 0:
            raise self._corrupted("entries corrupted")
        header = n0 + n1 + n2
        size = header + key_len + value_len
        if offset + size > self.restarts_offset:
            raise self._corrupted("entries corrupted")
        key_start = offset + header
        key = self.data[key_start:key_start + key_len]
        value = self.data[key_start + key_len:offset + size]
        return key, value, shared, size


class _Dir(IntEnum):
    RELEASED = -1
    SOI = 0
    EOI = 1
    BACKWARD = 2
    FORWARD = 3


class BlockIterator:
    """Bidirectional iterator over the entries of a block.

    Errors do not raise from the stepping methods: they stop iteration and
    are reported by error(). Iterating with a for loop starts from the first
    entry and raises the error, if any, at the end.
    """

    def __init__(self, block: Block, compare: Any = None,
                 key_range: Optional[KeyRange] = None, include_limit: bool = False) -> None:
        self._block: Optional[Block] = block
        self._cmp = _resolve_compare(compare)
        self._key: Optional[bytes] = b""
        self._value: Optional[bytes] = None
        self._offset = 0
        self._prev_offset = 0
        self._prev_node: List[int] = []
        self._prev_keys = bytearray()
        self._restart_index = 0
        self._dir = _Dir.SOI
        self._ri_start = 0
        self._ri_limit = block.restarts_len
        self._offset_start = 0
        self._offset_real_start = 0
        self._offset_limit = block.restarts_offset
        self._err: Optional[BaseException] = None

        if key_range is None:
            return
        if key_range.start is not None:
            if self.seek(key_range.start):
                self._ri_start = block.restart_index(
                    self._restart_index, block.restarts_len, self._prev_offset)
                self._offset_start = block.restart_offset(self._ri_start)
                self._offset_real_start = self._prev_offset
            else:
                self._ri_start = block.restarts_len
                self._offset_start = block.restarts_offset
                self._offset_real_start = block.restarts_offset
        if key_range.limit is not None:
            if self.seek(key_range.limit) and (not include_limit or self.next()):
                self._offset_limit = self._prev_offset
                self._ri_limit = self._restart_index + 1
        self._reset()
        if self._offset_start > self._offset_limit:
            self._set_error(ValueError("table: invalid slice range"))

    def _set_error(self, err: BaseException) -> None:
        self._err = err
        self._key = None
        self._value = None
        self._prev_node = []
        self._prev_keys = bytearray()

    def _clear_prev(self) -> None:
        self._prev_node.clear()
        self._prev_keys.clear()

    def _reset(self) -> None:
        if self._dir == _Dir.BACKWARD:
            self._clear_prev()
        self._restart_index = self._ri_start
        self._offset = self._offset_start
        self._dir = _Dir.SOI
        self._key = b""
        self._value = None

    def _is_first(self) -> bool:
        if self._dir == _Dir.FORWARD:
            return self._prev_offset == self._offset_real_start
        if self._dir == _Dir.BACKWARD:
            return len(self._prev_node) == 1 and self._restart_index == self._ri_start
        return False

    def _is_last(self) -> bool:
        if self._dir in (_Dir.FORWARD, _Dir.BACKWARD):
            return self._offset == self._offset_limit
        return False

    def _unusable(self) -> bool:
        if self._err is not None:
            return True
        if self._dir == _Dir.RELEASED:
            self._err = _IteratorReleasedError()
            return True
        return False

    def first(self) -> bool:
        """Move to the first entry."""
        if self._unusable():
            return False
        if self._dir == _Dir.BACKWARD:
            self._clear_prev()
        self._dir = _Dir.SOI
        return self.next()

    def last(self) -> bool:
        """Move to the last entry."""
        if self._unusable():
            return False
        if self._dir == _Dir.BACKWARD:
            self._clear_prev()
        self._dir = _Dir.EOI
        return self.prev()

    def seek(self, key: bytes) -> bool:
        """Move to the first entry whose key is >= key."""
        if self._unusable():
            return False
        block = self._block
        assert block is not None
        try:
            ri, offset = block.seek(self._cmp, self._ri_start, self._ri_limit, key)
        except TableCorruptedError as exc:
            self._set_error(exc)
            return False
        self._restart_index = ri
        self._offset = max(self._offset_start, offset)
        if self._dir in (_Dir.SOI, _Dir.EOI):
            self._dir = _Dir.FORWARD
        while self.next():
            if self._cmp(self._key, key) >= 0:
                return True
        return False

    def next(self) -> bool:
        """Move to the next entry."""
        if self._dir == _Dir.EOI or self._err is not None:
            return False
        if self._unusable():
            return False
        block = self._block
        assert block is not None
        if self._dir == _Dir.SOI:
            self._restart_index = self._ri_start
            self._offset = self._offset_start
        elif self._dir == _Dir.BACKWARD:
            self._clear_prev()
        try:
            while self._offset < self._offset_real_start:
                key, value, shared, size = block.entry(self._offset)
                if size == 0:
                    self._dir = _Dir.EOI
                    return False
                self._key = self._key[:shared] + key
                self._value = value
                self._offset += size
            if self._offset >= self._offset_limit:
                self._dir = _Dir.EOI
                if self._offset != self._offset_limit:
                    self._set_error(block._corrupted("entries offset not aligned"))
                return False
            key, value, shared, size = block.entry(self._offset)
        except TableCorruptedError as exc:
            self._set_error(exc)
            return False
        if size == 0:
            self._dir = _Dir.EOI
            return False
        self._key = self._key[:shared] + key
        self._value = value
        self._prev_offset = self._offset
        self._offset += size
        self._dir = _Dir.FORWARD
        return True

    def prev(self) -> bool:
        """Move to the previous entry."""
        if self._dir == _Dir.SOI or self._err is not None:
            return False
        if self._unusable():
            return False
        block = self._block
        assert block is not None

        if self._dir == _Dir.FORWARD:
            # Change direction.
            self._offset = self._prev_offset
            if self._offset == self._offset_real_start:
                self._dir = _Dir.SOI
                return False
            ri = block.restart_index(self._restart_index, self._ri_limit, self._offset)
            self._dir = _Dir.BACKWARD
        elif self._dir == _Dir.EOI:
            self._restart_index = self._ri_limit
            self._offset = self._offset_limit
            if self._offset == self._offset_real_start:
                self._dir = _Dir.SOI
                return False
            ri = self._ri_limit - 1
            self._dir = _Dir.BACKWARD
        elif len(self._prev_node) == 1:
            # End of a restart range.
            self._offset = self._prev_node[0]
            self._prev_node.clear()
            if self._restart_index == self._ri_start:
                self._dir = _Dir.SOI
                return False
            self._restart_index -= 1
            ri = self._restart_index
        else:
            # Inside a restart range: take the entry from the cache.
            key_offset, value_offset, value_len = self._prev_node[-3:]
            del self._prev_node[-3:]
            self._key = bytes(self._prev_keys[key_offset:])
            del self._prev_keys[key_offset:]
            value_end = value_offset + value_len
            self._value = block.data[value_offset:value_end]
            self._offset = value_end
            return True

        # Build the cache of entries of this restart range.
        self._key = b""
        self._value = None
        offset = block.restart_offset(ri)
        if offset == self._offset:
            ri -= 1
            if ri < 0:
                self._dir = _Dir.SOI
                return False
            offset = block.restart_offset(ri)
        self._prev_node.append(offset)
        while True:
            try:
                key, value, shared, size = block.entry(offset)
            except TableCorruptedError as exc:
                self._set_error(exc)
                return False
            if offset >= self._offset_real_start:
                if self._value is not None:
                    self._prev_node.extend(
                        (len(self._prev_keys), offset - len(self._value), len(self._value)))
                    self._prev_keys += self._key
                self._value = value
            self._key = self._key[:shared] + key
            offset += size
            if offset >= self._offset:
                if offset != self._offset:
                    self._set_error(block._corrupted("entries offset not aligned"))
                    return False
                break
        self._restart_index = ri
        self._offset = offset
        return True

    def key(self) -> Optional[bytes]:
        """Return the current key, or None if not positioned on an entry."""
        if self._err is not None or self._dir <= _Dir.EOI:
            return None
        return self._key

    def value(self) -> Optional[bytes]:
        """Return the current value, or None if not positioned on an entry."""
        if self._err is not None or self._dir <= _Dir.EOI:
            return None
        return self._value

    def valid(self) -> bool:
        return self._err is None and self._dir in (_Dir.BACKWARD, _Dir.FORWARD)

    def error(self) -> Optional[BaseException]:
        return self._err

    def release(self) -> None:
        """Drop the block; later moves fail with a released error."""
        if self._dir != _Dir.RELEASED:
            self._block = None
            self._prev_node = []
            self._prev_keys = bytearray()
            self._key = None
            self._value = None
            self._dir = _Dir.RELEASED

    def __iter__(self) -> Iterator[Tuple[bytes, bytes]]:
        ok = self.first()
        while ok:
            yield self._key, self._value  # type: ignore[misc]
            ok = self.next()
        if self._err is not None:
            raise self._err


class FilterBlock:
    """A decoded filter block."""

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        n = len(self.data)
        if n < 5:
            raise TableCorruptedError("too short", 0, n, "filter-block")
        m = n - 5
        o_offset = struct.unpack_from("<I", self.data, m)[0]
        if o_offset > m:
            raise TableCorruptedError("invalid data-offsets offset", 0, n, "filter-block")
        self.offsets_offset = o_offset
        self.base_lg = self.data[n - 1]
        self.filters_num = (m - o_offset) // 4

    def contains(self, filter_: Any, offset: int, key: bytes) -> bool:
        """Report whether the filter for the data block at offset may hold key."""
        i = offset >> self.base_lg
        if i < self.filters_num:
            start, end = struct.unpack_from("<II", self.data, self.offsets_offset + i * 4)
            if start < end <= self.offsets_offset:
                return bool(filter_.contains(self.data[start:end], key))
            if start == end:
                return False
        return True