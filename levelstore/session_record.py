"""Manifest session records and their binary encoding."""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO, List, Optional, Union

from .storage import CorruptedError, FileDesc

_MAX_VARINT_LEN = 10
_UINT64_MASK = (1 << 64) - 1
_INT64_LIMIT = 1 << 63
_OVERFLOW_REASON = "binary: varint overflows a 64-bit integer"


class RecordTag(IntEnum):
    """Field tags written to disk; their values must not change."""

    COMPARER = 1
    JOURNAL_NUM = 2
    NEXT_FILE_NUM = 3
    SEQ_NUM = 4
    COMP_PTR = 5
    DEL_TABLE = 6
    ADD_TABLE = 7
    # 8 was used for large value refs.
    PREV_JOURNAL_NUM = 9


class ManifestCorruptedError(CorruptedError):
    """A manifest record could not be decoded."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(FileDesc(), f"manifest corrupted (field '{field}'): {reason}")


@dataclass(frozen=True)
class CompPtr:
    """Compaction pointer of a level."""

    level: int
    ikey: bytes


@dataclass(frozen=True)
class AddedTable:
    """A table added to a level."""

    level: int
    num: int
    size: int
    imin: bytes
    imax: bytes


@dataclass(frozen=True)
class DeletedTable:
    """A table removed from a level."""

    level: int
    num: int


def _put_uvarint(out: bytearray, value: int) -> None:
    value &= _UINT64_MASK
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)


def _put_varint(out: bytearray, value: int) -> None:
    if value < 0:
        raise ValueError("invalid negative value")
    _put_uvarint(out, value)


def _put_bytes(out: bytearray, value: bytes) -> None:
    _put_uvarint(out, len(value))
    out.extend(value)


def _read_uvarint(stream: BinaryIO, field_name: str, may_eof: bool = False) -> Optional[int]:
    """Read one uvarint; return None on a clean end of input when allowed."""
    result = 0
    shift = 0
    for i in range(_MAX_VARINT_LEN):
        chunk = stream.read(1)
        if not chunk:
            if i == 0 and may_eof:
                return None
            raise ManifestCorruptedError(field_name, "short read")
        byte = chunk[0]
        if byte < 0x80:
            if i == _MAX_VARINT_LEN - 1 and byte > 1:
                raise ManifestCorruptedError(field_name, _OVERFLOW_REASON)
            return result | (byte << shift)
        result |= (byte & 0x7F) << shift
        shift += 7
    raise ManifestCorruptedError(field_name, _OVERFLOW_REASON)


def _read_required_uvarint(stream: BinaryIO, field_name: str) -> int:
    value = _read_uvarint(stream, field_name)
    assert value is not None
    return value


def _read_varint(stream: BinaryIO, field_name: str) -> int:
    value = _read_required_uvarint(stream, field_name)
    if value >= _INT64_LIMIT:
        raise ManifestCorruptedError(field_name, "invalid negative value")
    return value


def _read_bytes(stream: BinaryIO, field_name: str) -> bytes:
    length = _read_required_uvarint(stream, field_name)
    data = stream.read(length) if length else b""
    if len(data) != length:
        raise ManifestCorruptedError(field_name, "short read")
    return bytes(data)


@dataclass
class SessionRecord:
    """A set of changes to the database state, as stored in the manifest."""

    comparer: str = ""
    journal_num: int = 0
    prev_journal_num: int = 0
    next_file_num: int = 0
    seq_num: int = 0
    comp_ptrs: List[CompPtr] = field(default_factory=list)
    added_tables: List[AddedTable] = field(default_factory=list)
    deleted_tables: List[DeletedTable] = field(default_factory=list)
    _present: int = field(default=0, repr=False)

    def has(self, tag: int) -> bool:
        """Report whether the record holds the given field."""
        return bool(self._present & (1 << int(tag)))

    def _mark(self, tag: RecordTag) -> None:
        self._present |= 1 << int(tag)

    def _unmark(self, tag: RecordTag) -> None:
        self._present &= ~(1 << int(tag))

    def set_comparer(self, name: str) -> None:
        self._mark(RecordTag.COMPARER)
        self.comparer = name

    def set_journal_num(self, num: int) -> None:
        self._mark(RecordTag.JOURNAL_NUM)
        self.journal_num = num

    def set_prev_journal_num(self, num: int) -> None:
        self._mark(RecordTag.PREV_JOURNAL_NUM)
        self.prev_journal_num = num

    def set_next_file_num(self, num: int) -> None:
        self._mark(RecordTag.NEXT_FILE_NUM)
        self.next_file_num = num

    def set_seq_num(self, num: int) -> None:
        self._mark(RecordTag.SEQ_NUM)
        self.seq_num = num

    def add_comp_ptr(self, level: int, ikey: bytes) -> None:
        self._mark(RecordTag.COMP_PTR)
        self.comp_ptrs.append(CompPtr(level, bytes(ikey)))

    def reset_comp_ptrs(self) -> None:
        self._unmark(RecordTag.COMP_PTR)
        self.comp_ptrs.clear()

    def add_table(self, level: int, num: int, size: int, imin: bytes, imax: bytes) -> None:
        self._mark(RecordTag.ADD_TABLE)
        self.added_tables.append(AddedTable(level, num, size, bytes(imin), bytes(imax)))

    def reset_added_tables(self) -> None:
        self._unmark(RecordTag.ADD_TABLE)
        self.added_tables.clear()

    def del_table(self, level: int, num: int) -> None:
        self._mark(RecordTag.DEL_TABLE)
        self.deleted_tables.append(DeletedTable(level, num))

    def reset_deleted_tables(self) -> None:
        self._unmark(RecordTag.DEL_TABLE)
        self.deleted_tables.clear()

    def encode(self) -> bytes:
        """Serialise the record; raise ValueError on a negative number."""
        out = bytearray()
        if self.has(RecordTag.COMPARER):
            _put_uvarint(out, RecordTag.COMPARER)
            _put_bytes(out, self.comparer.encode())
        if self.has(RecordTag.JOURNAL_NUM):
            _put_uvarint(out, RecordTag.JOURNAL_NUM)
            _put_varint(out, self.journal_num)
        if self.has(RecordTag.NEXT_FILE_NUM):
            _put_uvarint(out, RecordTag.NEXT_FILE_NUM)
            _put_varint(out, self.next_file_num)
        if self.has(RecordTag.SEQ_NUM):
            _put_uvarint(out, RecordTag.SEQ_NUM)
            _put_uvarint(out, self.seq_num)
        for ptr in self.comp_ptrs:
            _put_uvarint(out, RecordTag.COMP_PTR)
            _put_uvarint(out, ptr.level)
            _put_bytes(out, ptr.ikey)
        for deleted in self.deleted_tables:
            _put_uvarint(out, RecordTag.DEL_TABLE)
            _put_uvarint(out, deleted.level)
            _put_varint(out, deleted.num)
        for added in self.added_tables:
            _put_uvarint(out, RecordTag.ADD_TABLE)
            _put_uvarint(out, added.level)
            _put_varint(out, added.num)
            _put_varint(out, added.size)
            _put_bytes(out, added.imin)
            _put_bytes(out, added.imax)
        return bytes(out)

    def decode(self, source: Union[bytes, bytearray, memoryview, BinaryIO]) -> None:
        """Read fields from bytes or a binary stream into this record.

        Raises ManifestCorruptedError when the input is malformed. Unknown
        field tags are skipped.
        """
        stream = io.BytesIO(bytes(source)) if isinstance(source, (bytes, bytearray, memoryview)) else source
        while True:
            tag = _read_uvarint(stream, "field-header", may_eof=True)
            if tag is None:
                return
            if tag == RecordTag.COMPARER:
                self.set_comparer(_read_bytes(stream, "comparer").decode(errors="surrogateescape"))
            elif tag == RecordTag.JOURNAL_NUM:
                self.set_journal_num(_read_varint(stream, "journal-num"))
            elif tag == RecordTag.PREV_JOURNAL_NUM:
                self.set_prev_journal_num(_read_varint(stream, "prev-journal-num"))
            elif tag == RecordTag.NEXT_FILE_NUM:
                self.set_next_file_num(_read_varint(stream, "next-file-num"))
            elif tag == RecordTag.SEQ_NUM:
                self.set_seq_num(_read_required_uvarint(stream, "seq-num"))
            elif tag == RecordTag.COMP_PTR:
                level = _read_required_uvarint(stream, "comp-ptr.level")
                ikey = _read_bytes(stream, "comp-ptr.ikey")
                self.add_comp_ptr(level, ikey)
            elif tag == RecordTag.ADD_TABLE:
                level = _read_required_uvarint(stream, "add-table.level")
                num = _read_varint(stream, "add-table.num")
                size = _read_varint(stream, "add-table.size")
                imin = _read_bytes(stream, "add-table.imin")
                imax = _read_bytes(stream, "add-table.imax")
                self.add_table(level, num, size, imin, imax)
            elif tag == RecordTag.DEL_TABLE:
                level = _read_required_uvarint(stream, "del-table.level")
                num = _read_varint(stream, "del-table.num")
                self.del_table(level, num)