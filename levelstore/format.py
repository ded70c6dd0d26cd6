"""Sorted-table format primitives: varints, block handles, checksums and snappy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

BLOCK_TRAILER_LEN = 5
FOOTER_LEN = 48
MAGIC = b"\x57\xfb\x80\x8b\x24\x75\x47\xdb"

# Per-block compression markers; part of the file format.
BLOCK_TYPE_NO_COMPRESSION = 0
BLOCK_TYPE_SNAPPY_COMPRESSION = 1

# A new filter is generated for every 2KiB of data.
FILTER_BASE_LG = 11
FILTER_BASE = 1 << FILTER_BASE_LG

MAX_VARINT_LEN = 10

_UINT64_MASK = (1 << 64) - 1
_UINT32_MASK = 0xFFFFFFFF
_CRC_MASK_DELTA = 0xA282EAD8
_SNAPPY_MAX_OFFSET = 65535


@dataclass(frozen=True)
class BlockHandle:
    """Position and length of a block inside a table file."""

    offset: int = 0
    length: int = 0


def encode_uvarint(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as a varint."""
    if value < 0 or value > _UINT64_MASK:
        raise ValueError(f"value out of uvarint range: {value}")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_uvarint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a varint starting at offset.

    Returns (value, n) where n is the number of bytes consumed. n is 0 when
    the data ends before the varint does, and negative when it overflows
    64 bits.
    """
    value = 0
    shift = 0
    i = 0
    while offset + i < len(data):
        if i == MAX_VARINT_LEN:
            return 0, -(i + 1)
        byte = data[offset + i]
        if byte < 0x80:
            if i == MAX_VARINT_LEN - 1 and byte > 1:
                return 0, -(i + 1)
            return value | (byte << shift), i + 1
        value |= (byte & 0x7F) << shift
        shift += 7
        i += 1
    return 0, 0


def encode_block_handle(handle: BlockHandle) -> bytes:
    """Encode a block handle as two varints."""
    return encode_uvarint(handle.offset) + encode_uvarint(handle.length)


def decode_block_handle(data: bytes) -> Tuple[BlockHandle, int]:
    """Decode a block handle; the byte count is 0 if the data is malformed."""
    offset, n = decode_uvarint(data, 0)
    if n <= 0:
        return BlockHandle(), 0
    length, m = decode_uvarint(data, n)
    if m <= 0:
        return BlockHandle(), 0
    return BlockHandle(offset, length), n + m


def _make_crc_table() -> Tuple[int, ...]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (c >> 1) ^ 0x82F63B78 if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def _crc32c(data: bytes) -> int:
    crc = _UINT32_MASK
    table = _CRC_TABLE
    for byte in data:
        crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ _UINT32_MASK


def checksum(data: bytes) -> int:
    """Return the masked CRC-32C (Castagnoli) of the data."""
    crc = _crc32c(bytes(data))
    return ((((crc >> 15) | (crc << 17)) & _UINT32_MASK) + _CRC_MASK_DELTA) & _UINT32_MASK


def _emit_literal(out: bytearray, literal: bytes) -> None:
    if not literal:
        return
    n = len(literal) - 1
    if n < 60:
        out.append(n << 2)
    elif n < 1 << 8:
        out.append(60 << 2)
        out += n.to_bytes(1, "little")
    elif n < 1 << 16:
        out.append(61 << 2)
        out += n.to_bytes(2, "little")
    elif n < 1 << 24:
        out.append(62 << 2)
        out += n.to_bytes(3, "little")
    else:
        out.append(63 << 2)
        out += n.to_bytes(4, "little")
    out += literal


def _emit_copy2(out: bytearray, offset: int, length: int) -> None:
    out.append(((length - 1) << 2) | 2)
    out += offset.to_bytes(2, "little")


def _emit_copy(out: bytearray, offset: int, length: int) -> None:
    while length >= 68:
        _emit_copy2(out, offset, 64)
        length -= 64
    if length > 64:
        _emit_copy2(out, offset, 60)
        length -= 60
    if length >= 12 or offset >= 2048:
        _emit_copy2(out, offset, length)
    else:
        out.append(((offset >> 8) << 5) | ((length - 4) << 2) | 1)
        out.append(offset & 0xFF)


def snappy_encode(data: bytes) -> bytes:
    """Compress data into the snappy block format."""
    src = bytes(data)
    size = len(src)
    out = bytearray(encode_uvarint(size))
    table = {}
    i = 0
    literal_start = 0
    while i + 4 <= size:
        key = src[i:i + 4]
        candidate = table.get(key)
        table[key] = i
        if candidate is None or i - candidate > _SNAPPY_MAX_OFFSET:
            i += 1
            continue
        length = 4
        while i + length < size and src[candidate + length] == src[i + length]:
            length += 1
        _emit_literal(out, src[literal_start:i])
        _emit_copy(out, i - candidate, length)
        i += length
        literal_start = i
    _emit_literal(out, src[literal_start:])
    return bytes(out)


def _corrupt() -> ValueError:
    return ValueError("snappy: corrupt input")


def snappy_decode(data: bytes) -> bytes:
    """Decompress a snappy block; raise ValueError on corrupt input."""
    src = bytes(data)
    total, n = decode_uvarint(src, 0)
    if n <= 0 or total > _UINT32_MASK:
        raise _corrupt()
    out = bytearray()
    i = n
    end = len(src)
    while i < end:
        tag = src[i]
        kind = tag & 3
        if kind == 0:
            size = tag >> 2
            if size < 60:
                i += 1
            else:
                extra = size - 59
                if i + 1 + extra > end:
                    raise _corrupt()
                size = int.from_bytes(src[i + 1:i + 1 + extra], "little")
                i += 1 + extra
            size += 1
            if i + size > end or len(out) + size > total:
                raise _corrupt()
            out += src[i:i + size]
            i += size
            continue
        if kind == 1:
            if i + 2 > end:
                raise _corrupt()
            size = 4 + ((tag >> 2) & 7)
            offset = ((tag & 0xE0) << 3) | src[i + 1]
            i += 2
        elif kind == 2:
            if i + 3 > end:
                raise _corrupt()
            size = 1 + (tag >> 2)
            offset = int.from_bytes(src[i + 1:i + 3], "little")
            i += 3
        else:
            if i + 5 > end:
                raise _corrupt()
            size = 1 + (tag >> 2)
            offset = int.from_bytes(src[i + 1:i + 5], "little")
            i += 5
        if offset <= 0 or offset > len(out) or len(out) + size > total:
            raise _corrupt()
        start = len(out) - offset
        if offset >= size:
            out += out[start:start + size]
        else:
            pattern = bytes(out[start:])
            out += (pattern * (size // offset + 1))[:size]
    if len(out) != total:
        raise _corrupt()
    return bytes(out)


class _BytewiseComparer:
    """Orders keys as plain byte strings."""

    name = "leveldb.BytewiseComparator"

    def compare(self, a: bytes, b: bytes) -> int:
        return (a > b) - (a < b)

    def separator(self, a: bytes, b: bytes) -> Optional[bytes]:
        """Return a short key in [a, b), or None if a cannot be shortened."""
        limit = min(len(a), len(b))
        i = 0
        while i < limit and a[i] == b[i]:
            i += 1
        if i >= limit:
            # One key is a prefix of the other.
            return None
        c = a[i]
        if c < 0xFF and c + 1 < b[i]:
            return a[:i] + bytes([c + 1])
        return None

    def successor(self, b: bytes) -> Optional[bytes]:
        """Return a short key not less than b, or None if there is none."""
        for i, c in enumerate(b):
            if c != 0xFF:
                return b[:i] + bytes([c + 1])
        return None


DEFAULT_COMPARER = _BytewiseComparer()