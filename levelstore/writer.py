"""Writer of sorted tables."""

from __future__ import annotations

import struct
from typing import Any, List, Optional

from .format import (
    BLOCK_TRAILER_LEN,
    BLOCK_TYPE_NO_COMPRESSION,
    BLOCK_TYPE_SNAPPY_COMPRESSION,
    DEFAULT_COMPARER,
    FILTER_BASE,
    FILTER_BASE_LG,
    FOOTER_LEN,
    MAGIC,
    BlockHandle,
    checksum,
    encode_block_handle,
    encode_uvarint,
    snappy_encode,
)
from .options import Compression, Options


def shared_prefix_len(a: bytes, b: bytes) -> int:
    """Return the length of the common prefix of a and b."""
    limit = min(len(a), len(b))
    i = 0
    while i < limit and a[i] == b[i]:
        i += 1
    return i


def _pack_u32s(values: List[int]) -> bytes:
    return struct.pack(f"<{len(values)}I", *values)


class BlockWriter:
    """Builds one block of prefix-compressed key/value entries."""

    def __init__(self, restart_interval: int) -> None:
        self.restart_interval = restart_interval
        self.buf = bytearray()
        self.n_entries = 0
        self.prev_key = b""
        self.restarts: List[int] = []

    def append(self, key: bytes, value: bytes) -> None:
        shared = 0
        if self.n_entries % self.restart_interval == 0:
            self.restarts.append(len(self.buf))
        else:
            shared = shared_prefix_len(self.prev_key, key)
        self.buf += encode_uvarint(shared)
        self.buf += encode_uvarint(len(key) - shared)
        self.buf += encode_uvarint(len(value))
        self.buf += key[shared:]
        self.buf += value
        self.prev_key = bytes(key)
        self.n_entries += 1

    def finish(self) -> None:
        """Append the restart points trailer."""
        if self.n_entries == 0:
            # A block always holds at least one restart point.
            self.restarts.append(0)
        self.restarts.append(len(self.restarts))
        self.buf += _pack_u32s(self.restarts)

    def reset(self) -> None:
        self.buf.clear()
        self.n_entries = 0
        self.restarts.clear()

    def bytes_len(self) -> int:
        """Return the size the block will have once finished."""
        return len(self.buf) + 4 * max(len(self.restarts), 1) + 4


class FilterWriter:
    """Builds the filter block of a table.

    The generator, if any, has add(key) and generate() -> bytes; generate
    returns the filter for the keys added since the previous call.
    """

    def __init__(self, generator: Any) -> None:
        self.generator = generator
        self.buf = bytearray()
        self.n_keys = 0
        self.offsets: List[int] = []

    def add(self, key: bytes) -> None:
        if self.generator is None:
            return
        self.generator.add(key)
        self.n_keys += 1

    def flush(self, offset: int) -> None:
        """Generate filters up to the given data offset."""
        if self.generator is None:
            return
        target = offset // FILTER_BASE
        while target > len(self.offsets):
            self._generate()

    def finish(self) -> None:
        if self.generator is None:
            return
        if self.n_keys > 0:
            self._generate()
        self.offsets.append(len(self.buf))
        self.buf += _pack_u32s(self.offsets)
        self.buf.append(FILTER_BASE_LG)

    def _generate(self) -> None:
        self.offsets.append(len(self.buf))
        if self.n_keys > 0:
            self.buf += self.generator.generate()
            self.n_keys = 0


class TableWriter:
    """Writes a sorted table to a binary stream.

    Keys must be appended in strictly increasing order. A filter in the
    options has a ``name`` and a ``new_generator()`` method. After the first
    error, or after close, every further append or close raises again.
    """

    def __init__(self, stream: Any, options: Optional[Options] = None) -> None:
        if options is None:
            options = Options()
        self._stream = stream
        self._error: Optional[BaseException] = None
        self._comparer = options.comparer or DEFAULT_COMPARER
        self._filter = options.filter
        self._compression = options.compression_value()
        self._block_size = options.block_size_value()
        self._data_block = BlockWriter(options.block_restart_interval_value())
        self._index_block = BlockWriter(1)
        generator = self._filter.new_generator() if self._filter is not None else None
        self._filter_block = FilterWriter(generator)
        self._filter_block.flush(0)
        self._pending = BlockHandle()
        self._offset = 0
        self._n_entries = 0

    def _write_block(self, buf: bytearray, compression: Compression) -> BlockHandle:
        if compression == Compression.SNAPPY:
            block = bytearray(snappy_encode(bytes(buf)))
            block.append(BLOCK_TYPE_SNAPPY_COMPRESSION)
        else:
            block = bytearray(buf)
            block.append(BLOCK_TYPE_NO_COMPRESSION)
        block += struct.pack("<I", checksum(block))
        self._stream.write(bytes(block))
        handle = BlockHandle(self._offset, len(block) - BLOCK_TRAILER_LEN)
        self._offset += len(block)
        return handle

    def _flush_pending(self, key: Optional[bytes]) -> None:
        if self._pending.length == 0:
            return
        prev_key = self._data_block.prev_key
        if not key:
            separator = self._comparer.successor(prev_key)
        else:
            separator = self._comparer.separator(prev_key, key)
        if separator is None:
            separator = prev_key
        self._index_block.append(separator, encode_block_handle(self._pending))
        self._data_block.prev_key = b""
        self._pending = BlockHandle()

    def _finish_block(self) -> None:
        self._data_block.finish()
        self._pending = self._write_block(self._data_block.buf, self._compression)
        self._data_block.reset()
        self._filter_block.flush(self._offset)

    def append(self, key: bytes, value: bytes) -> None:
        """Append a key/value pair; keys must be strictly increasing."""
        if self._error is not None:
            raise self._error
        key = bytes(key)
        value = bytes(value)
        prev_key = self._data_block.prev_key
        if self._n_entries > 0 and self._comparer.compare(prev_key, key) >= 0:
            self._error = ValueError(
                f"table writer: keys are not in increasing order: {prev_key!r}, {key!r}"
            )
            raise self._error
        self._flush_pending(key)
        self._data_block.append(key, value)
        self._filter_block.add(key)
        if self._data_block.bytes_len() >= self._block_size:
            try:
                self._finish_block()
            except Exception as exc:
                self._error = exc
                raise
        self._n_entries += 1

    def blocks_len(self) -> int:
        """Return the number of data blocks written so far."""
        count = self._index_block.n_entries
        if self._pending.length > 0:
            count += 1
        return count

    def entries_len(self) -> int:
        return self._n_entries

    def bytes_len(self) -> int:
        return self._offset

    def close(self) -> None:
        """Write the remaining blocks and the footer."""
        if self._error is not None:
            raise self._error
        try:
            self._close()
        except Exception as exc:
            self._error = exc
            raise
        self._error = ValueError("table writer is closed")

    def _close(self) -> None:
        if self._data_block.n_entries > 0 or self._n_entries == 0:
            self._finish_block()
        self._flush_pending(None)

        filter_handle = BlockHandle()
        self._filter_block.finish()
        if self._filter_block.buf:
            filter_handle = self._write_block(self._filter_block.buf, Compression.NONE)

        if filter_handle.length > 0:
            key = b"filter." + str(self._filter.name).encode()
            self._data_block.append(key, encode_block_handle(filter_handle))
        self._data_block.finish()
        metaindex_handle = self._write_block(self._data_block.buf, self._compression)

        self._index_block.finish()
        index_handle = self._write_block(self._index_block.buf, self._compression)

        footer = bytearray(FOOTER_LEN)
        handles = encode_block_handle(metaindex_handle) + encode_block_handle(index_handle)
        footer[:len(handles)] = handles
        footer[FOOTER_LEN - len(MAGIC):] = MAGIC
        self._stream.write(bytes(footer))
        self._offset += FOOTER_LEN