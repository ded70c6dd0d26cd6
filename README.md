# levelstore

The storage layer of a LevelDB-style key/value store, in pure Python with no
dependencies outside the standard library.

## What is in the package

- `levelstore.options`: `Options`, `ReadOptions` and `WriteOptions`. A zero
  field in `Options` selects LevelDB's default. Methods such as
  `block_size_value()` and `compression_value()` return the value in effect,
  and `compaction_table_size(level)` and its siblings compute the per-level
  compaction limits. `Strict` holds the strictness flags and `Compression`
  the block compression choices. `read_strict()` combines database and read
  strictness. `dup_options()` copies options and fills in the default strict
  level. `CachedOptions` precomputes the compaction limits of levels 0 to 6.
- `levelstore.storage`: `FileType`, `FileDesc`, `file_desc_ok()`, the
  abstract `Storage` and `Locker`, and the errors `StorageError`,
  `InvalidFileError`, `LockedError`, `ClosedError` and `CorruptedError`.
- `levelstore.memstorage`: `MemStorage` keeps every file in memory. A file
  can be open only once at a time; a second open raises `FileOpenError`.
- `levelstore.filestorage`: `open_file(path, read_only)` returns a
  `FileStorage` on a directory. It creates the directory if it is missing
  (unless read-only) and takes a lock on its `LOCK` file, so a second writer
  cannot open it. It keeps the current manifest name in `CURRENT` and writes
  a `LOG` that moves to `LOG.old` past 1 MiB. `gen_name()`, `gen_old_name()`,
  `has_old_name()` and `parse_name()` convert between descriptors and file
  names such as `000007.ldb` and `MANIFEST-000002`. Writing to a read-only
  storage raises `ReadOnlyError`.
- `levelstore.session_record`: `SessionRecord` encodes and decodes the
  records a manifest holds (comparer, file numbers, sequence number,
  compaction pointers, added and deleted tables). Malformed input raises
  `ManifestCorruptedError`.
- `levelstore.format`: varints, `BlockHandle`, the masked CRC-32C
  `checksum()`, and `snappy_encode()` / `snappy_decode()`.
- `levelstore.writer`: `TableWriter` writes a sorted table. `BlockWriter`
  and `FilterWriter` build its blocks.
- `levelstore.block`: `Block`, `BlockIterator`, `FilterBlock`, `KeyRange`
  and `TableCorruptedError`.
- `levelstore.reader`: `TableReader` reads a table back. It offers `get`,
  `find`, `find_key`, `offset_of` and `new_iterator`. `TableIterator` walks
  the table, and a missing key raises `NotFoundError`.

## Installation

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Writing and reading a table

```python
import io

from levelstore.options import Options, Compression
from levelstore.storage import FileDesc
from levelstore.writer import TableWriter
from levelstore.reader import TableReader, NotFoundError

options = Options(block_size=1024, compression=Compression.NONE)

buf = io.BytesIO()
writer = TableWriter(buf, options)
writer.append(b"apple", b"red")
writer.append(b"banana", b"yellow")
writer.append(b"cherry", b"dark red")
writer.close()

data = buf.getvalue()
reader = TableReader(io.BytesIO(data), len(data), FileDesc(), options)

assert reader.get(b"banana") == b"yellow"
assert reader.find(b"b") == (b"banana", b"yellow")

it = reader.new_iterator()
for key, value in it:
    print(key, value)
it.release()

try:
    reader.get(b"durian")
except NotFoundError:
    pass
```

Keys must be appended in strictly increasing order, or `append` raises
`ValueError`. `TableReader` also accepts the table as plain `bytes`. A range
iterator is made with `reader.new_iterator(KeyRange(b"b", b"c"))`, where
`KeyRange` comes from `levelstore.block`. Blocks are verified against their
checksums and may be Snappy-compressed (the default compression).

A filter is any object you supply as `Options.filter`. It has a `name` and a
`new_generator()` that returns an object with `add(key)` and
`generate() -> bytes`. For reading, it has `contains(filter_data, key)`. The
package ships no filter of its own.

## Storage backends

```python
from levelstore.memstorage import MemStorage
from levelstore.filestorage import open_file
from levelstore.storage import FileDesc, FileType

mem = MemStorage()
lock = mem.lock()
writer = mem.create(FileDesc(FileType.TABLE, 1))
writer.write(b"abc")
writer.close()
print(mem.list(FileType.ALL))
lock.unlock()

disk = open_file("/tmp/my-db", False)
writer = disk.create(FileDesc(FileType.MANIFEST, 1))
writer.write(b"...")
writer.close()
disk.set_meta(FileDesc(FileType.MANIFEST, 1))
print(disk.get_meta())   # MANIFEST-000001
disk.close()
```

`get_meta()` raises `FileNotFoundError` when no manifest is recorded.

## Manifest records

```python
from levelstore.session_record import SessionRecord

rec = SessionRecord()
rec.set_comparer("leveldb.BytewiseComparator")
rec.set_next_file_num(10)
rec.add_table(0, 7, 4096, b"a" + bytes(8), b"z" + bytes(8))
blob = rec.encode()

decoded = SessionRecord()
decoded.decode(blob)
assert decoded.encode() == blob
```

## What the package does not do

This is the storage layer only. There is no database object to open, put to
or get from. The package has no memtable, no write-ahead journal, no
versions or compaction, and no manifest journal framing around
`SessionRecord`. It keeps no block or open-file cache; the cacher and
capacity fields of `Options` are only stored and reported. There is no
command-line tool.