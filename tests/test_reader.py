import io

import pytest

from levelstore.block import KeyRange, TableCorruptedError
from levelstore.options import Compression, Options
from levelstore.reader import NotFoundError, ReaderReleasedError, TableReader
from levelstore.storage import CorruptedError, FileDesc
from levelstore.writer import TableWriter


def build(pairs, options):
    buf = io.BytesIO()
    writer = TableWriter(buf, options)
    for key, value in pairs:
        writer.append(key, value)
    writer.close()
    data = buf.getvalue()
    return TableReader(io.BytesIO(data), len(data), FileDesc(), options)


def read_options():
    return Options(block_size=512, block_restart_interval=3)


BASE_KV = [
    (b"", b"empty"),
    (b"a1", b"foo"),
    (b"a2", b"v"),
    (b"a3qqwrkks", b"hello"),
    (b"a4", b"bar"),
    (b"a5111111", b"v5"),
    (b"a6", b""),
    (b"a7", b"v7"),
    (b"a8", b"vvvvvvvvvvvvvvvvvvvvvv8"),
    (b"b", b"v9"),
    (b"c9", b"v9"),
    (b"c91", b"v9"),
    (b"d0", b"v9"),
]

KV_SETS = [BASE_KV[:n] for n in (0, 1, 2, 3, 4, 5, len(BASE_KV))]
KV_SETS.append([(b"key%04d" % i, b"value-%d" % i * 20) for i in range(200)])


@pytest.mark.parametrize("kv", KV_SETS)
def test_forward_iteration(kv):
    reader = build(kv, read_options())
    assert list(reader.new_iterator()) == kv


@pytest.mark.parametrize("kv", KV_SETS)
def test_backward_iteration(kv):
    reader = build(kv, read_options())
    it = reader.new_iterator()
    got = []
    ok = it.last()
    while ok:
        got.append((it.key(), it.value()))
        ok = it.prev()
    assert got == list(reversed(kv))
    assert it.error() is None


@pytest.mark.parametrize("kv", KV_SETS)
def test_seek_and_get_each_key(kv):
    reader = build(kv, read_options())
    it = reader.new_iterator()
    for key, value in kv:
        assert it.seek(key)
        assert (it.key(), it.value()) == (key, value)
        assert reader.get(key) == value
        assert reader.find(key) == (key, value)
        assert reader.find_key(key) == key


def test_seek_past_end_and_missing_key():
    reader = build(BASE_KV, read_options())
    it = reader.new_iterator()
    assert not it.seek(b"zzz")
    assert not it.valid()
    with pytest.raises(NotFoundError):
        reader.get(b"zzz")
    with pytest.raises(NotFoundError):
        reader.find(b"zzz")


def test_find_returns_nearest_greater_key():
    reader = build(BASE_KV, read_options())
    assert reader.find(b"a15") == (b"a2", b"v")
    with pytest.raises(NotFoundError):
        reader.get(b"a15")


def test_empty_table():
    reader = build([], read_options())
    assert list(reader.new_iterator()) == []
    with pytest.raises(NotFoundError):
        reader.get(b"a")


def test_direction_change():
    reader = build(BASE_KV, read_options())
    it = reader.new_iterator()
    assert it.seek(b"a4")
    assert it.prev()
    assert it.key() == b"a3qqwrkks"
    assert it.next()
    assert it.key() == b"a4"


def test_one_key_per_block():
    kv = [(b"k%d" % i, bytes([97 + i]) * 512) for i in range(9)]
    reader = build(kv, read_options())
    assert reader._index_block.restarts_len == 9
    assert list(reader.new_iterator()) == kv


def test_approximate_offset():
    options = Options(block_size=1024, compression=Compression.NONE)
    pairs = [
        (b"k01", b"hello"),
        (b"k02", b"hello2"),
        (b"k03", b"x" * 10000),
        (b"k04", b"x" * 200000),
        (b"k05", b"x" * 300000),
        (b"k06", b"hello3"),
        (b"k07", b"x" * 100000),
    ]
    reader = build(pairs, options)
    cases = [
        (b"k0", 0, 0),
        (b"k01a", 0, 0),
        (b"k02", 0, 0),
        (b"k03", 0, 0),
        (b"k04", 10000, 1000),
        (b"k04a", 210000, 1000),
        (b"k05", 210000, 1000),
        (b"k06", 510000, 1000),
        (b"k07", 510000, 1000),
        (b"xyz", 610000, 2000),
    ]
    for key, expect, threshold in cases:
        assert abs(reader.offset_of(key) - expect) <= threshold, key


def test_key_range_iteration():
    kv = [(b"k1", b"v1"), (b"k2", b"v2"), (b"k3abcdefgg", b"v3"),
          (b"k4", b"v4"), (b"k5", b"v5")]
    reader = build(kv, Options(block_size=16, block_restart_interval=2))
    assert list(reader.new_iterator(KeyRange(b"k0", b"k6"))) == kv
    assert list(reader.new_iterator(KeyRange(b"", b"zzzzzzz"))) == kv
    assert list(reader.new_iterator(KeyRange(b"k2", b"k4"))) == kv[1:3]


def test_checksum_corruption_detected():
    options = Options(compression=Compression.NONE)
    buf = io.BytesIO()
    writer = TableWriter(buf, options)
    writer.append(b"k01", b"hello world")
    writer.close()
    data = bytearray(buf.getvalue())
    data[6] ^= 0xFF
    reader = TableReader(io.BytesIO(bytes(data)), len(data), FileDesc(), options)
    with pytest.raises(CorruptedError):
        reader.get(b"k01")
    with pytest.raises(CorruptedError):
        list(reader.new_iterator())


def test_too_small_table():
    reader = TableReader(io.BytesIO(b"abc"), 3, FileDesc(), None)
    with pytest.raises(TableCorruptedError, match="too small"):
        reader.get(b"a")


def test_bad_magic():
    data = bytes(48)
    reader = TableReader(io.BytesIO(data), len(data), FileDesc(), None)
    with pytest.raises(TableCorruptedError, match="bad magic number"):
        reader.find(b"a")


def test_released_reader():
    reader = build(BASE_KV, read_options())
    reader.release()
    with pytest.raises(ReaderReleasedError):
        reader.get(b"a1")
    with pytest.raises(ReaderReleasedError):
        list(reader.new_iterator())


class _SetGenerator:
    def __init__(self):
        self.keys = []

    def add(self, key):
        self.keys.append(bytes(key))

    def generate(self):
        data = b"\x00".join(self.keys)
        self.keys = []
        return data


class _SetFilter:
    name = "test.set"

    def new_generator(self):
        return _SetGenerator()

    def contains(self, data, key):
        return key in data.split(b"\x00")


def test_filter_rules_out_missing_key():
    options = Options(filter=_SetFilter())
    reader = build([(b"k01", b"a"), (b"k03", b"c")], options)
    assert reader.find(b"k02", False) == (b"k03", b"c")
    with pytest.raises(NotFoundError):
        reader.find(b"k02", True)
    assert reader.find(b"k03", True) == (b"k03", b"c")
    assert reader.get(b"k01") == b"a"


def test_bytes_input_accepted():
    buf = io.BytesIO()
    writer = TableWriter(buf, read_options())
    writer.append(b"a", b"1")
    writer.close()
    data = buf.getvalue()
    reader = TableReader(data, len(data), FileDesc(), read_options())
    assert reader.get(b"a") == b"1"