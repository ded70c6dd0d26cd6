import pytest

from levelstore.memstorage import FileOpenError, MemStorage
from levelstore.storage import (
    ClosedError,
    FileDesc,
    FileType,
    InvalidFileError,
    LockedError,
)

TABLE1 = FileDesc(FileType.TABLE, 1)


def test_mem_storage_scenario():
    m = MemStorage()

    lock = m.lock()
    with pytest.raises(LockedError):
        m.lock()
    lock.unlock()
    second = m.lock()
    assert second is not lock

    w = m.create(TABLE1)
    w.write(b"abc")
    w.close()
    assert len(m.list(FileType.ALL)) == 1

    r = m.open(TABLE1)
    assert r.read() == b"abc"
    r.close()

    m.open(TABLE1)
    with pytest.raises(FileOpenError):
        m.open(TABLE1)

    m.remove(TABLE1)
    assert len(m.list(FileType.ALL)) == 0
    with pytest.raises(FileNotFoundError):
        m.open(TABLE1)


def test_stale_unlock_does_not_release_new_lock():
    m = MemStorage()
    first = m.lock()
    first.unlock()
    m.lock()
    first.unlock()
    with pytest.raises(LockedError):
        m.lock()


def test_list_filters_by_type():
    m = MemStorage()
    for fd in (FileDesc(FileType.TABLE, 3), FileDesc(FileType.JOURNAL, 2), FileDesc(FileType.MANIFEST, 1)):
        m.create(fd).close()
    assert m.list(FileType.TABLE) == [FileDesc(FileType.TABLE, 3)]
    assert set(m.list(FileType.TABLE | FileType.JOURNAL)) == {
        FileDesc(FileType.TABLE, 3),
        FileDesc(FileType.JOURNAL, 2),
    }
    assert len(m.list(FileType.ALL)) == 3


def test_create_truncates_existing_file():
    m = MemStorage()
    with m.create(TABLE1) as w:
        w.write(b"hello world")
    with m.create(TABLE1) as w:
        w.write(b"hi")
    with m.open(TABLE1) as r:
        assert r.read() == b"hi"


def test_create_while_open_fails():
    m = MemStorage()
    m.create(TABLE1)
    with pytest.raises(FileOpenError):
        m.create(TABLE1)


def test_reader_seek_and_read_at():
    m = MemStorage()
    with m.create(TABLE1) as w:
        w.write(b"0123456789")
    with m.open(TABLE1) as r:
        assert r.read_at(3, 4) == b"3456"
        r.seek(5)
        assert r.read(2) == b"56"
        assert r.tell() == 7


def test_double_close_raises():
    m = MemStorage()
    w = m.create(TABLE1)
    w.close()
    with pytest.raises(ClosedError):
        w.close()
    r = m.open(TABLE1)
    r.close()
    with pytest.raises(ClosedError):
        r.close()


def test_meta_round_trip_and_missing():
    m = MemStorage()
    with pytest.raises(FileNotFoundError):
        m.get_meta()
    fd = FileDesc(FileType.MANIFEST, 2)
    m.set_meta(fd)
    assert m.get_meta() == fd


def test_invalid_descriptors_rejected():
    m = MemStorage()
    bad = FileDesc(FileType.TABLE, -1)
    with pytest.raises(InvalidFileError):
        m.create(bad)
    with pytest.raises(InvalidFileError):
        m.open(bad)
    with pytest.raises(InvalidFileError):
        m.remove(bad)
    with pytest.raises(InvalidFileError):
        m.set_meta(FileDesc())
    with pytest.raises(InvalidFileError):
        m.rename(bad, TABLE1)


def test_rename_moves_content():
    m = MemStorage()
    with m.create(TABLE1) as w:
        w.write(b"data")
    target = FileDesc(FileType.TABLE, 2)
    m.rename(TABLE1, target)
    assert m.list(FileType.ALL) == [target]
    with m.open(target) as r:
        assert r.read() == b"data"


def test_rename_errors():
    m = MemStorage()
    with pytest.raises(FileNotFoundError):
        m.rename(TABLE1, FileDesc(FileType.TABLE, 2))
    m.create(TABLE1)
    with pytest.raises(FileOpenError):
        m.rename(TABLE1, FileDesc(FileType.TABLE, 2))


def test_remove_missing_file():
    m = MemStorage()
    with pytest.raises(FileNotFoundError):
        m.remove(TABLE1)


def test_closed_storage_rejects_operations():
    with MemStorage() as m:
        m.create(TABLE1).close()
    with pytest.raises(ClosedError):
        m.open(TABLE1)
    with pytest.raises(ClosedError):
        m.lock()