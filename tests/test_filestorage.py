import re

import pytest

from levelstore.filestorage import (
    FileStorage,
    ReadOnlyError,
    gen_name,
    gen_old_name,
    has_old_name,
    open_file,
    parse_name,
)
from levelstore.storage import (
    ClosedError,
    CorruptedError,
    FileDesc,
    FileType,
    InvalidFileError,
    LockedError,
)

CASES = [
    ([], "000100.log", FileType.JOURNAL, 100),
    ([], "000000.log", FileType.JOURNAL, 0),
    (["000000.sst"], "000000.ldb", FileType.TABLE, 0),
    ([], "MANIFEST-000002", FileType.MANIFEST, 2),
    ([], "MANIFEST-000007", FileType.MANIFEST, 7),
    ([], "9223372036854775807.log", FileType.JOURNAL, 9223372036854775807),
    ([], "000100.tmp", FileType.TEMP, 100),
]

INVALID_CASES = [
    "",
    "foo",
    "foo-dx-100.log",
    ".log",
    "",
    "manifest",
    "CURREN",
    "CURRENTX",
    "MANIFES",
    "MANIFEST",
    "MANIFEST-",
    "XMANIFEST-3",
    "MANIFEST-3x",
    "LOC",
    "LOCKx",
    "LO",
    "LOGx",
    "18446744073709551616.log",
    "184467440737095516150.log",
    "100",
    "100.",
    "100.lop",
]


@pytest.fixture
def storage(tmp_path):
    fs = open_file(tmp_path / "db", False)
    yield fs
    try:
        fs.close()
    except ClosedError:
        pass


@pytest.mark.parametrize("old, name, ftype, num", CASES)
def test_create_file_name(old, name, ftype, num):
    assert gen_name(FileDesc(ftype, num)) == name


@pytest.mark.parametrize("old, name, ftype, num", CASES)
def test_parse_file_name(old, name, ftype, num):
    for candidate in [name, *old]:
        fd = parse_name(candidate)
        assert fd is not None
        assert int(fd.type) == int(ftype)
        assert fd.num == num


@pytest.mark.parametrize("name", INVALID_CASES)
def test_invalid_file_name(name):
    assert parse_name(name) is None


def test_gen_name_rejects_invalid_type():
    with pytest.raises(ValueError):
        gen_name(FileDesc(3, 1))


def test_old_names():
    table = FileDesc(FileType.TABLE, 12)
    journal = FileDesc(FileType.JOURNAL, 12)
    assert has_old_name(table)
    assert not has_old_name(journal)
    assert gen_old_name(table) == "000012.sst"
    assert gen_old_name(journal) == "000012.log"


def test_locking(tmp_path):
    path = tmp_path / "rwlock"
    p1 = open_file(path, False)
    with pytest.raises(OSError):
        open_file(path, False)
    p1.close()

    p3 = open_file(path, False)
    try:
        lock = p3.lock()
        with pytest.raises(LockedError):
            p3.lock()
        lock.unlock()
        second = p3.lock()
        with pytest.raises(LockedError):
            p3.lock()
        second.unlock()
    finally:
        p3.close()


def test_read_only_locking(tmp_path):
    path = tmp_path / "rolock"
    p1 = open_file(path, False)
    with pytest.raises(OSError):
        open_file(path, True)
    p1.close()

    p3 = open_file(path, True)
    p4 = open_file(path, True)
    try:
        with pytest.raises(OSError):
            open_file(path, False)
        assert p3.list(FileType.ALL) == []
    finally:
        p3.close()
        p4.close()


def test_read_only_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        open_file(tmp_path / "missing", True)


def test_open_on_regular_file(tmp_path):
    target = tmp_path / "plain"
    target.write_bytes(b"x")
    with pytest.raises(NotADirectoryError):
        open_file(target, False)


def test_get_meta_without_current(storage):
    with pytest.raises(FileNotFoundError):
        storage.get_meta()


def test_set_and_get_meta(storage, tmp_path):
    fd = FileDesc(FileType.MANIFEST, 5)
    storage.set_meta(fd)
    assert storage.get_meta() == fd
    assert (tmp_path / "db" / "CURRENT").read_text() == "MANIFEST-000005\n"
    assert not (tmp_path / "db" / "CURRENT.5").exists()


def test_pending_current_takes_over(storage, tmp_path):
    root = tmp_path / "db"
    (root / "CURRENT").write_text("MANIFEST-000005\n")
    (root / "CURRENT.7").write_text("MANIFEST-000007\n")
    assert storage.get_meta() == FileDesc(FileType.MANIFEST, 7)
    assert (root / "CURRENT").read_text() == "MANIFEST-000007\n"
    assert not (root / "CURRENT.7").exists()


def test_inconsistent_pending_current_removed(storage, tmp_path):
    root = tmp_path / "db"
    (root / "CURRENT").write_text("MANIFEST-000005\n")
    (root / "CURRENT.9").write_text("MANIFEST-000008\n")
    assert storage.get_meta() == FileDesc(FileType.MANIFEST, 5)
    assert not (root / "CURRENT.9").exists()


def test_corrupted_current(storage, tmp_path):
    (tmp_path / "db" / "CURRENT").write_text("garbage")
    with pytest.raises(CorruptedError):
        storage.get_meta()


def test_set_meta_rejects_invalid_fd(storage):
    with pytest.raises(InvalidFileError):
        storage.set_meta(FileDesc(FileType.MANIFEST, -1))


def test_create_open_list_remove(storage):
    fd = FileDesc(FileType.TABLE, 1)
    with storage.create(fd) as writer:
        writer.write(b"abcdef")
        writer.sync()
    assert storage.list(FileType.ALL) == [fd]
    assert storage.list(FileType.JOURNAL) == []
    with storage.open(fd) as reader:
        assert reader.read_at(2, 3) == b"cde"
        assert reader.read() == b"abcdef"
    storage.remove(fd)
    assert storage.list(FileType.ALL) == []
    with pytest.raises(FileNotFoundError):
        storage.open(fd)
    with pytest.raises(FileNotFoundError):
        storage.remove(fd)


def test_open_and_remove_old_table_name(storage, tmp_path):
    (tmp_path / "db" / "000003.sst").write_bytes(b"old")
    fd = FileDesc(FileType.TABLE, 3)
    with storage.open(fd) as reader:
        assert reader.read() == b"old"
    storage.remove(fd)
    assert not (tmp_path / "db" / "000003.sst").exists()


def test_rename(storage):
    old = FileDesc(FileType.TEMP, 4)
    new = FileDesc(FileType.TABLE, 4)
    with storage.create(old) as writer:
        writer.write(b"data")
    storage.rename(old, new)
    assert storage.list(FileType.ALL) == [new]


def test_double_close_of_file(storage):
    writer = storage.create(FileDesc(FileType.JOURNAL, 2))
    writer.close()
    with pytest.raises(ClosedError):
        writer.close()


def test_closed_storage(storage):
    storage.close()
    with pytest.raises(ClosedError):
        storage.list(FileType.ALL)
    with pytest.raises(ClosedError):
        storage.lock()
    with pytest.raises(ClosedError):
        storage.close()


def test_read_only_rejects_writes(tmp_path):
    path = tmp_path / "ro"
    open_file(path, False).close()
    fs = open_file(path, True)
    try:
        with pytest.raises(ReadOnlyError):
            fs.create(FileDesc(FileType.TABLE, 1))
        with pytest.raises(ReadOnlyError):
            fs.set_meta(FileDesc(FileType.MANIFEST, 1))
    finally:
        fs.close()


def test_log_written_to_file(storage, tmp_path):
    storage.log("hello world")
    storage.log("second line")
    lines = (tmp_path / "db" / "LOG").read_text().splitlines()
    assert lines[0].startswith("=============== ")
    assert re.fullmatch(r"\d{2}:\d{2}:\d{2}\.\d{6} hello world", lines[1])
    assert re.fullmatch(r"\d{2}:\d{2}:\d{2}\.\d{6} second line", lines[2])
    assert len(lines) == 3
    assert storage.list(FileType.ALL) == []


def test_open_file_returns_file_storage(tmp_path):
    fs = open_file(tmp_path / "typed", False)
    try:
        assert isinstance(fs, FileStorage)
        assert fs.read_only is False
    finally:
        fs.close()