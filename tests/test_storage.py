import pytest

from levelstore.storage import (
    ClosedError,
    CorruptedError,
    FileDesc,
    FileType,
    InvalidFileError,
    LockedError,
    Locker,
    Storage,
    StorageError,
    file_desc_ok,
)


@pytest.mark.parametrize(
    "file_type, text",
    [
        (FileType.MANIFEST, "manifest"),
        (FileType.JOURNAL, "journal"),
        (FileType.TABLE, "table"),
        (FileType.TEMP, "temp"),
    ],
)
def test_file_type_names(file_type, text):
    assert str(file_type) == text


def test_unknown_file_type_name():
    assert str(FileType(16)) == "<unknown:16>"


@pytest.mark.parametrize(
    "fd, name",
    [
        (FileDesc(FileType.JOURNAL, 100), "000100.log"),
        (FileDesc(FileType.JOURNAL, 0), "000000.log"),
        (FileDesc(FileType.TABLE, 0), "000000.ldb"),
        (FileDesc(FileType.MANIFEST, 2), "MANIFEST-000002"),
        (FileDesc(FileType.MANIFEST, 7), "MANIFEST-000007"),
        (FileDesc(FileType.JOURNAL, 9223372036854775807), "9223372036854775807.log"),
        (FileDesc(FileType.TEMP, 100), "000100.tmp"),
    ],
)
def test_file_desc_names(fd, name):
    assert str(fd) == name


def test_file_desc_name_of_unknown_type():
    assert str(FileDesc(16, 5)) == "0x10-5"


def test_zero_descriptor():
    assert FileDesc().is_zero()
    assert not FileDesc(FileType.TABLE, 0).is_zero()
    assert not FileDesc(0, 3).is_zero()


def test_file_desc_equality_and_hash():
    a = FileDesc(FileType.TABLE, 3)
    b = FileDesc(FileType.TABLE, 3)
    assert a == b
    assert len({a, b}) == 1


@pytest.mark.parametrize("file_type", [FileType.MANIFEST, FileType.JOURNAL, FileType.TABLE, FileType.TEMP])
def test_file_desc_ok_for_valid_types(file_type):
    assert file_desc_ok(FileDesc(file_type, 0))


@pytest.mark.parametrize(
    "fd",
    [
        FileDesc(),
        FileDesc(FileType.ALL, 1),
        FileDesc(FileType.TABLE | FileType.JOURNAL, 1),
        FileDesc(FileType.TABLE, -1),
        FileDesc(16, 1),
    ],
)
def test_file_desc_ok_rejects_invalid(fd):
    assert not file_desc_ok(fd)


def test_corrupted_error_without_file():
    err = CorruptedError(FileDesc(), ValueError("bad block"))
    assert str(err) == "bad block"
    assert err.fd.is_zero()


def test_corrupted_error_with_file():
    err = CorruptedError(FileDesc(FileType.MANIFEST, 2), "bad block")
    assert str(err) == "bad block [file=MANIFEST-000002]"
    assert isinstance(err, StorageError)


@pytest.mark.parametrize("cls", [InvalidFileError, LockedError, ClosedError])
def test_error_hierarchy(cls):
    with pytest.raises(StorageError) as info:
        raise cls()
    assert info.type is cls
    assert issubclass(info.type, StorageError)
    assert info.type is not StorageError


def test_interfaces_are_abstract():
    with pytest.raises(TypeError):
        Storage()
    with pytest.raises(TypeError):
        Locker()