import pytest

from eventsink.filesystem import APPEND_FLAGS, CREATE_FLAGS, OSFileSystem


def test_stat_missing_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        OSFileSystem().stat(str(tmp_path / "absent"))


def test_makedirs_creates_nested(tmp_path):
    target = tmp_path / "a" / "b"
    fs = OSFileSystem()
    fs.makedirs(str(target), 0o750)
    fs.makedirs(str(target), 0o750)
    assert target.is_dir()
    assert fs.stat(str(target)).st_mode & 0o40000


def test_create_then_append(tmp_path):
    path = str(tmp_path / "out.log")
    fs = OSFileSystem()
    first = fs.open_file(path, CREATE_FLAGS, 0o640)
    assert first.write(b"one\n") == 4
    first.sync()
    first.close()
    second = fs.open_file(path, APPEND_FLAGS, 0o640)
    assert second.write(b"two\n") == 4
    second.close()
    assert (tmp_path / "out.log").read_bytes() == b"one\ntwo\n"


def test_create_flags_do_not_truncate(tmp_path):
    path = tmp_path / "out.log"
    path.write_bytes(b"abcdef")
    handle = OSFileSystem().open_file(str(path), CREATE_FLAGS, 0o640)
    handle.write(b"XY")
    handle.close()
    assert path.read_bytes() == b"XYcdef"


def test_append_flags_require_existing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        OSFileSystem().open_file(str(tmp_path / "nope"), APPEND_FLAGS, 0o640)