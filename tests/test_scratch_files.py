import pytest

import scratch_files
from scratch_files import acquire, release, scratch_file


def test_acquire_creates_empty_unique_files(tmp_path):
    scratch_dir = tmp_path / "files"
    first = acquire(scratch_dir, ".download")
    second = acquire(scratch_dir, ".download")

    assert first != second
    assert first.parent == scratch_dir
    assert first.name.startswith("temp_")
    assert first.name.endswith(".download")
    assert first.exists() and first.stat().st_size == 0


def test_acquire_never_reuses_an_existing_path(monkeypatch, tmp_path):
    class FixedUUID:
        hex = "deadbeef"

    monkeypatch.setattr(scratch_files.uuid, "uuid4", lambda: FixedUUID())
    acquire(tmp_path)
    with pytest.raises(FileExistsError):
        acquire(tmp_path)


def test_release_removes_file(tmp_path):
    path = acquire(tmp_path)
    release(path)
    assert not path.exists()


def test_release_of_missing_file_is_not_an_error(tmp_path):
    release(tmp_path / "temp_missing")


def test_scratch_file_released_on_success(tmp_path):
    with scratch_file(tmp_path) as path:
        path.write_bytes(b"data")
        assert path.exists()
    assert not path.exists()


def test_scratch_file_released_on_failure(tmp_path):
    captured = {}
    with pytest.raises(RuntimeError):
        with scratch_file(tmp_path) as path:
            captured["path"] = path
            raise RuntimeError("boom")
    assert not captured["path"].exists()
    assert list(tmp_path.iterdir()) == []


def test_scratch_file_tolerates_early_removal(tmp_path):
    with scratch_file(tmp_path) as path:
        path.unlink()
    assert list(tmp_path.iterdir()) == []
