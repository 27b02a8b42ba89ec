from __future__ import annotations

import pytest

from common.errors import KeyNotFound, NotFound
from common.kvstore import FileKeyValueStore


def test_put_get_overwrite_delete(tmp_path):
    store = FileKeyValueStore(tmp_path / "kv")
    store.put("job-1", b"first")
    store.put("job-1", b"second")
    store.put("job-2", b"\x00\xff")

    assert store.get("job-1") == b"second"
    assert store.get("job-2") == b"\x00\xff"
    assert store.keys() == ["job-1", "job-2"]

    assert store.delete("job-1") is True
    assert store.delete("job-1") is False
    assert store.keys() == ["job-2"]


def test_missing_key_raises_not_found(tmp_path):
    store = FileKeyValueStore(tmp_path)
    with pytest.raises(KeyNotFound):
        store.get("absent")
    with pytest.raises(NotFound):
        store.get("absent")


@pytest.mark.parametrize("key", ["", "../etc", "a/b", ".hidden", "x" * 200])
def test_rejects_unsafe_keys(tmp_path, key):
    store = FileKeyValueStore(tmp_path)
    with pytest.raises(ValueError):
        store.put(key, b"x")


def test_no_temp_files_left_behind(tmp_path):
    store = FileKeyValueStore(tmp_path)
    store.put("a", b"1")
    assert sorted(p.name for p in tmp_path.iterdir()) == ["a.blob"]
