from __future__ import annotations

import pytest

from tests.helpers import CountingSpawner


@pytest.fixture
def spawner() -> CountingSpawner:
    return CountingSpawner()


@pytest.fixture
def home(tmp_path, monkeypatch):
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    return home_dir
