import textwrap
from pathlib import Path

import pytest

from mergegate.cache import CacheStore
from mergegate.settings import Settings
from mergegate.ui.console import Console


@pytest.fixture
def source_tree(tmp_path) -> Path:
    """A tiny checked-out repository with a lock file."""
    src = tmp_path / "src"
    src.mkdir()
    (src / "deps.lock").write_text("left-pad 1.3.0\n")
    (src / "main.txt").write_text("hello\n")
    return src


@pytest.fixture
def settings(tmp_path, source_tree) -> Settings:
    return Settings(
        source_root=source_tree,
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        step_timeout=20,
        keep_workspace=False,
    )


@pytest.fixture
def store(settings) -> CacheStore:
    return CacheStore(settings.cache_dir)


@pytest.fixture
def console() -> Console:
    return Console(quiet=True)


@pytest.fixture
def write_yaml(tmp_path):
    def _write(text: str, name: str = "ci.yml") -> Path:
        p = tmp_path / name
        p.write_text(textwrap.dedent(text))
        return p
    return _write
