"""Shared helpers for building and inspecting directory trees."""

import os
from pathlib import Path

import pytest

from git_sync_reloader.models import RepositorySnapshot


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """Creates *files* (relative path -> text content) under *root*."""
    root.mkdir(parents=True, exist_ok=True)
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


def read_tree(root: Path) -> dict[str, str]:
    """Returns {relative path: text content} for every regular file under *root*."""
    result = {}
    if not root.exists():
        return result
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d != ".git"]
        for name in filenames:
            full = Path(dirpath) / name
            if full.is_symlink():
                continue
            result[full.relative_to(root).as_posix()] = full.read_text()
    return result


class FakeFetcher:
    """Returns a scripted sequence of snapshots (or raises scripted errors)."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def fetch_latest(self) -> RepositorySnapshot:
        self.calls += 1
        item = self.results[0] if len(self.results) == 1 else self.results.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def tree_factory(tmp_path: Path):
    """Builds a source tree and returns its snapshot."""

    def _make(name: str, revision: str, files: dict[str, str]) -> RepositorySnapshot:
        root = write_tree(tmp_path / name, files)
        return RepositorySnapshot(revision_id=revision, root_path=root)

    return _make
