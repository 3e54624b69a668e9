from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path

import pytest


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))
    # Keep test runs out of ~/.snapsync/logs
    os.environ.setdefault("SNAPSYNC_LOG_DISABLE_FILE", "1")


@pytest.fixture(scope="session")
def anyio_backend():
    """The scheduler is built on asyncio primitives; trio is not supported."""
    return "asyncio"


@pytest.fixture
def git_identity(monkeypatch):
    """Deterministic identity for commits made by test helpers."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")


@pytest.fixture
def site_remote(tmp_path: Path, git_identity):
    """Bare remote with a seeded ``live`` branch.

    Returns a helper object with the remote path and functions to add
    branches and commits on the remote.
    """
    from git import Repo

    remote = tmp_path / "remote.git"
    remote.mkdir()
    Repo.init(remote, bare=True)

    seed = tmp_path / "seed"
    repo = Repo.init(seed)
    (seed / "README.md").write_text("# Site\n")
    (seed / "content.md").write_text("hello\n")
    repo.index.add(["README.md", "content.md"])
    repo.index.commit("seed")
    repo.git.branch("-M", "live")
    repo.create_remote("origin", remote.as_posix())
    repo.remotes.origin.push("live:live")

    class SiteRemote:
        path = remote
        workdir = seed

        def head(self, branch: str) -> str | None:
            bare = Repo(remote)
            try:
                return bare.commit(f"refs/heads/{branch}").hexsha
            except Exception:
                return None

        def branches(self) -> list[str]:
            return sorted(h.name for h in Repo(remote).heads)

        def push_branch(self, branch: str, *, commit_file: str | None = None) -> str:
            """Create ``branch`` on the remote from live, optionally with one extra commit."""
            repo.git.checkout("-B", branch, "live")
            if commit_file:
                (seed / commit_file).write_text(f"{branch}\n")
                repo.index.add([commit_file])
                repo.index.commit(f"add {commit_file}")
            repo.remotes.origin.push(f"{branch}:{branch}")
            sha = repo.head.commit.hexsha
            repo.git.checkout("live")
            return sha

    yield SiteRemote()
    shutil.rmtree(seed, ignore_errors=True)
