"""Shared fixtures for pool tests.

The jj client and the config/hook collaborator are replaced by in-memory
fakes; every store lives under tmp_path.
"""

from __future__ import annotations

import itertools
import os
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

# Ensure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from wspool.config import Config, WorkspaceConfig
from wspool.errors import HookError
from wspool.jj import ImmutableRevisionError, JJError
from wspool.paths import PoolOptions
from wspool.pool import Pool
from wspool.store import StateStore


class FakeJJ:
    """Records calls; ``workspace_add`` creates the directory like jj does."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.roots: set[str] = set()
        self.immutable: set[str] = set()
        self.fail_add = False
        self.fail_forget: set[str] = set()
        self._ids = itertools.count(1)

    def _fail(self, *command: str) -> JJError:
        return JJError(command=["jj", *command], returncode=1, output="Error: boom")

    def workspace_root(self, path: str) -> str:
        self.calls.append(("workspace_root", path))
        path = os.path.normpath(path)
        matches = [r for r in self.roots if path == r or path.startswith(r + os.sep)]
        if not matches:
            raise self._fail("workspace", "root")
        return max(matches, key=len)

    def workspace_add(self, repo_path: str, name: str, workspace_path: str) -> None:
        self.calls.append(("workspace_add", repo_path, name, workspace_path))
        if self.fail_add:
            raise self._fail("workspace", "add", name)
        os.makedirs(workspace_path)
        self.roots.add(os.path.normpath(workspace_path))

    def workspace_forget(self, repo_path: str, name: str) -> None:
        self.calls.append(("workspace_forget", repo_path, name))
        if name in self.fail_forget:
            raise self._fail("workspace", "forget", name)

    def edit(self, workspace_path: str, rev: str) -> None:
        self.calls.append(("edit", workspace_path, rev))
        if rev in self.immutable:
            raise ImmutableRevisionError(
                command=["jj", "edit", rev],
                returncode=1,
                output=f"Error: Commit {rev} is immutable",
            )

    def new_change(self, workspace_path: str, parent_rev: str) -> str:
        self.calls.append(("new_change", workspace_path, parent_rev))
        return f"change{next(self._ids)}"

    def new_change_with_message(self, workspace_path: str, parent_rev: str, message: str) -> str:
        change_id = self.new_change(workspace_path, parent_rev)
        self.calls.append(("describe", workspace_path, message))
        return change_id

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


class FakeHooks:
    """Stands in for ``config.load`` and ``config.run_script``."""

    def __init__(self) -> None:
        self.script = ""
        self.error: BaseException | None = None
        self.runs: list[tuple[str, str]] = []

    def load(self, repo_path: str) -> Config:
        return Config(workspace=WorkspaceConfig(on_create=self.script))

    def run(self, directory: str, script: str) -> None:
        if not script:
            return
        self.runs.append((directory, script))
        if self.error is not None:
            raise self.error


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def options(tmp_path) -> PoolOptions:
    return PoolOptions(state_dir=tmp_path / "state", workspaces_dir=tmp_path / "workspaces")


@pytest.fixture
def store(options) -> StateStore:
    return StateStore(options.state_dir)


@pytest.fixture
def repo(tmp_path) -> str:
    path = tmp_path / "repo"
    path.mkdir()
    return str(path)


@pytest.fixture
def fake_jj(repo) -> FakeJJ:
    jj = FakeJJ()
    jj.roots.add(repo)
    return jj


@pytest.fixture
def hooks() -> FakeHooks:
    return FakeHooks()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def pool(options, fake_jj, hooks, clock) -> Pool:
    return Pool(options, jj=fake_jj, load_config=hooks.load, run_script=hooks.run, clock=clock)


@pytest.fixture
def failing_hook(hooks) -> FakeHooks:
    hooks.script = "exit 1"
    hooks.error = HookError("script exited with status 1", returncode=1)
    return hooks
