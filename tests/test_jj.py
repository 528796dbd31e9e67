"""Tests for wspool/jj.py — command construction and error typing.

subprocess.run is monkeypatched; no jj binary is needed.
"""

from __future__ import annotations

import subprocess

import pytest

from wspool import jj as jj_mod
from wspool.jj import ImmutableRevisionError, JJClient, JJError


class Recorder:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs))
        returncode, stdout, stderr = self.results.pop(0) if self.results else (0, "", "")
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def recorder(monkeypatch):
    rec = Recorder()
    monkeypatch.setattr(jj_mod.subprocess, "run", rec)
    return rec


class TestCommands:
    def test_workspace_add(self, recorder):
        JJClient().workspace_add("/src", "ws-001", "/w/ws-001")
        command, kwargs = recorder.calls[0]
        assert command == ["jj", "workspace", "add", "--name", "ws-001", "/w/ws-001"]
        assert kwargs["cwd"] == "/src"

    def test_workspace_root_is_stripped(self, recorder):
        recorder.results.append((0, "/src/app\n", ""))
        assert JJClient().workspace_root("/src/app/sub") == "/src/app"

    def test_new_change_returns_change_id(self, recorder):
        recorder.results.extend([(0, "", ""), (0, "kxyzabcd\n", "")])
        assert JJClient().new_change("/w", "main") == "kxyzabcd"
        assert recorder.calls[0][0] == ["jj", "new", "main"]
        assert recorder.calls[1][0] == ["jj", "log", "-r", "@", "-T", "change_id", "--no-graph"]

    def test_describe_uses_stdin(self, recorder):
        JJClient().new_change_with_message("/w", "main", "message body")
        describe, kwargs = recorder.calls[-1]
        assert describe == ["jj", "describe", "--stdin"]
        assert kwargs["input"] == "message body"

    def test_custom_binary(self, recorder):
        JJClient(binary="/opt/jj").workspace_forget("/src", "ws-002")
        assert recorder.calls[0][0] == ["/opt/jj", "workspace", "forget", "ws-002"]


class TestErrors:
    def test_failure_raises_jj_error(self, recorder):
        recorder.results.append((1, "", "Error: no such revision\n"))
        with pytest.raises(JJError) as exc_info:
            JJClient().edit("/w", "nope")
        err = exc_info.value
        assert not isinstance(err, ImmutableRevisionError)
        assert err.returncode == 1
        assert "no such revision" in str(err)
        assert err.command == ("jj", "edit", "nope")

    def test_immutable_is_typed(self, recorder):
        recorder.results.append((1, "", "Error: Commit 3a1b is immutable\n"))
        with pytest.raises(ImmutableRevisionError):
            JJClient().edit("/w", "main")

    def test_missing_binary(self, monkeypatch):
        def missing(command, **kwargs):
            raise FileNotFoundError(2, "No such file or directory", command[0])

        monkeypatch.setattr(jj_mod.subprocess, "run", missing)
        with pytest.raises(JJError) as exc_info:
            JJClient().workspace_root("/anywhere")
        assert exc_info.value.returncode == -1
