"""Tests for wspool/config.py — TOML layering and on-create hook execution."""

from __future__ import annotations

import subprocess

import pytest

from wspool import config
from wspool.errors import ConfigError, HookError


@pytest.fixture
def global_path(tmp_path):
    return tmp_path / "global.toml"


def write_project(repo, text):
    (repo / config.PROJECT_CONFIG_NAME).write_text(text)


# ---------------------------------------------------------------------------
# load
# ---------------------------------------------------------------------------


class TestLoad:
    def test_no_files(self, tmp_path, global_path):
        cfg = config.load(str(tmp_path), global_path=global_path)
        assert cfg.workspace.on_create == ""

    def test_global_only(self, tmp_path, global_path):
        global_path.write_text('[workspace]\non-create = "make deps"\n')
        assert config.load(str(tmp_path), global_path=global_path).workspace.on_create == "make deps"

    def test_project_wins(self, tmp_path, global_path):
        global_path.write_text('[workspace]\non-create = "global"\n')
        write_project(tmp_path, '[workspace]\non-create = "project"\n')
        assert config.load(str(tmp_path), global_path=global_path).workspace.on_create == "project"

    def test_empty_project_value_still_wins(self, tmp_path, global_path):
        global_path.write_text('[workspace]\non-create = "global"\n')
        write_project(tmp_path, '[workspace]\non-create = ""\n')
        assert config.load(str(tmp_path), global_path=global_path).workspace.on_create == ""

    def test_project_without_key_falls_back(self, tmp_path, global_path):
        global_path.write_text('[workspace]\non-create = "global"\n')
        write_project(tmp_path, "[other]\nx = 1\n")
        assert config.load(str(tmp_path), global_path=global_path).workspace.on_create == "global"

    def test_multiline_script(self, tmp_path, global_path):
        write_project(tmp_path, "[workspace]\non-create = '''\n#!/bin/sh\necho hi\n'''\n")
        cfg = config.load(str(tmp_path), global_path=global_path)
        assert cfg.workspace.on_create == "#!/bin/sh\necho hi"

    def test_invalid_toml(self, tmp_path, global_path):
        write_project(tmp_path, "[workspace\n")
        with pytest.raises(ConfigError, match="parse config file"):
            config.load(str(tmp_path), global_path=global_path)

    def test_non_string_value(self, tmp_path, global_path):
        write_project(tmp_path, "[workspace]\non-create = 3\n")
        with pytest.raises(ConfigError, match="must be a string"):
            config.load(str(tmp_path), global_path=global_path)


# ---------------------------------------------------------------------------
# run_script
# ---------------------------------------------------------------------------


class TestRunScript:
    def test_empty_script_is_noop(self, tmp_path, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("should not run")

        monkeypatch.setattr(config.subprocess, "run", fail)
        config.run_script(str(tmp_path), "   \n")

    def test_default_interpreter_gets_body_on_stdin(self, tmp_path, monkeypatch):
        calls = []

        def fake_run(argv, **kwargs):
            calls.append((argv, kwargs))
            return subprocess.CompletedProcess(argv, 0)

        monkeypatch.setattr(config.subprocess, "run", fake_run)
        config.run_script(str(tmp_path), "npm install\n")

        argv, kwargs = calls[0]
        assert argv == ["/bin/bash"]
        assert kwargs["input"] == "npm install"
        assert kwargs["cwd"] == str(tmp_path)

    def test_shebang_selects_interpreter(self, tmp_path, monkeypatch):
        calls = []

        def fake_run(argv, **kwargs):
            calls.append((argv, kwargs))
            return subprocess.CompletedProcess(argv, 0)

        monkeypatch.setattr(config.subprocess, "run", fake_run)
        config.run_script(str(tmp_path), "#!/usr/bin/env python3 -u\nprint('hi')")

        argv, kwargs = calls[0]
        assert argv == ["/usr/bin/env", "python3", "-u"]
        assert kwargs["input"] == "print('hi')"

    def test_empty_shebang(self, tmp_path):
        with pytest.raises(HookError, match="empty interpreter"):
            config.run_script(str(tmp_path), "#!\necho hi")

    def test_runs_in_directory(self, tmp_path):
        config.run_script(str(tmp_path), "#!/bin/sh\necho provisioned > marker.txt\n")
        assert (tmp_path / "marker.txt").read_text().strip() == "provisioned"

    def test_non_zero_exit(self, tmp_path):
        with pytest.raises(HookError) as exc_info:
            config.run_script(str(tmp_path), "#!/bin/sh\nexit 3\n")
        assert exc_info.value.returncode == 3

    def test_missing_interpreter(self, tmp_path):
        with pytest.raises(HookError, match="start"):
            config.run_script(str(tmp_path), "#!/nonexistent/interpreter\nexit 0")
