"""Per-repository configuration and hook execution.

Configuration is read from ``wspool.toml`` at the repository root, layered
over the user-wide ``~/.config/wspool/config.toml``. A key defined in the
project file wins, even when its value is empty.

    [workspace]
    on-create = '''
    #!/usr/bin/env bash
    npm install
    '''
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError, HookError

logger = logging.getLogger(__name__)

PROJECT_CONFIG_NAME = "wspool.toml"
DEFAULT_INTERPRETER = "/bin/bash"


def global_config_path() -> Path:
    return Path.home() / ".config" / "wspool" / "config.toml"


@dataclass(frozen=True)
class WorkspaceConfig:
    on_create: str = ""


@dataclass(frozen=True)
class Config:
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)


def _load_toml_file(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"parse config file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"read config file {path}: {exc}") from exc


def _pick(project: dict[str, Any], global_: dict[str, Any], section: str, key: str) -> str:
    project_section = project.get(section) or {}
    if key in project_section:
        value = project_section[key]
    else:
        value = (global_.get(section) or {}).get(key, "")
    if not isinstance(value, str):
        raise ConfigError(f"{section}.{key} must be a string")
    return value.strip()


def load(repo_path: str, global_path: Path | None = None) -> Config:
    """Load the merged configuration for ``repo_path``. Missing files are empty."""
    global_data = _load_toml_file(global_path or global_config_path())
    project_data = _load_toml_file(Path(repo_path) / PROJECT_CONFIG_NAME)
    return Config(
        workspace=WorkspaceConfig(
            on_create=_pick(project_data, global_data, "workspace", "on-create"),
        )
    )


def _split_shebang(script: str) -> tuple[list[str], str]:
    """Return (interpreter argv, body). No shebang means /bin/bash."""
    if not script.startswith("#!"):
        return [DEFAULT_INTERPRETER], script
    first, _, body = script.partition("\n")
    argv = shlex.split(first[2:].strip())
    if not argv:
        raise HookError("empty interpreter in shebang")
    return argv, body


def run_script(directory: str, script: str) -> None:
    """Run ``script`` in ``directory`` with inherited stdout/stderr.

    The body is piped to the interpreter's stdin. A non-zero exit raises
    HookError; KeyboardInterrupt propagates to the caller.
    """
    script = script.strip()
    if not script:
        return

    argv, body = _split_shebang(script)
    logger.debug("running hook with %s in %s", argv[0], directory)
    try:
        result = subprocess.run(argv, cwd=directory, input=body, text=True)
    except OSError as e:
        raise HookError(f"start {argv[0]}: {e}") from e
    if result.returncode != 0:
        raise HookError(
            f"script exited with status {result.returncode}", returncode=result.returncode
        )
