"""Default on-disk locations and the per-invocation options object."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

STATE_DIR_ENV = "WSPOOL_STATE_DIR"
WORKSPACES_DIR_ENV = "WSPOOL_WORKSPACES_DIR"


def default_state_dir() -> Path:
    override = os.environ.get(STATE_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".local" / "state" / "wspool"


def default_workspaces_dir() -> Path:
    override = os.environ.get(WORKSPACES_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".local" / "share" / "wspool" / "workspaces"


@dataclass(frozen=True)
class PoolOptions:
    """Where the pool keeps its state file and its workspaces.

    Built once per invocation and passed down; empty fields fall back to
    the defaults above.
    """

    state_dir: Path | None = None
    workspaces_dir: Path | None = None

    def resolved(self) -> PoolOptions:
        return PoolOptions(
            state_dir=Path(self.state_dir) if self.state_dir else default_state_dir(),
            workspaces_dir=(
                Path(self.workspaces_dir) if self.workspaces_dir else default_workspaces_dir()
            ),
        )
