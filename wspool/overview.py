"""Read-only snapshot of the pool: single source of truth for CLI and web.

Nothing here writes the state file: daemon liveness is reported as an
extra ``alive`` field instead of being persisted.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import UTC, datetime

from .errors import NotFoundError
from .jobs import JobManager
from .models import State, WorkspaceStatus
from .opencode import OpencodeSessionTracker, process_running
from .pool import list_for_slug
from .sessions import SessionTracker
from .store import StateStore


def _repo_summary(state: State, slug: str, now: datetime) -> dict:
    workspaces = [w.to_dict() for w in list_for_slug(state, slug, now)]
    daemon = state.opencode_daemons.get(slug)
    daemon_dict = None
    if daemon is not None:
        daemon_dict = asdict(daemon)
        daemon_dict["alive"] = process_running(daemon.pid)

    return {
        "slug": slug,
        "source_path": state.repos[slug].source_path,
        "workspaces": workspaces,
        "acquired_count": sum(1 for w in workspaces if w["status"] == WorkspaceStatus.ACQUIRED),
        "available_count": sum(1 for w in workspaces if w["status"] == WorkspaceStatus.AVAILABLE),
        "sessions": [asdict(s) for s in SessionTracker.list_for_slug(state, slug)],
        "opencode_sessions": [asdict(s) for s in OpencodeSessionTracker.list_for_slug(state, slug)],
        "opencode_daemon": daemon_dict,
        "active_jobs": [asdict(j) for j in JobManager.list_for_slug(state, slug)],
    }


def build_overview(store: StateStore, now: datetime | None = None) -> dict:
    """Every tracked repo with its workspaces, sessions, daemon and active jobs."""
    now = now or datetime.now(UTC)
    state = store.load()
    return {
        "generated_at": now.isoformat(),
        "repos": [_repo_summary(state, slug, now) for slug in sorted(state.repos)],
    }


def build_repo_detail(store: StateStore, slug: str, now: datetime | None = None) -> dict:
    state = store.load()
    if slug not in state.repos:
        raise NotFoundError(f"repo not found: {slug}")
    return _repo_summary(state, slug, now or datetime.now(UTC))
