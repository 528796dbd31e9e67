"""Workspace pool: lease jj workspaces to uncoordinated processes.

Every state change is one ``StateStore.update`` transaction. Slow work
(``jj`` commands, on-create hooks) always runs after the transaction that
claimed the workspace has committed, so it never holds the lock. When such
work fails, the claim is compensated by a second transaction: a record whose
directory could not be created is deleted, and any later failure returns
the workspace to ``available``.

Lease policy: a lease lasts until it is released, unless the acquirer gave
it a TTL. Expired TTL leases are swept back to ``available`` at the start of
every acquire transaction; the working copy of a swept workspace is reset
before it is handed out again.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from . import config as config_mod
from .errors import (
    DestroyError,
    OrphanedWorkspaceError,
    WorkspaceNotAcquiredError,
    WorkspaceNotFoundError,
    WorkspaceRootNotFoundError,
)
from .jj import ROOT_REV, WORKING_COPY_REV, ImmutableRevisionError, JJClient, JJError
from .models import State, WorkspaceInfo, WorkspaceStatus, parse_iso, to_iso, workspace_key
from .paths import PoolOptions
from .store import StateStore
from .validation import validate_purpose, validate_ttl, workspace_number

logger = logging.getLogger(__name__)

_STATUS_RANK = {WorkspaceStatus.ACQUIRED: 0, WorkspaceStatus.AVAILABLE: 1}


@dataclass
class AcquireOptions:
    purpose: str
    rev: str = WORKING_COPY_REV
    # None means the lease lasts until release.
    ttl: timedelta | None = None
    # Description for the change created when ``rev`` is immutable.
    new_change_message: str = ""


@dataclass
class Info:
    """A workspace as reported by ``Pool.list``."""

    name: str
    path: str
    status: WorkspaceStatus
    purpose: str
    rev: str
    acquired_by_pid: int
    acquired_at: str
    ttl_remaining: timedelta | None
    provisioned: bool
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "status": self.status,
            "purpose": self.purpose,
            "rev": self.rev,
            "acquired_by_pid": self.acquired_by_pid,
            "acquired_at": self.acquired_at,
            "ttl_remaining_seconds": (
                int(self.ttl_remaining.total_seconds()) if self.ttl_remaining is not None else None
            ),
            "provisioned": self.provisioned,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class _Claim:
    workspace: WorkspaceInfo
    created: bool
    reset: bool


# ---------------------------------------------------------------------------
# Record helpers (only called inside a transaction)
# ---------------------------------------------------------------------------


def _mark_acquired(ws: WorkspaceInfo, purpose: str, rev: str, ttl: timedelta | None, now: datetime) -> None:
    ws.status = WorkspaceStatus.ACQUIRED
    ws.purpose = purpose
    ws.rev = rev
    ws.acquired_by_pid = os.getpid()
    ws.acquired_at = to_iso(now)
    ws.ttl_seconds = int(ttl.total_seconds()) if ttl else 0
    ws.updated_at = to_iso(now)


def _mark_available(ws: WorkspaceInfo, now: datetime) -> None:
    ws.status = WorkspaceStatus.AVAILABLE
    ws.purpose = ""
    ws.rev = ""
    ws.acquired_by_pid = 0
    ws.acquired_at = ""
    ws.ttl_seconds = 0
    ws.updated_at = to_iso(now)


def _same_lease(a: WorkspaceInfo, b: WorkspaceInfo) -> bool:
    return (
        a.status == WorkspaceStatus.ACQUIRED
        and a.acquired_by_pid == b.acquired_by_pid
        and a.acquired_at == b.acquired_at
    )


def _lease_deadline(ws: WorkspaceInfo) -> datetime | None:
    if ws.status != WorkspaceStatus.ACQUIRED or ws.ttl_seconds <= 0:
        return None
    acquired = parse_iso(ws.acquired_at)
    if acquired is None:
        return None
    return acquired + timedelta(seconds=ws.ttl_seconds)


def ttl_remaining(ws: WorkspaceInfo, now: datetime) -> timedelta | None:
    """Time left on a TTL lease; None for indefinite leases."""
    deadline = _lease_deadline(ws)
    if deadline is None:
        return None
    return max(deadline - now, timedelta(0))


def sort_workspaces(items: list) -> list:
    """Acquired before available, then by name, then by path."""
    return sorted(items, key=lambda w: (_STATUS_RANK.get(w.status, 2), w.name, w.path))


def list_for_slug(state: State, repo_name: str, now: datetime) -> list[Info]:
    """Every workspace of ``repo_name`` with its remaining TTL, sorted."""
    items = [
        Info(
            name=ws.name,
            path=ws.path,
            status=ws.status,
            purpose=ws.purpose,
            rev=ws.rev,
            acquired_by_pid=ws.acquired_by_pid,
            acquired_at=ws.acquired_at,
            ttl_remaining=ttl_remaining(ws, now),
            provisioned=ws.provisioned,
            created_at=ws.created_at,
            updated_at=ws.updated_at,
        )
        for ws in state.workspaces.values()
        if ws.repo == repo_name
    ]
    return sort_workspaces(items)


def _find_by_path(state: State, ws_path: str) -> WorkspaceInfo:
    ws_path = os.path.normpath(ws_path)
    for key in sorted(state.workspaces):
        ws = state.workspaces[key]
        if os.path.normpath(ws.path) == ws_path:
            return ws
    raise WorkspaceNotFoundError(f"workspace not found: {ws_path}")


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class Pool:
    """A pool of jj workspaces shared by every process using ``state_dir``."""

    def __init__(
        self,
        options: PoolOptions | None = None,
        *,
        jj: JJClient | None = None,
        load_config: Callable[[str], config_mod.Config] | None = None,
        run_script: Callable[[str, str], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        resolved = (options or PoolOptions()).resolved()
        self.store = StateStore(resolved.state_dir)
        self.workspaces_dir = Path(resolved.workspaces_dir)
        self.jj = jj or JJClient()
        self._load_config = load_config or config_mod.load
        self._run_script = run_script or config_mod.run_script
        self._clock = clock or (lambda: datetime.now(UTC))

    def repo_slug(self, repo_path: str) -> str:
        return self.store.get_or_create_repo_name(repo_path)

    # -----------------------------------------------------------------------
    # Acquire
    # -----------------------------------------------------------------------

    def acquire(self, repo_path: str, options: AcquireOptions) -> WorkspaceInfo:
        """Lease a workspace of ``repo_path``, reusing an idle one if possible.

        Returns the leased record; ``rev`` holds the revision actually
        checked out, which differs from the request when the requested
        revision was immutable and a new change was created on top of it.
        """
        purpose = validate_purpose(options.purpose)
        ttl = validate_ttl(options.ttl)
        rev = options.rev.strip() or WORKING_COPY_REV
        repo_name = self.repo_slug(repo_path)

        def claim(state: State) -> _Claim:
            now = self._clock()
            self._sweep_expired(state, now)

            idle = [
                ws
                for ws in state.workspaces.values()
                if ws.repo == repo_name and ws.status == WorkspaceStatus.AVAILABLE
            ]
            if idle:
                ws = sort_workspaces(idle)[0]
                reset = ws.needs_reset
                ws.needs_reset = False
                _mark_acquired(ws, purpose, rev, ttl, now)
                logger.debug("reusing workspace %s for %s", ws.name, repo_name)
                return _Claim(ws, created=False, reset=reset)

            name, path = self._next_workspace_slot(state, repo_name)
            ws = WorkspaceInfo(name=name, repo=repo_name, path=path, created_at=to_iso(now))
            _mark_acquired(ws, purpose, rev, ttl, now)
            state.workspaces[ws.key] = ws
            logger.debug("creating workspace %s for %s", name, repo_name)
            return _Claim(ws, created=True, reset=False)

        claimed = self.store.update(claim)
        ws = claimed.workspace

        if claimed.created:
            try:
                Path(ws.path).parent.mkdir(parents=True, exist_ok=True)
                self.jj.workspace_add(repo_path, ws.name, ws.path)
            except BaseException:
                self._drop_record(ws)
                raise

        try:
            return self._provision(repo_path, ws, rev, options.new_change_message, claimed.reset)
        except BaseException as exc:
            logger.warning("acquire of %s failed, returning it to the pool: %s", ws.name, exc)
            self._abandon(ws)
            raise

    def _provision(
        self, repo_path: str, ws: WorkspaceInfo, rev: str, message: str, reset: bool
    ) -> WorkspaceInfo:
        if reset:
            self.jj.new_change(ws.path, ROOT_REV)

        actual_rev = rev
        if rev != WORKING_COPY_REV:
            try:
                self.jj.edit(ws.path, rev)
            except ImmutableRevisionError:
                if message.strip():
                    actual_rev = self.jj.new_change_with_message(ws.path, rev, message)
                else:
                    actual_rev = self.jj.new_change(ws.path, rev)

        cfg = self._load_config(repo_path)
        self._run_script(ws.path, cfg.workspace.on_create)

        def finish(state: State) -> WorkspaceInfo:
            current = state.workspaces.get(ws.key)
            if current is None or not _same_lease(current, ws):
                raise WorkspaceNotAcquiredError(f"lease on {ws.name} was lost during acquire")
            current.rev = actual_rev
            current.provisioned = True
            current.updated_at = to_iso(self._clock())
            return current

        return self.store.update(finish)

    def _sweep_expired(self, state: State, now: datetime) -> list[str]:
        expired = []
        for key in sorted(state.workspaces):
            ws = state.workspaces[key]
            deadline = _lease_deadline(ws)
            if deadline is not None and deadline <= now:
                logger.info("lease on %s (pid %s) expired", key, ws.acquired_by_pid)
                _mark_available(ws, now)
                ws.needs_reset = True
                expired.append(key)
        return expired

    def _next_workspace_slot(self, state: State, repo_name: str) -> tuple[str, str]:
        numbers = [
            workspace_number(ws.name) or 0
            for ws in state.workspaces.values()
            if ws.repo == repo_name
        ]
        used_paths = {os.path.normpath(ws.path) for ws in state.workspaces.values()}
        number = max(numbers, default=0) + 1
        while True:
            name = f"ws-{number:03d}"
            path = os.path.normpath(str(self.workspaces_dir / repo_name / name))
            taken = (
                workspace_key(repo_name, name) in state.workspaces
                or path in used_paths
                or os.path.lexists(path)
            )
            if not taken:
                return name, path
            number += 1

    def _drop_record(self, ws: WorkspaceInfo) -> None:
        def mutate(state: State) -> None:
            current = state.workspaces.get(ws.key)
            if current is not None and _same_lease(current, ws):
                del state.workspaces[ws.key]

        try:
            self.store.update(mutate)
        except Exception as exc:
            logger.warning("could not remove record for %s after failed create: %s", ws.name, exc)

    def _abandon(self, ws: WorkspaceInfo) -> None:
        """Return a half-provisioned lease to the pool.

        The working copy is left alone: once the lease has passed to another
        process it belongs to that holder. The next acquire of a record
        flagged ``needs_reset`` resets it before checkout.
        """

        def mutate(state: State) -> bool:
            current = state.workspaces.get(ws.key)
            if current is None or not _same_lease(current, ws):
                return False
            _mark_available(current, self._clock())
            current.needs_reset = True
            return True

        try:
            if not self.store.update(mutate):
                logger.warning("lease on %s was taken over, leaving it to its holder", ws.name)
        except Exception as exc:
            logger.warning("could not release %s after failed acquire: %s", ws.name, exc)

    # -----------------------------------------------------------------------
    # Release / renew
    # -----------------------------------------------------------------------

    def release(self, ws_path: str) -> WorkspaceInfo:
        """Reset the workspace to a fresh change on root() and mark it available."""
        ws = _find_by_path(self.store.load(), ws_path)
        if ws.status != WorkspaceStatus.ACQUIRED:
            raise WorkspaceNotAcquiredError(f"workspace {ws.name} is not acquired")

        self.jj.new_change(ws.path, ROOT_REV)

        def mutate(state: State) -> WorkspaceInfo:
            current = _find_by_path(state, ws_path)
            if current.status != WorkspaceStatus.ACQUIRED:
                raise WorkspaceNotAcquiredError(f"workspace {current.name} is not acquired")
            _mark_available(current, self._clock())
            current.needs_reset = False
            return current

        return self.store.update(mutate)

    def release_by_name(self, repo_path: str, name: str) -> WorkspaceInfo:
        return self.release(self._path_for_name(repo_path, name))

    def renew(self, ws_path: str) -> WorkspaceInfo:
        """Restart the lease clock of an acquired workspace."""

        def mutate(state: State) -> WorkspaceInfo:
            ws = _find_by_path(state, ws_path)
            if ws.status != WorkspaceStatus.ACQUIRED:
                raise WorkspaceNotAcquiredError(f"workspace {ws.name} is not acquired")
            now = self._clock()
            ws.acquired_at = to_iso(now)
            ws.updated_at = to_iso(now)
            return ws

        return self.store.update(mutate)

    def renew_by_name(self, repo_path: str, name: str) -> WorkspaceInfo:
        return self.renew(self._path_for_name(repo_path, name))

    def _path_for_name(self, repo_path: str, name: str) -> str:
        repo_name = self.repo_slug(repo_path)
        ws = self.store.load().workspaces.get(workspace_key(repo_name, name))
        if ws is None:
            raise WorkspaceNotFoundError(f"workspace not found: {name}")
        return ws.path

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def list(self, repo_path: str, now: datetime | None = None) -> list[Info]:
        repo_name = self.repo_slug(repo_path)
        return list_for_slug(self.store.load(), repo_name, now or self._clock())

    def repo_root_from_path(self, path: str) -> str:
        """Resolve a repo or leased-workspace path to the source repo root."""
        try:
            root = self.jj.workspace_root(path)
        except JJError as exc:
            raise WorkspaceRootNotFoundError(f"workspace root not found: {path}") from exc

        source, found = self.store.repo_path_for_workspace(root)
        if found:
            return source

        if self._inside_workspaces_dir(root):
            raise OrphanedWorkspaceError(f"{root} is inside the pool but is not a known workspace")
        return root

    def workspace_name_for_path(self, path: str) -> str:
        try:
            root = self.jj.workspace_root(path)
        except JJError as exc:
            raise WorkspaceRootNotFoundError(f"workspace root not found: {path}") from exc
        return _find_by_path(self.store.load(), root).name

    def _inside_workspaces_dir(self, root: str) -> bool:
        base = os.path.normpath(str(self.workspaces_dir))
        rel = os.path.relpath(os.path.normpath(root), base)
        return rel != "." and not rel.startswith("..")

    # -----------------------------------------------------------------------
    # Destroy
    # -----------------------------------------------------------------------

    def destroy_all(self, repo_path: str) -> list[str]:
        """Delete every workspace of the repo, on disk and in state.

        Cleanup after the state transaction is best-effort: every failure is
        collected and raised together as DestroyError once all workspaces
        have been processed. Returns the destroyed workspace names.
        """
        repo_name = self.repo_slug(repo_path)

        def mutate(state: State) -> tuple[str, list[WorkspaceInfo]]:
            repo = state.repos.get(repo_name)
            removed = [
                state.workspaces.pop(key)
                for key in sorted(state.workspaces)
                if state.workspaces[key].repo == repo_name
            ]
            for records in (state.sessions, state.opencode_sessions, state.jobs):
                for key in [k for k, r in records.items() if r.repo == repo_name]:
                    del records[key]
            return (repo.source_path if repo else ""), removed

        source_path, removed = self.store.update(mutate)

        errors: list[Exception] = []
        for ws in removed:
            if source_path:
                try:
                    self.jj.workspace_forget(source_path, ws.name)
                except JJError as exc:
                    logger.warning("forget workspace %s: %s", ws.name, exc)
                    errors.append(exc)
            try:
                shutil.rmtree(ws.path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("remove workspace %s: %s", ws.path, exc)
                errors.append(exc)

        with suppress(OSError):
            (self.workspaces_dir / repo_name).rmdir()

        if errors:
            raise DestroyError(errors)
        return [ws.name for ws in removed]
