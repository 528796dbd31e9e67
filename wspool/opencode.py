"""Opencode agent sessions and the per-repo opencode daemon record."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime

from . import ids
from .errors import (
    AmbiguousIDPrefixError,
    OpencodeDaemonAlreadyRunningError,
    OpencodeDaemonNotFoundError,
    OpencodeDaemonNotRunningError,
    OpencodeSessionAlreadyActiveError,
    OpencodeSessionNotActiveError,
    OpencodeSessionNotFoundError,
    ValidationError,
)
from .models import (
    OpencodeDaemon,
    OpencodeDaemonStatus,
    OpencodeSession,
    OpencodeSessionStatus,
    State,
    scoped_key,
    to_iso,
)
from .sessions import sort_by_start, terminal_status
from .store import StateStore
from .validation import MAX_PROMPT, validate_string_length

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (
    OpencodeSessionStatus.COMPLETED,
    OpencodeSessionStatus.FAILED,
    OpencodeSessionStatus.KILLED,
)


def process_running(pid: int) -> bool:
    """Signal-0 probe. A process owned by another user still counts as alive."""
    if pid <= 0:
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def match_id_prefix(records: dict, prefix: str, kind: str):
    """Resolve a full ID or unique prefix against ``{id: record}``.

    Raises AmbiguousIDPrefixError when several IDs share the prefix; the
    caller maps an empty result to its own not-found error.
    """
    needle = prefix.strip().lower()
    if not needle:
        raise ValidationError(f"{kind} id is required")
    if needle in records:
        return records[needle]
    matches = sorted(i for i in records if i.startswith(needle))
    if len(matches) > 1:
        raise AmbiguousIDPrefixError(
            f"ambiguous {kind} id prefix {prefix!r} matches: {', '.join(matches)}"
        )
    return records[matches[0]] if matches else None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class OpencodeSessionTracker:
    """At most one active opencode session per (repo, prompt)."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def create(
        self, repo_path: str, prompt: str, log_path: str = "", started_at: datetime | None = None
    ) -> OpencodeSession:
        prompt = validate_string_length(prompt, "prompt", MAX_PROMPT)
        started = started_at or datetime.now(UTC)
        repo_name = self.store.get_or_create_repo_name(repo_path)

        def mutate(state: State) -> OpencodeSession:
            for existing in state.opencode_sessions.values():
                if (
                    existing.repo == repo_name
                    and existing.prompt == prompt
                    and existing.status == OpencodeSessionStatus.ACTIVE
                ):
                    raise OpencodeSessionAlreadyActiveError(
                        f"opencode session already active for this prompt: {existing.id}"
                    )
            session = OpencodeSession(
                id=ids.generate_with_timestamp(prompt, started),
                repo=repo_name,
                status=OpencodeSessionStatus.ACTIVE,
                prompt=prompt,
                started_at=to_iso(started),
                updated_at=to_iso(started),
                log_path=log_path,
            )
            state.opencode_sessions[scoped_key(repo_name, session.id)] = session
            return session

        return self.store.update(mutate)

    def _by_id(self, state: State, repo_name: str) -> dict[str, OpencodeSession]:
        return {s.id: s for s in state.opencode_sessions.values() if s.repo == repo_name}

    def find(self, repo_path: str, session_id: str) -> OpencodeSession:
        """Look up by full ID or unique ID prefix."""
        repo_name = self.store.find_repo_name(repo_path)
        session = None
        if repo_name is not None:
            session = match_id_prefix(
                self._by_id(self.store.load(), repo_name), session_id, "opencode session"
            )
        if session is None:
            raise OpencodeSessionNotFoundError(f"opencode session not found: {session_id}")
        return session

    def find_active(self, repo_path: str, prompt: str) -> OpencodeSession:
        repo_name = self.store.find_repo_name(repo_path)
        if repo_name is not None:
            for session in self.list_for_slug(self.store.load(), repo_name):
                if session.prompt == prompt.strip() and session.status == OpencodeSessionStatus.ACTIVE:
                    return session
        raise OpencodeSessionNotFoundError("no active opencode session for this prompt")

    def complete(
        self,
        repo_path: str,
        session_id: str,
        status: OpencodeSessionStatus | str,
        completed_at: datetime | None = None,
        exit_code: int | None = None,
        duration_seconds: int | None = None,
    ) -> OpencodeSession:
        status = terminal_status(status, TERMINAL_STATUSES, "opencode session status")
        repo_name = self.store.get_or_create_repo_name(repo_path)
        finished = to_iso(completed_at)

        def mutate(state: State) -> OpencodeSession:
            session = match_id_prefix(self._by_id(state, repo_name), session_id, "opencode session")
            if session is None:
                raise OpencodeSessionNotFoundError(f"opencode session not found: {session_id}")
            if session.status != OpencodeSessionStatus.ACTIVE:
                raise OpencodeSessionNotActiveError(
                    f"opencode session {session.id} is not active ({session.status})"
                )
            session.status = status
            session.completed_at = finished
            session.updated_at = finished
            session.exit_code = exit_code
            session.duration_seconds = duration_seconds
            return session

        return self.store.update(mutate)

    def list(self, repo_path: str) -> list[OpencodeSession]:
        repo_name = self.store.find_repo_name(repo_path)
        if repo_name is None:
            return []
        return self.list_for_slug(self.store.load(), repo_name)

    @staticmethod
    def list_for_slug(state: State, repo_name: str) -> list[OpencodeSession]:
        return sort_by_start([s for s in state.opencode_sessions.values() if s.repo == repo_name])


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------


class OpencodeDaemonTracker:
    """One daemon record per repo; the stored status is checked against the OS."""

    def __init__(self, store: StateStore, is_alive: Callable[[int], bool] = process_running) -> None:
        self.store = store
        self._is_alive = is_alive

    def record(
        self,
        repo_path: str,
        pid: int,
        host: str,
        port: int,
        log_path: str = "",
        started_at: datetime | None = None,
    ) -> OpencodeDaemon:
        if pid <= 0:
            raise ValidationError(f"pid must be positive (got {pid})")
        if not 0 < port < 65536:
            raise ValidationError(f"port out of range: {port}")
        started = to_iso(started_at)
        repo_name = self.store.get_or_create_repo_name(repo_path)

        def mutate(state: State) -> OpencodeDaemon:
            current = state.opencode_daemons.get(repo_name)
            if (
                current is not None
                and current.status == OpencodeDaemonStatus.RUNNING
                and self._is_alive(current.pid)
            ):
                raise OpencodeDaemonAlreadyRunningError(
                    f"opencode daemon already running for {repo_name} (pid {current.pid})"
                )
            daemon = OpencodeDaemon(
                repo=repo_name,
                status=OpencodeDaemonStatus.RUNNING,
                pid=pid,
                host=host,
                port=port,
                log_path=log_path,
                started_at=started,
                updated_at=started,
            )
            state.opencode_daemons[repo_name] = daemon
            return daemon

        return self.store.update(mutate)

    def find(self, repo_path: str) -> OpencodeDaemon:
        """Return the daemon record, persisting ``stopped`` if its PID is gone."""
        repo_name = self.store.find_repo_name(repo_path)
        daemon = self.store.load().opencode_daemons.get(repo_name) if repo_name else None
        if daemon is None:
            raise OpencodeDaemonNotFoundError(f"opencode daemon not found for {repo_path}")

        if daemon.status != OpencodeDaemonStatus.RUNNING or self._is_alive(daemon.pid):
            return daemon

        logger.warning("opencode daemon pid %s for %s is gone, marking stopped", daemon.pid, repo_name)

        def mutate(state: State) -> OpencodeDaemon:
            current = state.opencode_daemons.get(repo_name)
            if current is None:
                raise OpencodeDaemonNotFoundError(f"opencode daemon not found for {repo_path}")
            if current.status == OpencodeDaemonStatus.RUNNING and current.pid == daemon.pid:
                current.status = OpencodeDaemonStatus.STOPPED
                current.updated_at = to_iso(None)
            return current

        return self.store.update(mutate)

    def stop(self, repo_path: str, stopped_at: datetime | None = None) -> OpencodeDaemon:
        repo_name = self.store.get_or_create_repo_name(repo_path)
        stopped = to_iso(stopped_at)

        def mutate(state: State) -> OpencodeDaemon:
            daemon = state.opencode_daemons.get(repo_name)
            if daemon is None:
                raise OpencodeDaemonNotFoundError(f"opencode daemon not found for {repo_path}")
            if daemon.status != OpencodeDaemonStatus.RUNNING:
                raise OpencodeDaemonNotRunningError(f"opencode daemon for {repo_name} is not running")
            daemon.status = OpencodeDaemonStatus.STOPPED
            daemon.updated_at = stopped
            return daemon

        return self.store.update(mutate)
