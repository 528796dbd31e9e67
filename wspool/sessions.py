"""Todo work sessions: at most one active session per (repo, todo)."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from . import ids
from .errors import SessionAlreadyActiveError, SessionNotActiveError, SessionNotFoundError, ValidationError
from .models import Session, SessionStatus, State, scoped_key, to_iso
from .store import StateStore
from .validation import MAX_TOPIC, validate_choice, validate_single_line

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (SessionStatus.COMPLETED, SessionStatus.FAILED)


def sort_by_start(items: list) -> list:
    """Oldest first; ties broken by id."""
    return sorted(items, key=lambda r: (r.started_at, r.id))


def terminal_status(value, allowed, field: str):
    """Coerce ``value`` and require it to be one of the terminal ``allowed``."""
    status = validate_choice(value, type(allowed[0]), field)
    if status not in allowed:
        valid = ", ".join(s.value for s in allowed)
        raise ValidationError(f"invalid {field}: {status.value!r} (valid: {valid})")
    return status


class SessionTracker:
    def __init__(self, store: StateStore) -> None:
        self.store = store

    def create(
        self,
        repo_path: str,
        todo_id: str,
        workspace_name: str = "",
        topic: str = "",
        started_at: datetime | None = None,
    ) -> Session:
        todo_id = validate_single_line(todo_id, "todo_id", MAX_TOPIC)
        topic = topic.strip()
        if len(topic) > MAX_TOPIC:
            raise ValidationError(f"topic too long ({len(topic)} chars, max {MAX_TOPIC})")
        started = started_at or datetime.now(UTC)
        repo_name = self.store.get_or_create_repo_name(repo_path)

        def mutate(state: State) -> Session:
            for session in state.sessions.values():
                if (
                    session.repo == repo_name
                    and session.todo_id == todo_id
                    and session.status == SessionStatus.ACTIVE
                ):
                    raise SessionAlreadyActiveError(
                        f"session already active for todo {todo_id}: {session.id}"
                    )
            session = Session(
                id=ids.generate_with_timestamp(todo_id, started),
                repo=repo_name,
                todo_id=todo_id,
                status=SessionStatus.ACTIVE,
                workspace_name=workspace_name,
                topic=topic,
                started_at=to_iso(started),
                updated_at=to_iso(started),
            )
            state.sessions[scoped_key(repo_name, session.id)] = session
            logger.debug("session %s started for todo %s", session.id, todo_id)
            return session

        return self.store.update(mutate)

    def _active(self, repo_path: str, match) -> Session:
        repo_name = self.store.find_repo_name(repo_path)
        if repo_name is not None:
            state = self.store.load()
            for key in sorted(state.sessions):
                session = state.sessions[key]
                if session.repo == repo_name and session.status == SessionStatus.ACTIVE and match(session):
                    return session
        raise SessionNotFoundError("session not found")

    def find_active_by_todo_id(self, repo_path: str, todo_id: str) -> Session:
        return self._active(repo_path, lambda s: s.todo_id == todo_id)

    def find_active_by_workspace(self, repo_path: str, workspace_name: str) -> Session:
        return self._active(repo_path, lambda s: s.workspace_name == workspace_name)

    def complete(
        self,
        repo_path: str,
        session_id: str,
        status: SessionStatus | str,
        completed_at: datetime | None = None,
        exit_code: int | None = None,
        duration_seconds: int | None = None,
    ) -> Session:
        status = terminal_status(status, TERMINAL_STATUSES, "session status")
        repo_name = self.store.get_or_create_repo_name(repo_path)
        finished = to_iso(completed_at)

        def mutate(state: State) -> Session:
            session = state.sessions.get(scoped_key(repo_name, session_id))
            if session is None:
                raise SessionNotFoundError(f"session not found: {session_id}")
            if session.status != SessionStatus.ACTIVE:
                raise SessionNotActiveError(f"session {session_id} is not active ({session.status})")
            session.status = status
            session.completed_at = finished
            session.updated_at = finished
            session.exit_code = exit_code
            session.duration_seconds = duration_seconds
            return session

        return self.store.update(mutate)

    def list(self, repo_path: str) -> list[Session]:
        repo_name = self.store.find_repo_name(repo_path)
        if repo_name is None:
            return []
        return self.list_for_slug(self.store.load(), repo_name)

    @staticmethod
    def list_for_slug(state: State, repo_name: str) -> list[Session]:
        return sort_by_start([s for s in state.sessions.values() if s.repo == repo_name])
