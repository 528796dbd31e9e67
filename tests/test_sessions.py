"""Tests for wspool/sessions.py — todo session lifecycle."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from wspool.errors import (
    SessionAlreadyActiveError,
    SessionNotActiveError,
    SessionNotFoundError,
    ValidationError,
)
from wspool.models import SessionStatus
from wspool.sessions import SessionTracker

T0 = datetime(2026, 2, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def tracker(store):
    return SessionTracker(store)


class TestCreate:
    def test_create_active_session(self, tracker, repo):
        session = tracker.create(repo, "todo-1", workspace_name="ws-001", topic="fix", started_at=T0)
        assert session.status == SessionStatus.ACTIVE
        assert session.todo_id == "todo-1"
        assert session.started_at == session.updated_at == T0.isoformat()
        assert len(session.id) == 10

    def test_id_is_deterministic(self, tracker, store, repo, tmp_path):
        first = tracker.create(repo, "todo-1", started_at=T0)
        other = SessionTracker(type(store)(tmp_path / "elsewhere"))
        assert other.create(repo, "todo-1", started_at=T0).id == first.id

    def test_second_active_rejected(self, tracker, repo):
        tracker.create(repo, "todo-1", started_at=T0)
        with pytest.raises(SessionAlreadyActiveError, match="already active"):
            tracker.create(repo, "todo-1", started_at=T0 + timedelta(seconds=1))

    def test_other_todo_allowed(self, tracker, repo):
        tracker.create(repo, "todo-1", started_at=T0)
        tracker.create(repo, "todo-2", started_at=T0)
        assert len(tracker.list(repo)) == 2

    def test_same_todo_in_other_repo_allowed(self, tracker, repo, tmp_path):
        tracker.create(repo, "todo-1", started_at=T0)
        tracker.create(str(tmp_path / "other"), "todo-1", started_at=T0)

    def test_after_completion_new_session_allowed(self, tracker, repo):
        first = tracker.create(repo, "todo-1", started_at=T0)
        tracker.complete(repo, first.id, SessionStatus.COMPLETED)
        second = tracker.create(repo, "todo-1", started_at=T0 + timedelta(minutes=1))
        assert second.id != first.id

    def test_empty_todo_rejected(self, tracker, repo, store):
        with pytest.raises(ValidationError):
            tracker.create(repo, "  ")
        assert store.load().sessions == {}


class TestFindActive:
    def test_by_todo(self, tracker, repo):
        created = tracker.create(repo, "todo-1", started_at=T0)
        assert tracker.find_active_by_todo_id(repo, "todo-1").id == created.id

    def test_by_workspace(self, tracker, repo):
        created = tracker.create(repo, "todo-1", workspace_name="ws-003", started_at=T0)
        assert tracker.find_active_by_workspace(repo, "ws-003").id == created.id

    def test_completed_is_not_active(self, tracker, repo):
        created = tracker.create(repo, "todo-1", started_at=T0)
        tracker.complete(repo, created.id, "failed")
        with pytest.raises(SessionNotFoundError):
            tracker.find_active_by_todo_id(repo, "todo-1")

    def test_unknown_repo(self, tracker, tmp_path, store):
        with pytest.raises(SessionNotFoundError):
            tracker.find_active_by_todo_id(str(tmp_path / "nope"), "todo-1")
        assert store.load().repos == {}


class TestComplete:
    def test_complete_sets_fields(self, tracker, repo):
        created = tracker.create(repo, "todo-1", started_at=T0)
        done = tracker.complete(
            repo,
            created.id,
            SessionStatus.COMPLETED,
            completed_at=T0 + timedelta(minutes=5),
            exit_code=0,
            duration_seconds=300,
        )
        assert done.status == SessionStatus.COMPLETED
        assert done.completed_at == (T0 + timedelta(minutes=5)).isoformat()
        assert done.exit_code == 0
        assert done.duration_seconds == 300

    def test_double_completion_rejected(self, tracker, repo):
        created = tracker.create(repo, "todo-1", started_at=T0)
        tracker.complete(repo, created.id, "completed")
        with pytest.raises(SessionNotActiveError, match="not active"):
            tracker.complete(repo, created.id, "failed")

    def test_active_is_not_terminal(self, tracker, repo):
        created = tracker.create(repo, "todo-1", started_at=T0)
        with pytest.raises(ValidationError):
            tracker.complete(repo, created.id, "active")

    def test_unknown_session(self, tracker, repo):
        with pytest.raises(SessionNotFoundError):
            tracker.complete(repo, "zzzzzzzzzz", "completed")


class TestList:
    def test_sorted_by_start_then_id(self, tracker, repo):
        late = tracker.create(repo, "todo-late", started_at=T0 + timedelta(hours=1))
        early = tracker.create(repo, "todo-early", started_at=T0)
        tie = tracker.create(repo, "todo-tie", started_at=T0)
        listed = [s.id for s in tracker.list(repo)]
        assert listed[-1] == late.id
        assert listed[:2] == sorted([early.id, tie.id])

    def test_unknown_repo_is_empty(self, tracker, tmp_path):
        assert tracker.list(str(tmp_path / "nope")) == []
